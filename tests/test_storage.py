"""Tests for the shared storage and its cross-tab events."""

import pytest

from client_state.errors import StorageQuotaExceededError, StorageUnavailableError
from client_state.storage import SharedStorage, StorageEvent, SyncStorage


def test_handle_implements_protocol(shared):
    """Test that handles satisfy the SyncStorage protocol."""
    assert isinstance(shared.attach(), SyncStorage)


def test_writes_visible_to_all_tabs(shared):
    """Test that both tabs read the same persisted value."""
    tab_a, tab_b = shared.attach(), shared.attach()
    tab_a.set_item("k", "v")
    assert tab_b.get_item("k") == "v"
    assert tab_b.keys() == ["k"]


def test_events_only_reach_other_tabs(shared):
    """Test that the writer does not receive its own event."""
    tab_a, tab_b = shared.attach(), shared.attach()
    seen_a, seen_b = [], []
    tab_a.subscribe(seen_a.append)
    tab_b.subscribe(seen_b.append)

    tab_a.set_item("k", "1")
    tab_a.set_item("k", "2")
    tab_a.remove_item("k")

    assert seen_a == []
    assert seen_b == [
        StorageEvent("k", None, "1"),
        StorageEvent("k", "1", "2"),
        StorageEvent("k", "2", None),
    ]
    assert seen_b[-1].removed


def test_unchanged_write_and_missing_remove_are_silent(shared):
    """Test that no-op writes do not fire events."""
    tab_a, tab_b = shared.attach(), shared.attach()
    tab_a.set_item("k", "v")
    seen = []
    tab_b.subscribe(seen.append)

    tab_a.set_item("k", "v")
    tab_a.remove_item("absent")

    assert seen == []


def test_unsubscribe_and_detach(shared):
    """Test that unsubscribed or detached tabs stop receiving events."""
    tab_a, tab_b, tab_c = shared.attach(), shared.attach(), shared.attach()
    seen_b, seen_c = [], []
    unsubscribe = tab_b.subscribe(seen_b.append)
    tab_c.subscribe(seen_c.append)

    unsubscribe()
    tab_c.detach()
    tab_a.set_item("k", "v")

    assert seen_b == [] and seen_c == []
    with pytest.raises(StorageUnavailableError):
        tab_c.get_item("k")


def test_quota_exceeded_rejects_write():
    """Test that writes past the quota raise and leave storage unchanged."""
    shared = SharedStorage(quota_bytes=20)
    tab = shared.attach()
    tab.set_item("a", "12345")  # 12 bytes

    with pytest.raises(StorageQuotaExceededError):
        tab.set_item("b", "12345")

    assert tab.get_item("b") is None
    assert shared.used_bytes() == 12


def test_disabled_storage_raises(shared):
    """Test the disabled-storage failure mode."""
    tab = shared.attach()
    shared.enabled = False
    with pytest.raises(StorageUnavailableError):
        tab.set_item("k", "v")


def test_failing_listener_does_not_break_writer(shared):
    """Test that subscriber exceptions are contained."""
    tab_a, tab_b = shared.attach(), shared.attach()
    seen = []

    def boom(event):
        raise RuntimeError("listener bug")

    tab_b.subscribe(boom)
    tab_b.subscribe(seen.append)

    tab_a.set_item("k", "v")
    assert len(seen) == 1
