"""Tests for cross-tab cache synchronization."""

import json

from client_state.models import MISSING
from client_state.storage import SharedStorage, StorageEvent
from client_state.sync import CACHE_PREFIX, CrossTabCache


def _tab(shared, clock, **kwargs):
    return CrossTabCache(shared.attach(), clock=clock, **kwargs)


def test_set_mirrors_record(shared, clock):
    """Test that set() persists value and absolute expiry."""
    cache = _tab(shared, clock)
    cache.set("user_42", {"name": "Ana"}, 10)

    raw = shared.attach().get_item(CACHE_PREFIX + "user_42")
    record = json.loads(raw)
    assert record["value"] == {"name": "Ana"}
    assert record["expires_at"] == clock.now + 10


def test_write_propagates_to_other_tab(shared, clock):
    """Test that tab B mirrors a write made in tab A."""
    tab_a, tab_b = _tab(shared, clock), _tab(shared, clock)
    tab_a.set("user_42", {"name": "Ana"}, 10)

    assert tab_b.get("user_42") == {"name": "Ana"}

    clock.advance(10.5)
    assert tab_b.get("user_42") is MISSING


def test_late_joining_tab_keeps_remaining_ttl(shared, clock):
    """Test that a tab opened later seeds only the remaining lifetime."""
    writer = _tab(shared, clock)
    writer.set("k", "v", 10)

    clock.advance(4)
    late = _tab(shared, clock)

    entry = late.store.peek("k")
    assert entry is not None
    assert entry.expires_at == clock.now + 6


def test_delayed_event_for_expired_record_is_ignored(shared, clock):
    """Test that an out-of-order event past its expiry is not cached."""
    tab = _tab(shared, clock)
    stale = json.dumps({"value": "v", "expires_at": clock.now - 1, "last_accessed": clock.now - 5})

    tab._on_storage_event(StorageEvent(CACHE_PREFIX + "k", None, stale))

    assert tab.get("k") is MISSING


def test_invalidate_propagates(shared, clock):
    """Test that removals in one tab invalidate the other tab."""
    tab_a, tab_b = _tab(shared, clock), _tab(shared, clock)
    tab_a.set("k", "v")
    assert tab_b.has("k")

    tab_a.invalidate("k")
    assert not tab_b.has("k")
    assert shared.attach().get_item(CACHE_PREFIX + "k") is None


def test_invalidate_pattern_and_clear_propagate(shared, clock):
    """Test bulk removals across tabs."""
    tab_a, tab_b = _tab(shared, clock), _tab(shared, clock)
    for key in ("api_blogs_1", "api_blogs_2", "api_mentors"):
        tab_a.set(key, key)

    tab_a.invalidate_pattern("^api_blogs")
    assert tab_b.keys() == ["api_mentors"]

    tab_a.clear()
    assert len(tab_b) == 0
    assert len(shared) == 0


def test_load_from_storage_seeds_live_and_drops_expired(shared, clock):
    """Test startup seeding from persisted records."""
    writer = _tab(shared, clock)
    writer.set("live", 1, 100)
    writer.set("stale", 2, 1)
    writer.close()

    clock.advance(5)
    tab = _tab(shared, clock)

    assert tab.get("live") == 1
    assert tab.get("stale") is MISSING
    assert shared.attach().get_item(CACHE_PREFIX + "stale") is None


def test_unreadable_records_are_ignored(shared, clock):
    """Test that malformed records neither crash seeding nor sync."""
    raw = shared.attach()
    raw.set_item(CACHE_PREFIX + "broken", "{not json")
    tab = _tab(shared, clock)
    assert tab.get("broken") is MISSING

    raw.set_item(CACHE_PREFIX + "other", "[]")
    assert tab.get("other") is MISSING


def test_lazy_expiry_removes_record(shared, clock):
    """Test that expiry observed on read also drops the mirrored record."""
    tab = _tab(shared, clock)
    tab.set("k", "v", 1)
    clock.advance(2)
    assert tab.get("k") is MISSING
    assert shared.attach().get_item(CACHE_PREFIX + "k") is None


def test_quota_failure_degrades_to_local_cache(clock):
    """Test that storage errors keep the local cache working."""
    shared = SharedStorage(quota_bytes=64)
    tab_a, tab_b = _tab(shared, clock), _tab(shared, clock)

    tab_a.set("big", "x" * 500)

    assert tab_a.get("big") == "x" * 500
    assert tab_b.get("big") is MISSING
    assert tab_a.stats().sync_degraded
    assert not tab_b.stats().sync_degraded


def test_disabled_storage_degrades(shared, clock):
    """Test that a disabled store never raises through the cache."""
    tab = _tab(shared, clock)
    shared.enabled = False

    tab.set("k", "v")
    tab.invalidate("other")
    tab.clear()
    tab.set("k2", "v2")

    assert tab.get("k2") == "v2"
    assert tab.stats().sync_degraded


def test_unserializable_value_stays_local(shared, clock):
    """Test that values JSON cannot encode are cached in this tab only."""
    tab = _tab(shared, clock)
    value = object()
    tab.set("k", value)
    assert tab.get("k") is value
    assert tab.stats().sync_degraded


def test_emergency_clear_removes_app_and_auth_keys(shared, clock):
    """Test that emergency clear wipes app, auth and cache keys."""
    raw = shared.attach()
    raw.set_item("sb-project-auth-token", "t")
    raw.set_item("supabase.session", "s")
    raw.set_item("watanhub_last_activity", "1")
    raw.set_item("unrelated", "keep")
    tab = _tab(shared, clock)
    tab.set("k", "v")

    removed = tab.emergency_clear()

    assert removed == 3
    assert raw.keys() == ["unrelated"]
    assert len(tab) == 0


def test_force_refresh_all_notifies_listeners(shared, clock):
    """Test that a forced refresh clears and announces the clear."""
    tab = _tab(shared, clock)
    tab.set("k", "v")
    seen = []
    remove = tab.add_clear_listener(seen.append)

    tab.force_refresh_all()
    remove()
    tab.force_refresh_all()

    assert seen == [clock.now]
    assert len(tab) == 0


def test_close_stops_sync(shared, clock):
    """Test that a closed tab no longer mirrors other tabs."""
    tab_a, tab_b = _tab(shared, clock), _tab(shared, clock)
    tab_b.close()
    tab_a.set("k", "v")
    assert tab_b.get("k") is MISSING
