"""Tests for the in-memory TTL cache."""

import asyncio
import re

import pytest

from client_state.models import MISSING
from client_state.store import TTLCache


def test_get_missing_key_returns_sentinel(clock):
    """Test that a miss returns the MISSING sentinel."""
    cache = TTLCache(clock=clock)
    assert cache.get("nope") is MISSING
    assert cache.get("nope", None) is None


def test_set_then_get_until_expiry(clock):
    """Test the user_42 scenario: live for ttl, gone one millisecond later."""
    cache = TTLCache(clock=clock)
    cache.set("user_42", {"name": "Ana"}, 1.0)
    assert cache.get("user_42") == {"name": "Ana"}

    clock.advance(1.0)
    assert cache.get("user_42") == {"name": "Ana"}

    clock.advance(0.001)
    assert cache.get("user_42") is MISSING
    assert len(cache) == 0


def test_has_honors_expiry(clock):
    """Test that has() goes false once the ttl elapses."""
    cache = TTLCache(clock=clock)
    cache.set("k", "v", 5)
    assert cache.has("k")
    assert "k" in cache
    clock.advance(5.01)
    assert not cache.has("k")


def test_falsy_values_are_cached(clock):
    """Test that None, 0 and empty containers are real hits."""
    cache = TTLCache(clock=clock)
    cache.set("none", None)
    cache.set("zero", 0)
    cache.set("empty", [])
    assert cache.get("none") is None
    assert cache.get("zero") == 0
    assert cache.get("empty") == []


def test_default_ttl_applies(clock):
    """Test that set() without ttl uses the default."""
    cache = TTLCache(default_ttl=10, clock=clock)
    entry = cache.set("k", "v")
    assert entry.expires_at == clock.now + 10


def test_replace_refreshes_expiry(clock):
    """Test that overwriting a key resets its expiry."""
    cache = TTLCache(clock=clock)
    cache.set("k", "old", 2)
    clock.advance(1.5)
    cache.set("k", "new", 2)
    clock.advance(1.5)
    assert cache.get("k") == "new"
    assert len(cache) == 1


def test_capacity_evicts_least_recently_accessed(clock):
    """Test strict LRU eviction by last access time."""
    cache = TTLCache(max_size=3, clock=clock)
    for key in ("a", "b", "c"):
        cache.set(key, key)
        clock.advance(1)

    cache.get("a")  # "b" is now the oldest
    clock.advance(1)
    cache.set("d", "d")

    assert len(cache) == 3
    assert sorted(cache.keys()) == ["a", "c", "d"]


def test_capacity_holds_exactly_n_after_many_sets(clock):
    """Test that the store never grows past max_size."""
    cache = TTLCache(max_size=5, clock=clock)
    for i in range(20):
        cache.set(f"k{i}", i)
        clock.advance(1)
    assert len(cache) == 5
    assert sorted(cache.keys()) == [f"k{i}" for i in range(15, 20)]


def test_replacing_existing_key_at_capacity_does_not_evict(clock):
    """Test that overwriting a key does not push another one out."""
    cache = TTLCache(max_size=2, clock=clock)
    cache.set("a", 1)
    clock.advance(1)
    cache.set("b", 2)
    cache.set("a", 3)
    assert sorted(cache.keys()) == ["a", "b"]


def test_invalidate_is_idempotent(clock):
    """Test that invalidating an absent key is a no-op."""
    cache = TTLCache(clock=clock)
    cache.set("k", "v")
    assert cache.invalidate("missing") is False
    assert cache.keys() == ["k"]
    assert cache.invalidate("k") is True
    assert cache.invalidate("k") is False


def test_invalidate_pattern(clock):
    """Test bulk invalidation by regex search."""
    cache = TTLCache(clock=clock)
    for key in ("api_blogs_1", "api_blogs_2", "api_mentors", "profile_user_7"):
        cache.set(key, key)

    removed = cache.invalidate_pattern("^api_blogs")
    assert sorted(removed) == ["api_blogs_1", "api_blogs_2"]
    assert sorted(cache.keys()) == ["api_mentors", "profile_user_7"]

    cache.invalidate_pattern(re.compile(r"user_7$"))
    assert cache.keys() == ["api_mentors"]


def test_clear_and_stats(clock):
    """Test clear() and the stats snapshot."""
    cache = TTLCache(max_size=10, clock=clock)
    cache.set("a", 1, 1)
    cache.set("b", 2, 100)
    clock.advance(2)

    stats = cache.stats()
    assert stats.size == 2
    assert stats.max_size == 10
    assert stats.expired == 1

    cache.clear()
    assert len(cache) == 0


def test_cleanup_removes_only_expired(clock):
    """Test the periodic sweep."""
    cache = TTLCache(clock=clock)
    cache.set("short", 1, 1)
    cache.set("long", 2, 100)
    clock.advance(5)
    assert cache.cleanup() == 1
    assert cache.keys() == ["long"]


def test_removal_listener_sees_expiry_and_eviction(clock):
    """Test that lazy expiry and LRU eviction are reported with a reason."""
    cache = TTLCache(max_size=1, clock=clock)
    seen = []
    cache.add_removal_listener(lambda key, reason: seen.append((key, reason)))

    cache.set("a", 1, 1)
    clock.advance(1)
    cache.set("b", 2, 1)
    clock.advance(5)
    cache.get("b")
    cache.invalidate("nothing")

    assert seen == [("a", "evicted"), ("b", "expired")]


def test_zero_max_size_rejected():
    """Test constructor validation."""
    with pytest.raises(ValueError):
        TTLCache(max_size=0)


@pytest.mark.asyncio
async def test_expiry_timer_removes_entry():
    """Test that the eager timer drops entries without a read."""
    cache = TTLCache()
    cache.set("k", "v", 0.05)
    assert cache.stats().active_timers == 1

    await asyncio.sleep(0.1)

    assert len(cache) == 0
    assert cache.stats().active_timers == 0


@pytest.mark.asyncio
async def test_replaced_entry_timer_is_cancelled():
    """Test that the old timer cannot remove a replacement entry."""
    cache = TTLCache()
    cache.set("k", "old", 0.05)
    cache.set("k", "new", 10)

    await asyncio.sleep(0.1)

    assert cache.get("k") == "new"
    cache.clear()
    assert cache.stats().active_timers == 0


def test_no_timers_without_running_loop(clock):
    """Test that synchronous use relies on lazy expiry alone."""
    cache = TTLCache(clock=clock)
    cache.set("k", "v", 1)
    assert cache.stats().active_timers == 0
