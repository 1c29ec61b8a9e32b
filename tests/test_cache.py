"""TTL cache behavior."""

import pytest

from satchel.cache import TTLCache


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = _Clock()
    cache = TTLCache(10, clock=clock)
    cache.set("k", "v")

    clock.now += 9
    assert cache.get("k") == "v"

    clock.now += 2
    assert cache.get("k") is None
    assert len(cache) == 0


def test_get_or_set_computes_once_while_fresh():
    clock = _Clock()
    cache = TTLCache(10, clock=clock)
    calls = []

    def _factory():
        calls.append(1)
        return f"value-{len(calls)}"

    assert cache.get_or_set("k", _factory) == "value-1"
    assert cache.get_or_set("k", _factory) == "value-1"
    clock.now += 11
    assert cache.get_or_set("k", _factory) == "value-2"
    assert len(calls) == 2


def test_invalidate_and_clear():
    cache = TTLCache(10)
    cache.set("a", 1)
    cache.set("b", 2)

    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2

    cache.clear()
    assert len(cache) == 0


def test_oldest_entry_is_evicted_when_full():
    cache = TTLCache(10, max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_ttl_must_be_positive():
    with pytest.raises(ValueError):
        TTLCache(0)


def test_invalidate_matching_drops_only_matching_keys():
    cache = TTLCache(10)
    cache.set(("a.zip", "one.zip"), 1)
    cache.set(("a.zip", "two.zip"), 2)
    cache.set(("b.zip", "one.zip"), 3)

    dropped = cache.invalidate_matching(lambda key: key[0] == "a.zip")

    assert dropped == 2
    assert len(cache) == 1
    assert cache.get(("b.zip", "one.zip")) == 3
