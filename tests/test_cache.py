from __future__ import annotations

from apps.rides.app.cache import TTLCache


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl():
    clock = _Clock()
    c = TTLCache(max_items=10, ttl_secs=60, clock=clock)
    c.set("k", "v")
    clock.now += 59
    assert c.get("k") == "v"
    clock.now += 2
    assert c.get("k") is None
    assert len(c) == 0


def test_size_cap_drops_oldest_entries():
    clock = _Clock()
    c = TTLCache(max_items=3, ttl_secs=600, clock=clock)
    for i in range(5):
        clock.now += 1
        c.set(f"k{i}", i)
    assert len(c) == 3
    assert c.get("k0") is None
    assert c.get("k1") is None
    assert c.get("k4") == 4


def test_get_or_load_calls_loader_once_until_invalidated():
    c = TTLCache(max_items=10, ttl_secs=60)
    calls: list[int] = []

    def _load() -> int:
        calls.append(1)
        return 42

    assert c.get_or_load(("setting", "x"), _load) == 42
    assert c.get_or_load(("setting", "x"), _load) == 42
    assert len(calls) == 1

    c.invalidate(("setting", "x"))
    assert c.get_or_load(("setting", "x"), _load) == 42
    assert len(calls) == 2


def test_none_values_are_cached():
    c = TTLCache(max_items=10, ttl_secs=60)
    calls: list[int] = []

    def _load():
        calls.append(1)
        return None

    c.get_or_load("missing", _load)
    c.get_or_load("missing", _load)
    assert len(calls) == 1


def test_zero_capacity_cache_stores_nothing():
    c = TTLCache(max_items=0, ttl_secs=60)
    c.set("k", 1)
    assert c.get("k") is None
