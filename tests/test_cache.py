"""Tests for the TTL cache."""

from __future__ import annotations

import asyncio

import pytest

from libralm.library.cache import TTLCache


class TestTTLCache:
    def test_get_or_populate_loads_once(self, clock):
        cache = TTLCache(ttl=600, clock=clock)
        calls = []

        def loader():
            calls.append(1)
            return "doc"

        assert cache.get_or_populate("a", loader) == "doc"
        assert cache.get_or_populate("a", loader) == "doc"
        assert len(calls) == 1

    def test_idle_entry_evicted_by_sweep(self, clock):
        cache = TTLCache(ttl=600, sweep_interval=300, clock=clock)
        cache.put("a", 1)
        clock.advance(601)
        assert cache.sweep() == 1
        assert "a" not in cache

    def test_access_refreshes_entry(self, clock):
        cache = TTLCache(ttl=600, clock=clock)
        cache.put("a", 1)
        clock.advance(500)
        assert cache.get("a") == 1
        clock.advance(500)
        assert cache.sweep() == 0
        assert cache.get("a") == 1

    def test_entry_survives_until_swept(self, clock):
        cache = TTLCache(ttl=600, clock=clock)
        cache.put("a", 1)
        clock.advance(10_000)
        assert cache.get("a") == 1

    def test_evict_hook(self, clock):
        closed = []
        cache = TTLCache(ttl=600, clock=clock, on_evict=lambda k, v: closed.append((k, v)))
        cache.put("a", "doc-a")
        cache.put("b", "doc-b")
        clock.advance(700)
        cache.get("b")
        cache.sweep()
        assert closed == [("a", "doc-a")]
        cache.invalidate("b")
        assert closed[-1] == ("b", "doc-b")

    def test_replacing_value_evicts_old(self, clock):
        closed = []
        cache = TTLCache(ttl=600, clock=clock, on_evict=lambda k, v: closed.append(v))
        cache.put("a", "old")
        cache.put("a", "new")
        assert closed == ["old"]
        assert cache.get("a") == "new"

    def test_failing_hook_does_not_break_sweep(self, clock):
        def boom(_key, _value):
            raise RuntimeError("close failed")

        cache = TTLCache(ttl=600, clock=clock, on_evict=boom)
        cache.put("a", 1)
        clock.advance(700)
        assert cache.sweep() == 1
        assert len(cache) == 0

    def test_clear(self, clock):
        cache = TTLCache(ttl=600, clock=clock)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.clear()
        assert len(cache) == 0

    def test_sweep_interval_must_be_shorter(self):
        with pytest.raises(ValueError):
            TTLCache(ttl=60, sweep_interval=60)

    async def test_run_sweeper(self, clock):
        cache = TTLCache(ttl=1, sweep_interval=0.01, clock=clock)
        cache.put("a", 1)
        clock.advance(5)
        task = asyncio.create_task(cache.run_sweeper())
        for _ in range(50):
            await asyncio.sleep(0.01)
            if "a" not in cache:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert "a" not in cache
