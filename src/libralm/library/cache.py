"""Time-bounded in-memory cache for opened documents and extracted text."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, Optional, TypeVar

log = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    last_access: float


class TTLCache(Generic[V]):
    """Map of key -> value, evicting entries untouched for ``ttl`` seconds.

    Eviction only happens in :meth:`sweep`, which the host calls on its own
    schedule (``run_sweeper`` is a ready-made loop for that). Population is
    not locked: two callers racing on the same key may both run the loader
    and the last one wins, which is harmless because loaders are idempotent.
    """

    def __init__(
        self,
        ttl: float,
        sweep_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        on_evict: Optional[Callable[[Hashable, V], None]] = None,
        name: str = "cache",
    ) -> None:
        if sweep_interval is None:
            sweep_interval = ttl / 2
        if sweep_interval >= ttl:
            raise ValueError("sweep_interval must be shorter than ttl")
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self.name = name
        self._clock = clock
        self._on_evict = on_evict
        self._entries: dict[Hashable, _Entry[V]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        entry.last_access = self._clock()
        return entry.value

    def put(self, key: Hashable, value: V) -> V:
        old = self._entries.get(key)
        self._entries[key] = _Entry(value, self._clock())
        if old is not None and old.value is not value:
            self._evicted(key, old.value)
        return value

    def get_or_populate(self, key: Hashable, loader: Callable[[], V]) -> V:
        entry = self._entries.get(key)
        if entry is not None:
            entry.last_access = self._clock()
            return entry.value
        return self.put(key, loader())

    def invalidate(self, key: Hashable) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._evicted(key, entry.value)

    def clear(self) -> None:
        for key in list(self._entries):
            self.invalidate(key)

    def sweep(self) -> int:
        """Evict expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if now - entry.last_access > self.ttl
        ]
        for key in expired:
            self.invalidate(key)
        if expired:
            log.debug("%s: evicted %d idle entries", self.name, len(expired))
        return len(expired)

    async def run_sweeper(self) -> None:
        """Sweep forever every ``sweep_interval`` seconds; cancel to stop."""
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def _evicted(self, key: Hashable, value: Any) -> None:
        if self._on_evict is None:
            return
        try:
            self._on_evict(key, value)
        except Exception:
            log.exception("%s: eviction hook failed for %r", self.name, key)
