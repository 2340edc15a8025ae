from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any, Hashable


class TTLCache:
    """
    Small in-memory key/value cache with a per-entry TTL and a hard size cap.

    Values are stored as (ts, payload). Instances are handed to the code that
    needs them instead of living as module globals, so tests can pass a
    fresh cache or a fake clock.
    """

    def __init__(self, max_items: int = 1000, ttl_secs: float = 60, clock: Callable[[], float] = time.monotonic):
        self.max_items = int(max_items)
        self.ttl_secs = max(0.0, float(ttl_secs))
        self._clock = clock
        self._data: dict[Hashable, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            ts, value = entry
            if self._clock() - ts > self.ttl_secs:
                self._data.pop(key, None)
                return default
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._data[key] = (self._clock(), value)
            self._prune()

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        sentinel = object()
        value = self.get(key, sentinel)
        if value is sentinel:
            value = loader()
            self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _prune(self) -> None:
        # Caller holds the lock.
        if self.max_items <= 0:
            self._data.clear()
            return
        now = self._clock()
        for k, (ts, _v) in list(self._data.items()):
            if now - ts > self.ttl_secs:
                self._data.pop(k, None)
        # If still oversized, drop oldest entries.
        if len(self._data) > self.max_items:
            items = sorted(self._data.items(), key=lambda kv: kv[1][0])
            for k, _entry in items[: len(self._data) - self.max_items]:
                self._data.pop(k, None)
