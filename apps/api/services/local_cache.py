"""Size-bounded in-process TTL cache used for degraded-mode state.

Entries are local to one process. Capacity is enforced by evicting the
oldest write first; expired entries are purged on every write.
"""

from __future__ import annotations

from collections import OrderedDict
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class BoundedTTLCache:
    def __init__(
        self,
        max_entries: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = int(max_entries)
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, Dict[str, Any]]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge_locked(self, now: float) -> None:
        while self._entries:
            key, (expires_at, _) = next(iter(self._entries.items()))
            if expires_at > now:
                break
            self._entries.pop(key, None)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def _live_locked(self, key: str, now: float) -> Optional[Dict[str, Any]]:
        item = self._entries.get(key)
        if item is None:
            return None
        expires_at, value = item
        if expires_at <= now:
            self._entries.pop(key, None)
            return None
        return value

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._live_locked(key, self._clock())
            return dict(value) if value is not None else None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            now = self._clock()
            self._entries.pop(key, None)
            self._entries[key] = (now + self.ttl_seconds, dict(value))
            self._purge_locked(now)

    def add_if_absent(self, key: str, value: Dict[str, Any]) -> bool:
        """Insert only when no live entry exists. Returns whether it inserted."""
        with self._lock:
            now = self._clock()
            if self._live_locked(key, now) is not None:
                return False
            self._entries[key] = (now + self.ttl_seconds, dict(value))
            self._purge_locked(now)
            return True

    def pop(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._entries.pop(key, None)
            return item[1] if item else None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
