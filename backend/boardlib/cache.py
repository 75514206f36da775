"""
Process-local TTL cache for computed column filters.

Best effort only: no locking, entries simply expire. Stale entries are swept
once the cache grows past ``max_entries``.
"""
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class TTLCache:
    def __init__(self, ttl: float = 60.0, max_entries: int = 100,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._data: Dict[Hashable, Tuple[float, Any]] = {}

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl:
            return None
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._data[key] = (self._clock(), value)
        if len(self._data) > self.max_entries:
            self.sweep_expired()

    def sweep_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        stale = [k for k, (stored_at, _) in self._data.items() if now - stored_at >= self.ttl]
        for k in stale:
            del self._data[k]
        return len(stale)

    def clear(self) -> None:
        self._data.clear()
