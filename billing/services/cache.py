# billing/services/cache.py

import fnmatch
import threading
import time
from typing import Any, Dict, Optional, Protocol, Tuple


class Cache(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    def clear_pattern(self, pattern: str) -> int:
        ...


class InMemoryCache:
    """Process-local TTL cache. Keys are matched with shell-style wildcards."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def clear_pattern(self, pattern: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)
