"""
cache.py

Small in-process TTL cache used for decrypted service records and *arr list calls.
Each cache instance is owned by the component that uses it and is invalidated
either by TTL expiry or an explicit clear().
"""
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


_MISSING = object()


class TTLCache:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return default
        return value

    def set(self, key: Hashable, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else float(ttl_seconds)
        self._entries[key] = (self._clock() + ttl, value)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def clear(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or everything when key is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    async def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Return the cached value or await loader() and cache its result."""
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = await loader()
        self.set(key, value)
        return value
