"""Key/value cache used for content hashes and indexing bookkeeping."""

from __future__ import annotations

import asyncio
import fnmatch
import time
from typing import Any, Callable, Dict, List, Protocol, Tuple


class HashCache(Protocol):
    async def get(self, key: str) -> Any | None:
        ...

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ...

    async def delete(self, *keys: str) -> int:
        ...

    async def keys(self, pattern: str = "*") -> List[str]:
        ...


class MemoryHashCache:
    """In-process :class:`HashCache` with per-key expiry in seconds.

    ``keys`` accepts shell-style patterns (``content_change:abc:*``).
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float | None]] = {}
        self._lock = asyncio.Lock()

    def _alive(self, key: str, now: float) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        expires_at = entry[1]
        if expires_at is not None and expires_at <= now:
            del self._entries[key]
            return False
        return True

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            if not self._alive(key, self._clock()):
                return None
            return self._entries[key][0]

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        async with self._lock:
            expires_at = self._clock() + ttl if ttl else None
            self._entries[key] = (value, expires_at)

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
            return removed

    async def keys(self, pattern: str = "*") -> List[str]:
        async with self._lock:
            now = self._clock()
            return [
                key
                for key in list(self._entries)
                if self._alive(key, now) and fnmatch.fnmatchcase(key, pattern)
            ]

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["HashCache", "MemoryHashCache"]
