"""Async-safe TTL cache for discovery results."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, TypeVar

from .constants import CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TTLCache:
    """Key/value cache whose entries expire after a fixed TTL.

    Values are stored only once their loader has finished, so concurrent
    readers never observe a half-built entry. Loads for the same key are
    serialised: a reader arriving while a refresh is in flight waits for
    it and then receives the fresh value.
    """

    def __init__(
        self, ttl_seconds: float = CACHE_TTL_SECONDS, clock: Clock = utc_now
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._entries: dict[str, tuple[datetime, Any]] = {}
        self._lock = asyncio.Lock()
        # Per-key loader locks live only while some caller is loading that key.
        self._load_locks: dict[str, asyncio.Lock] = {}
        self._loaders: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _prune(self, now: datetime) -> None:
        expired = [
            key for key, (stored_at, _) in self._entries.items()
            if now - stored_at >= self._ttl
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Pruned %d expired cache entries", len(expired))

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            self._prune(self._clock())
            entry = self._entries.get(key)
            return entry[1] if entry is not None else None

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            now = self._clock()
            self._prune(now)
            self._entries[key] = (now, value)

    async def invalidate(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        force_refresh: bool = False,
    ) -> T:
        """Return the cached value for ``key`` or populate it via ``loader``.

        ``force_refresh`` bypasses the cached value and repopulates it.
        """
        if not force_refresh:
            cached = await self.get(key)
            if cached is not None:
                logger.debug("Cache hit for %s", key)
                return cached

        lock = self._load_locks.setdefault(key, asyncio.Lock())
        self._loaders[key] = self._loaders.get(key, 0) + 1
        try:
            async with lock:
                if not force_refresh:
                    cached = await self.get(key)
                    if cached is not None:
                        return cached
                value = await loader()
                await self.set(key, value)
                return value
        finally:
            self._loaders[key] -= 1
            if not self._loaders[key]:
                del self._loaders[key]
                del self._load_locks[key]
