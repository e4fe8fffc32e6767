"""Expiring key/value cache.

Each entry carries its own TTL. Reads expire lazily; a background sweep
removes entries that are never read again so memory stays bounded.

The cache stores opaque values, ``None`` included. Use ``MISSING`` (or
``has()``) to tell "cached None" apart from "not cached".
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


@dataclass
class CacheEntry:
    """A cached value with the time it was stored and its TTL (seconds)."""

    key: str
    value: Any
    stored_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now > self.stored_at + self.ttl


class TTLCache:
    """In-memory cache with per-entry expiry.

    Not shared across processes. ``get_or_compute`` does not de-duplicate
    concurrent misses: two callers may both run ``compute`` and the last
    write wins.
    """

    def __init__(
        self,
        default_ttl: float = 60.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            default_ttl: TTL in seconds for entries stored without one
            sweep_interval: Seconds between background sweeps
            clock: Monotonic time source, injectable for tests
        """
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for ``key``, or ``default`` if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return default

        if entry.expired(self._clock()):
            del self._entries[key]
            return default

        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            stored_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def has(self, key: str) -> bool:
        return self.get(key, MISSING) is not MISSING

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if an entry was physically present."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the cached value, or await ``compute()`` and cache its result."""
        cached = self.get(key, MISSING)
        if cached is not MISSING:
            return cached

        value = await compute()
        self.set(key, value, ttl)
        return value

    def sweep(self) -> int:
        """Delete every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def start(self) -> None:
        """Start the background sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the background sweep and drop all entries."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self._entries.clear()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()
