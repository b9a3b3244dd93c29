"""TTL-bounded read-through cache for per-conversation data.

Entries are immutable; every write (fetch result or patch) replaces the
entry with a new one carrying a bumped version and timestamp.  Expired
entries are not removed on expiry, only treated as stale on access and
dropped by the periodic sweep.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

from . import config

log = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[str, object], None]


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    data: T
    cached_at: float
    version: int


class ThreadCache(Generic[T]):
    """Per-conversation cache keyed by client id."""

    def __init__(self, ttl: float | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = config.CACHE_TTL_SECONDS if ttl is None else ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}
        self._version = 0
        self._request_seq: dict[str, int] = {}
        self._refreshes: dict[str, asyncio.Task] = {}
        self._listeners: list[Listener] = []
        self._sweeper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Reads (no I/O)
    # ------------------------------------------------------------------

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def age(self, key: str) -> float | None:
        """Seconds since the entry was written, or None if absent."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return self._clock() - entry.cached_at

    def is_fresh(self, key: str) -> bool:
        age = self.age(key)
        return age is not None and age < self.ttl

    def entry(self, key: str) -> CacheEntry[T] | None:
        return self._entries.get(key)

    def get(self, key: str) -> T | None:
        """Return the cached value if it is still fresh."""
        if not self.is_fresh(key):
            return None
        return self._entries[key].data

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _store(self, key: str, data: T) -> CacheEntry[T]:
        self._version += 1
        entry = CacheEntry(data=data, cached_at=self._clock(), version=self._version)
        self._entries[key] = entry
        self._notify(key, data)
        return entry

    def patch(self, key: str, updater: Callable[[T], T]) -> T | None:
        """Apply *updater* to the current value and store the result.

        Applied to whatever is cached at call time, so patches touching
        different fields compose in any order.  No-op when nothing is cached.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        data = updater(entry.data)
        self._store(key, data)
        return data

    def invalidate(self, key: str) -> None:
        """Drop *key* and discard any fetch still in flight for it."""
        self._bump_request(key)
        self._entries.pop(key, None)

    def clear(self) -> None:
        for key in list(self._entries):
            self._bump_request(key)
        self._entries.clear()

    def sweep(self) -> int:
        """Remove expired entries.  Returns the number removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.cached_at >= self.ttl]
        for key in expired:
            del self._entries[key]
        if expired:
            log.debug("Swept %d expired cache entries", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Read-through
    # ------------------------------------------------------------------

    def _bump_request(self, key: str) -> int:
        seq = self._request_seq.get(key, 0) + 1
        self._request_seq[key] = seq
        return seq

    async def _fetch(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> T:
        seq = self._bump_request(key)
        data = await fetcher()
        if self._request_seq.get(key) != seq:
            # A newer request or an invalidation superseded this one
            log.debug("Discarding superseded fetch for %s", key)
            current = self._entries.get(key)
            return current.data if current else data
        self._store(key, data)
        return data

    async def read_through(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        *,
        background: bool = False,
    ) -> T:
        """Return fresh cached data, or fetch, store and return.

        With ``background=True`` a stale entry is returned immediately and a
        refresh is scheduled; subscribers are notified when it lands.
        """
        if self.is_fresh(key):
            log.debug("Cache hit for %s", key)
            return self._entries[key].data

        stale = self._entries.get(key)
        if background and stale is not None:
            log.debug("Serving stale entry for %s while refreshing", key)
            self.refresh(key, fetcher)
            return stale.data

        log.debug("Cache miss for %s", key)
        return await self._fetch(key, fetcher)

    def refresh(self, key: str, fetcher: Callable[[], Awaitable[T]]) -> asyncio.Task:
        """Schedule a background refresh of *key*, reusing one already running."""
        running = self._refreshes.get(key)
        if running is not None and not running.done():
            return running

        async def _run() -> None:
            try:
                await self._fetch(key, fetcher)
            except Exception as exc:
                log.warning("Background refresh of %s failed: %s", key, exc)
            finally:
                if self._refreshes.get(key) is task:
                    del self._refreshes[key]

        task = asyncio.get_running_loop().create_task(_run())
        self._refreshes[key] = task
        return task

    # ------------------------------------------------------------------
    # Notifications and sweeping
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener(key, data)``; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, key: str, data: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, data)
            except Exception:
                log.exception("Cache listener failed for %s", key)

    def start_sweeper(self, interval: float | None = None) -> asyncio.Task:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return self._sweeper
        interval = config.CACHE_SWEEP_SECONDS if interval is None else interval

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                self.sweep()

        self._sweeper = asyncio.get_running_loop().create_task(_loop())
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
