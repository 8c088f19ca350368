"""Time-windowed cache in front of the upstream entity state.

At most one upstream fetch runs at a time. Callers that find the entry stale
while a fetch is running wait for that fetch and share its result, whether it
is a value or an error.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, Protocol

from labstatus.models import CacheEntry, NormalizedState

logger = logging.getLogger("labstatus.cache")

REFRESH_WINDOW = timedelta(seconds=30)


def _consume_outcome(future: asyncio.Future) -> None:
    # Every waiter may be gone; _refresh already logged the failure.
    if not future.cancelled():
        future.exception()


class StateFetcher(Protocol):
    async def fetch(self) -> NormalizedState: ...


class RefreshCache:
    def __init__(self, fetcher: StateFetcher, refresh_window: timedelta = REFRESH_WINDOW) -> None:
        self._fetcher = fetcher
        self._window = refresh_window
        self._lock = asyncio.Lock()
        self._entry: Optional[CacheEntry] = None
        self._inflight: Optional[asyncio.Future[NormalizedState]] = None
        self._fetch_count = 0

    @property
    def fetched_at(self) -> Optional[datetime]:
        entry = self._entry
        return entry.fetched_at if entry is not None else None

    @property
    def fetch_count(self) -> int:
        return self._fetch_count

    def _is_fresh(self, entry: Optional[CacheEntry], now: datetime) -> bool:
        if entry is None:
            return False
        age = now - entry.fetched_at
        if age < timedelta(0):
            logger.debug("Clock went backwards: now=%s fetched_at=%s", now, entry.fetched_at)
        return age <= self._window

    async def get(self, now: datetime) -> NormalizedState:
        """Return the cached state, refreshing it when older than the window.

        Upstream errors propagate unchanged and leave the stored entry as it
        was, so the next call tries again.
        """
        async with self._lock:
            entry = self._entry
            if self._is_fresh(entry, now):
                logger.info("Cache hit, fetched at %s", entry.fetched_at.isoformat())
                return entry.value.model_copy()

            inflight = self._inflight
            # A cancelled fetch never clears itself.
            if inflight is None or inflight.done():
                self._fetch_count += 1
                inflight = asyncio.ensure_future(self._refresh(now))
                inflight.add_done_callback(_consume_outcome)
                self._inflight = inflight
            else:
                logger.debug("Joining in-flight fetch")

        value = await asyncio.shield(inflight)
        return value.model_copy()

    async def _refresh(self, now: datetime) -> NormalizedState:
        try:
            value = await self._fetcher.fetch()
        except Exception as exc:
            logger.warning("Refresh failed (%s); keeping previous entry", getattr(exc, "kind", exc.__class__.__name__))
            async with self._lock:
                self._inflight = None
            raise

        async with self._lock:
            self._inflight = None
            self._store(value, now)
        logger.info("Cache refreshed at %s", now.isoformat())
        return value

    def _store(self, value: NormalizedState, fetched_at: datetime) -> None:
        current = self._entry
        if current is not None and fetched_at < current.fetched_at:
            logger.debug("Discarding fetch stamped %s, entry is newer", fetched_at.isoformat())
            return
        self._entry = CacheEntry(value=value.model_copy(), fetched_at=fetched_at)
