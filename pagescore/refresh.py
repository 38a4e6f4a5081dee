"""
Refresh coordinator: fetches reports and writes them back to the store.

A short-lived flag per key (the refresh lock) marks an upstream call in
flight. It is never released; it expires on its own, so a crashed holder
cannot block a key for longer than the lock TTL. The lock is advisory:
it bounds duplicate upstream calls, it does not guarantee exclusivity.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from pagescore.keys import DEFAULT_LOCK_PREFIX, lock_key
from pagescore.pagespeed_client import PageSpeedClient, UpstreamFailure
from pagescore.store import Store, StoreUnavailable
from pagescore.tasks import TaskTracker

logger = logging.getLogger(__name__)


class RefreshCoordinator:
    """
    Runs at most one upstream fetch per key per lock window.

    Background refreshes skip keys whose lock is held. Synchronous fetches
    always proceed and (re)set the lock.
    """

    def __init__(
        self,
        store: Store,
        client: PageSpeedClient,
        tasks: TaskTracker,
        serve_stale_interval: float,
        lock_ttl: float = 30.0,
        lock_prefix: str = DEFAULT_LOCK_PREFIX,
    ) -> None:
        self._store = store
        self._client = client
        self._tasks = tasks
        self._serve_stale_interval = serve_stale_interval
        self._lock_ttl = lock_ttl
        self._lock_prefix = lock_prefix

    def schedule_refresh(self, key: str) -> None:
        """Refresh `key` in the background without waiting for it."""
        logger.info("Rebuilding cache (in background) for %s", key)
        self._tasks.spawn(
            self.refresh(key, background=True), name=f"refresh:{key}"
        )

    async def refresh(self, key: str, *, background: bool) -> Optional[Any]:
        """
        Fetch a fresh report for `key` and cache it.

        Returns the report, or None if the fetch failed or (background only)
        another refresh already holds the lock.
        """
        lock = lock_key(key, self._lock_prefix)
        if background:
            if not await self._claim_lock(lock):
                logger.debug("Skipping refresh for %s: already in flight", key)
                return None
        else:
            try:
                await self._store.set_flag(lock, self._lock_ttl)
            except StoreUnavailable as exc:
                logger.warning("Could not set refresh lock for %s: %s", key, exc)

        logger.info("Requesting PageSpeed report for %s", key)
        try:
            report = await self._client.fetch_report(key)
        except UpstreamFailure as exc:
            logger.warning("PageSpeed report failed for %s: %s", key, exc)
            return None
        if report is None:
            logger.warning("PageSpeed returned an empty report for %s", key)
            return None

        self._tasks.spawn(self._store_report(key, report), name=f"cache:{key}")
        return report

    async def _claim_lock(self, lock: str) -> bool:
        try:
            if await self._store.get_flag(lock):
                return False
            return await self._store.set_flag(
                lock, self._lock_ttl, only_if_absent=True
            )
        except StoreUnavailable as exc:
            # Without the store the refresh can be neither deduplicated nor saved
            logger.warning("Abandoning background refresh (%s): %s", lock, exc)
            return False

    async def _store_report(self, key: str, report: Any) -> None:
        logger.info("Caching result for %s", key)
        try:
            await self._store.set_entry(key, report, self._serve_stale_interval)
        except StoreUnavailable as exc:
            logger.warning("Could not cache result for %s: %s", key, exc)
