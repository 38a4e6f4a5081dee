"""
Score service: the request path from raw URL to report.

Normalizes the key, reads the store, applies the freshness policy and
either serves the cached report or fetches a new one.
"""

from __future__ import annotations

import logging
from typing import Any

from pagescore.config import AppConfig
from pagescore.freshness import Action, decide
from pagescore.keys import normalize_url
from pagescore.pagespeed_client import UpstreamFailure
from pagescore.ratelimit import RateLimiter
from pagescore.refresh import RefreshCoordinator
from pagescore.store import Store, StoreUnavailable

logger = logging.getLogger(__name__)


class ScoreService:
    """Stale-while-revalidate front for the PageSpeed scoring service."""

    def __init__(
        self,
        config: AppConfig,
        store: Store,
        rate_limiter: RateLimiter,
        coordinator: RefreshCoordinator,
    ) -> None:
        self._config = config
        self._store = store
        self._rate_limiter = rate_limiter
        self._coordinator = coordinator

    async def get_score(self, raw_url: Any, client_id: str) -> Any:
        """
        Return the performance report for `raw_url`.

        Raises:
            InvalidRequest: raw_url is not an absolute http(s) URL.
            RateLimited: cache miss and the client used up its window.
            UpstreamFailure: cache miss and the fetch failed.
        """
        key = normalize_url(raw_url)

        try:
            entry = await self._store.get_entry(key)
        except StoreUnavailable as exc:
            logger.warning("Cache read failed for %s, treating as miss: %s", key, exc)
            entry = None

        action = decide(
            entry is not None,
            entry.remaining_ttl if entry is not None else None,
            self._config.rebuild_max_ttl,
        )

        if action is Action.SERVE_FRESH:
            logger.debug("Cache hit for %s", key)
            return entry.value
        if action is Action.SERVE_STALE_AND_REFRESH:
            self._coordinator.schedule_refresh(key)
            return entry.value

        await self._rate_limiter.check(client_id)
        report = await self._coordinator.refresh(key, background=False)
        if report is None:
            raise UpstreamFailure("Failed to fetch Lighthouse score")
        return report
