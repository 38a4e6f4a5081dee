"""
Per-client sliding-window admission control.

Window state lives in the shared Store so every instance sees the same
counts. Only the cache-miss path consults the limiter.
"""

from __future__ import annotations

import logging
from typing import Mapping, Sequence

from pagescore.store import Store, StoreUnavailable, WindowResult

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"
DEFAULT_IP_HEADERS = ("x-real-ip", "cf-connecting-ip")


class RateLimited(Exception):
    """Raised when a client has used up its window."""

    def __init__(self, identity: str, result: WindowResult):
        super().__init__(
            f"Rate limit exceeded for {identity}: {result.count}/{result.limit}"
        )
        self.identity = identity
        self.result = result


def client_identity(
    headers: Mapping[str, str],
    header_names: Sequence[str] = DEFAULT_IP_HEADERS,
) -> str:
    """
    Best-effort client IP from trusted proxy headers.

    Header names are tried in order; a comma-separated value yields its
    first address. Falls back to "unknown".
    """
    for name in header_names:
        value = headers.get(name)
        if not value:
            continue
        first = value.split(",")[0].strip()
        if first:
            return first
    return UNKNOWN_CLIENT


class RateLimiter:
    """At most `limit` accepted requests per identity per rolling `window` seconds."""

    def __init__(
        self,
        store: Store,
        limit: int = 5,
        window: float = 60.0,
        prefix: str = "RATELIMIT:",
    ) -> None:
        self._store = store
        self._limit = limit
        self._window = window
        self._prefix = prefix

    async def check(self, identity: str) -> WindowResult:
        """Consume one slot for `identity` or raise RateLimited."""
        try:
            result = await self._store.hit_window(
                f"{self._prefix}{identity}", self._limit, self._window
            )
        except StoreUnavailable as exc:
            # Fail open: a store outage should not reject every miss
            logger.warning("Rate limit check skipped for %s: %s", identity, exc)
            return WindowResult(
                allowed=True, count=0, limit=self._limit, reset_in=self._window
            )

        if not result.allowed:
            logger.warning(
                "Rate limit exceeded for %s (%d/%d)",
                identity,
                result.count,
                result.limit,
            )
            raise RateLimited(identity, result)
        return result
