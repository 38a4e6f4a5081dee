"""
Pure cache freshness policy.

No I/O. Maps the state of a cache entry to what the request handler
should do with it (stale-while-revalidate).
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

# Maximum lifetime of a cached report: 24 hours
SERVE_STALE_INTERVAL = 24 * 60 * 60
# Entries with less remaining TTL than this are rebuilt in the background,
# i.e. once they are older than 5 minutes
REBUILD_MAX_TTL = SERVE_STALE_INTERVAL - 5 * 60


class Action(str, Enum):
    SERVE_FRESH = "serve_fresh"
    SERVE_STALE_AND_REFRESH = "serve_stale_and_refresh"
    MISS_AND_FETCH = "miss_and_fetch"


def decide(
    entry_exists: bool,
    remaining_ttl: Optional[float],
    rebuild_max_ttl: float = REBUILD_MAX_TTL,
) -> Action:
    """
    Decide how to answer a request for a cached key.

    Args:
        entry_exists: Whether the store returned a value.
        remaining_ttl: Seconds until the entry expires (None if unknown).
        rebuild_max_ttl: Below this remaining TTL an entry is aging.

    Returns:
        SERVE_FRESH, SERVE_STALE_AND_REFRESH or MISS_AND_FETCH.
    """
    if not entry_exists or remaining_ttl is None or remaining_ttl <= 0:
        return Action.MISS_AND_FETCH
    if remaining_ttl < rebuild_max_ttl:
        return Action.SERVE_STALE_AND_REFRESH
    return Action.SERVE_FRESH
