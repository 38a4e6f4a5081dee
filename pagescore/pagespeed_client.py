"""
Async PageSpeed Insights client.

Thin wrapper around httpx. Requests the performance category only and
returns the report untouched. Raises UpstreamFailure on any failure.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"


class UpstreamFailure(Exception):
    """Raised when a score could not be obtained from the scoring service."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PageSpeedClient:
    """Async client for the PageSpeed Insights v5 API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
    ) -> None:
        self._http = http_client
        self._base_url = base_url
        self._api_key = api_key
        self._timeout = timeout

    def _params(self, url: str) -> dict[str, str]:
        params = {"category": "performance", "url": url}
        if self._api_key:
            params["key"] = self._api_key
        return params

    async def fetch_report(self, url: str) -> dict[str, Any]:
        """
        Run a performance audit for `url`.

        Returns the decoded JSON report. No retries.
        """
        try:
            response = await self._http.get(
                self._base_url, params=self._params(url), timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            logger.error("PageSpeed request failed for %s: %s", url, exc)
            raise UpstreamFailure(f"Connection error: {exc}") from exc

        if not response.is_success:
            raise UpstreamFailure(
                f"PageSpeed returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            report = response.json()
        except ValueError as exc:
            raise UpstreamFailure(
                f"Invalid JSON from PageSpeed: {exc}",
                status_code=response.status_code,
            ) from exc

        if not isinstance(report, dict):
            raise UpstreamFailure(
                f"PageSpeed returned a {type(report).__name__} instead of a report",
                status_code=response.status_code,
            )
        return report
