"""
FastAPI application for pagescore.

Lifespan manages the httpx client, the shared store, background tasks and
the score service.
Routes: POST /api/lighthouse, GET /health.
Optional API key authentication on /api/* endpoints.
"""

from __future__ import annotations

import logging
import math
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from pagescore.config import AppConfig, load_config
from pagescore.keys import InvalidRequest
from pagescore.models import ErrorResponse, HealthResponse, ScoreRequest
from pagescore.pagespeed_client import PageSpeedClient, UpstreamFailure
from pagescore.ratelimit import RateLimited, RateLimiter, client_identity
from pagescore.refresh import RefreshCoordinator
from pagescore.service import ScoreService
from pagescore.store import InMemoryStore, RedisStore, Store
from pagescore.tasks import TaskTracker

logger = logging.getLogger(__name__)

# Global references set during lifespan
_score_service: Optional[ScoreService] = None
_config: Optional[AppConfig] = None

SECURITY_HEADERS = {
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


def _build_store(config: AppConfig) -> Store:
    if config.redis_url:
        return RedisStore.from_url(
            config.redis_url,
            socket_connect_timeout=5,
            socket_timeout=5,
            health_check_interval=30,
        )
    logger.warning("REDIS_URL not set; using a process-local in-memory store")
    return InMemoryStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load config, create HTTP client, store, score service."""
    global _score_service, _config

    # Configure logging
    log_level = os.environ.get("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    _config = load_config()
    logger.info(
        "Loaded config: serve_stale_interval=%d, rebuild_max_ttl=%d, "
        "rate_limit=%d/%ds",
        _config.serve_stale_interval,
        _config.rebuild_max_ttl,
        _config.rate_limit_requests,
        _config.rate_limit_window,
    )

    store = _build_store(_config)
    tasks = TaskTracker()
    async with httpx.AsyncClient() as http_client:
        pagespeed = PageSpeedClient(
            http_client=http_client,
            base_url=_config.pagespeed_base_url,
            api_key=_config.pagespeed_api_key,
            timeout=_config.fetch_timeout,
        )
        coordinator = RefreshCoordinator(
            store=store,
            client=pagespeed,
            tasks=tasks,
            serve_stale_interval=_config.serve_stale_interval,
            lock_ttl=_config.lock_ttl,
            lock_prefix=_config.lock_prefix,
        )
        rate_limiter = RateLimiter(
            store=store,
            limit=_config.rate_limit_requests,
            window=_config.rate_limit_window,
            prefix=_config.rate_limit_prefix,
        )
        _score_service = ScoreService(
            config=_config,
            store=store,
            rate_limiter=rate_limiter,
            coordinator=coordinator,
        )
        logger.info("pagescore ready")
        yield

        # Let background refreshes and deferred cache writes finish
        await tasks.drain(timeout=_config.fetch_timeout)

    await store.close()
    _score_service = None
    _config = None


app = FastAPI(
    title="pagescore API",
    version="1.0.0",
    description="""
Cached Lighthouse performance scores from Google PageSpeed Insights.

## Caching

- Reports are cached for 24 hours and always served once cached.
- Reports older than 5 minutes are refreshed in the background.
- Uncached URLs are fetched synchronously, limited to 5 per minute per client.

## Authentication

Optional API key via `X-API-Key` header. The `/health` endpoint is always unauthenticated.
    """.strip(),
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "lighthouse",
            "description": "Performance reports for URLs",
        },
        {
            "name": "health",
            "description": "Service health check",
        },
    ],
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


# ---------------------------------------------------------------------------
# Error responses
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


@app.exception_handler(InvalidRequest)
async def invalid_request_handler(request: Request, exc: InvalidRequest):
    logger.debug("Invalid request: %s", exc)
    return _error(400, "Invalid request")


@app.exception_handler(RateLimited)
async def rate_limited_handler(request: Request, exc: RateLimited):
    retry_after = max(1, math.ceil(exc.result.reset_in))
    return _error(429, "Rate limit exceeded", {"Retry-After": str(retry_after)})


@app.exception_handler(UpstreamFailure)
async def upstream_failure_handler(request: Request, exc: UpstreamFailure):
    return _error(500, "Failed to fetch Lighthouse score")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


# ---------------------------------------------------------------------------
# Authentication dependency
# ---------------------------------------------------------------------------

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    api_key: Optional[str] = Security(api_key_header),
) -> None:
    """Check API key if one is configured."""
    if _config is None or _config.api_key is None:
        return  # No auth configured
    if api_key != _config.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["health"],
    summary="Health check",
    response_description="Service is healthy",
)
async def health():
    """
    Health check endpoint for monitoring and Docker health checks.

    Always returns HTTP 200. No authentication required.
    """
    return {"status": "healthy"}


@app.post(
    "/api/lighthouse",
    dependencies=[Depends(verify_api_key)],
    tags=["lighthouse"],
    summary="Get performance report",
    response_description="The PageSpeed Insights report for the URL",
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {
                "application/json": {"schema": ScoreRequest.model_json_schema()}
            },
        }
    },
    responses={
        400: {"model": ErrorResponse, "description": "Missing or malformed url"},
        429: {"model": ErrorResponse, "description": "Too many uncached lookups"},
        500: {"model": ErrorResponse, "description": "PageSpeed request failed"},
    },
)
async def lighthouse(request: Request):
    """
    Return the cached PageSpeed report for `url`, fetching it if needed.

    Cached reports are returned immediately, even when a background
    refresh is started. Only uncached URLs count against the rate limit.
    The client is identified by the `X-Real-IP` / `CF-Connecting-IP`
    headers set by the fronting proxy.
    """
    if _score_service is None or _config is None:
        raise HTTPException(status_code=503, detail="Service not ready")

    try:
        body = await request.json()
        score_request = ScoreRequest.model_validate(body)
    except (ValueError, ValidationError) as exc:
        raise InvalidRequest(str(exc)) from exc

    client_id = client_identity(request.headers, _config.client_ip_headers)
    report = await _score_service.get_score(score_request.url, client_id)
    return JSONResponse(report)
