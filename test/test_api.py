"""Tests for FastAPI endpoints (TestClient with mocked ScoreService)."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from pagescore.config import AppConfig
from pagescore.keys import InvalidRequest
from pagescore.pagespeed_client import UpstreamFailure
from pagescore.ratelimit import RateLimited
from pagescore.store import WindowResult

REPORT = {"lighthouseResult": {"categories": {"performance": {"score": 0.98}}}}


@pytest.fixture()
def mock_score_service():
    mock = AsyncMock()
    mock.get_score.return_value = REPORT
    return mock


def _client_for(mock_score_service, config):
    import pagescore.app as app_module

    # Patch lifespan to skip real startup
    @asynccontextmanager
    async def noop_lifespan(app):
        yield

    original_lifespan = app_module.app.router.lifespan_context
    app_module.app.router.lifespan_context = noop_lifespan
    app_module._score_service = mock_score_service
    app_module._config = config
    try:
        with TestClient(app_module.app, raise_server_exceptions=False) as c:
            yield c
    finally:
        app_module._score_service = None
        app_module._config = None
        app_module.app.router.lifespan_context = original_lifespan


@pytest.fixture()
def client(mock_score_service):
    """TestClient with mocked score service and no auth."""
    yield from _client_for(mock_score_service, AppConfig())


@pytest.fixture()
def auth_client(mock_score_service):
    """TestClient with mocked score service and API key auth enabled."""
    yield from _client_for(mock_score_service, AppConfig(api_key="test-secret"))


class TestHealthEndpoint:
    def test_returns_200(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}

    def test_no_auth_needed(self, auth_client):
        resp = auth_client.get("/health")
        assert resp.status_code == 200


class TestLighthouseEndpoint:
    def test_returns_report(self, client, mock_score_service):
        resp = client.post("/api/lighthouse", json={"url": "https://example.com"})
        assert resp.status_code == 200
        assert resp.json() == REPORT
        mock_score_service.get_score.assert_awaited_once_with(
            "https://example.com", "unknown"
        )

    def test_client_identity_from_real_ip(self, client, mock_score_service):
        client.post(
            "/api/lighthouse",
            json={"url": "https://example.com"},
            headers={"X-Real-IP": "203.0.113.7", "CF-Connecting-IP": "198.51.100.1"},
        )
        mock_score_service.get_score.assert_awaited_once_with(
            "https://example.com", "203.0.113.7"
        )

    def test_client_identity_from_connecting_ip(self, client, mock_score_service):
        client.post(
            "/api/lighthouse",
            json={"url": "https://example.com"},
            headers={"CF-Connecting-IP": "198.51.100.1"},
        )
        mock_score_service.get_score.assert_awaited_once_with(
            "https://example.com", "198.51.100.1"
        )

    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"url": None},
            {"url": 42},
            {"url": ["https://example.com"]},
            {"link": "https://example.com"},
            ["https://example.com"],
            "https://example.com",
        ],
    )
    def test_malformed_body_is_400(self, client, mock_score_service, body):
        resp = client.post("/api/lighthouse", json=body)
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid request"}
        mock_score_service.get_score.assert_not_awaited()

    def test_non_json_body_is_400(self, client, mock_score_service):
        resp = client.post(
            "/api/lighthouse",
            content=b"url=https://example.com",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid request"}
        mock_score_service.get_score.assert_not_awaited()

    def test_invalid_url_is_400(self, client, mock_score_service):
        mock_score_service.get_score.side_effect = InvalidRequest("relative")
        resp = client.post("/api/lighthouse", json={"url": "/relative"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid request"}

    def test_rate_limited_is_429(self, client, mock_score_service):
        mock_score_service.get_score.side_effect = RateLimited(
            "203.0.113.7",
            WindowResult(allowed=False, count=5, limit=5, reset_in=41.2),
        )
        resp = client.post("/api/lighthouse", json={"url": "https://example.com"})
        assert resp.status_code == 429
        assert resp.json() == {"error": "Rate limit exceeded"}
        assert resp.headers["Retry-After"] == "42"

    def test_upstream_failure_is_500(self, client, mock_score_service):
        mock_score_service.get_score.side_effect = UpstreamFailure("boom", 500)
        resp = client.post("/api/lighthouse", json={"url": "https://example.com"})
        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to fetch Lighthouse score"}

    def test_get_not_allowed(self, client):
        resp = client.get("/api/lighthouse")
        assert resp.status_code == 405
        assert "error" in resp.json()

    def test_not_ready(self, client):
        import pagescore.app as app_module

        app_module._score_service = None
        resp = client.post("/api/lighthouse", json={"url": "https://example.com"})
        assert resp.status_code == 503
        assert resp.json() == {"error": "Service not ready"}


class TestHeaders:
    def test_security_headers(self, client):
        resp = client.get("/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "SAMEORIGIN"
        assert resp.headers["Referrer-Policy"] == "no-referrer"
        assert "Strict-Transport-Security" in resp.headers

    def test_cors_preflight(self, client):
        resp = client.options(
            "/api/lighthouse",
            headers={
                "Origin": "https://app.example.org",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "content-type",
            },
        )
        assert resp.status_code == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    def test_cors_on_response(self, client):
        resp = client.post(
            "/api/lighthouse",
            json={"url": "https://example.com"},
            headers={"Origin": "https://app.example.org"},
        )
        assert resp.headers["Access-Control-Allow-Origin"] == "*"


class TestAuthentication:
    def test_rejects_without_key(self, auth_client):
        resp = auth_client.post("/api/lighthouse", json={"url": "https://example.com"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid or missing API key"}

    def test_rejects_wrong_key(self, auth_client):
        resp = auth_client.post(
            "/api/lighthouse",
            json={"url": "https://example.com"},
            headers={"X-API-Key": "wrong"},
        )
        assert resp.status_code == 401

    def test_accepts_correct_key(self, auth_client):
        resp = auth_client.post(
            "/api/lighthouse",
            json={"url": "https://example.com"},
            headers={"X-API-Key": "test-secret"},
        )
        assert resp.status_code == 200

    def test_health_no_auth_needed(self, auth_client):
        resp = auth_client.get("/health")
        assert resp.status_code == 200
