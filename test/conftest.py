"""
Shared test fixtures for pagescore.

Provides:
- PageSpeed report fixture loader
- Controllable clock and in-memory / fakeredis stores
- Fake PageSpeed server for E2E tests
"""

import json
from pathlib import Path

import pytest
from fakeredis import FakeServer, aioredis as fakeredis_aioredis
from pytest_httpserver import HTTPServer

from pagescore.store import InMemoryStore, RedisStore

FIXTURES_DIR = Path(__file__).parent / "fixtures" / "pagespeed"


# ---------------------------------------------------------------------------
# Fixture data loaders
# ---------------------------------------------------------------------------

def load_fixture(name: str) -> dict:
    """Load a JSON fixture from test/fixtures/pagespeed/."""
    with open(FIXTURES_DIR / name) as f:
        return json.load(f)


@pytest.fixture()
def report():
    return load_fixture("report.json")


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class FakeClock:
    """Controllable clock for deterministic expiry tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def memory_store(clock):
    store = InMemoryStore()
    store._clock = clock
    return store


@pytest.fixture()
def redis_store():
    """RedisStore over a private fakeredis server (real-time TTLs)."""
    client = fakeredis_aioredis.FakeRedis(server=FakeServer(), decode_responses=True)
    return RedisStore(client)


# ---------------------------------------------------------------------------
# E2E fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def fake_pagespeed_server():
    """
    A real HTTP server that impersonates the PageSpeed Insights API.

    Tests configure responses with expect_request() before calling the app.
    """
    server = HTTPServer(host="127.0.0.1")
    server.start()
    yield server
    server.clear()
    if server.is_running():
        server.stop()

