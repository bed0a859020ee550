"""
routemerge Pytest Configuration
-------------------------------

Centralized fixtures for all tests.

Features:
 - Auto-clean ROUTEMERGE_* environment variables
 - Logging config to keep CI output clean
 - Registry / cache / poller fixtures
 - A local aiohttp server that plays external configuration providers
"""

import os
import json
import asyncio
import logging
import collections

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from routemerge.registry import InMemorySourceRegistry
from routemerge.services.poller import Poller
from routemerge.services.snapshot_cache import SnapshotCache

# -----------------------------------------------------------------------------
# Logging setup for tests
# -----------------------------------------------------------------------------
LOG = logging.getLogger("routemerge.tests")
LOG.setLevel(logging.WARNING)

_QUIET_LOGGERS = [
    "routemerge.registry",
    "routemerge.poller",
    "routemerge.aggregator",
    "routemerge.rendering",
    "routemerge.local_store",
    "routemerge.api.providers",
    "routemerge.main",
    "routemerge.config",
    "routemerge.request",
]


@pytest.fixture(autouse=True, scope="session")
def quiet_loggers():
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    yield

# -----------------------------------------------------------------------------
# Global environment sanitization
# -----------------------------------------------------------------------------
@pytest.fixture(autouse=True, scope="session")
def clean_env_before_tests():
    """
    Clear out environment variables that could interfere with CI runs.
    """
    for var in list(os.environ):
        if var.startswith("ROUTEMERGE_"):
            os.environ.pop(var, None)
    os.environ["TZ"] = "UTC"
    yield

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
async def _wait_until(predicate, timeout: float = 3.0, interval: float = 0.02) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())


@pytest.fixture
def wait_until():
    return _wait_until


def http_doc(routers=None, services=None, middlewares=None):
    return {"http": {"routers": routers or {}, "services": services or {}, "middlewares": middlewares or {}}}


@pytest.fixture
def make_doc():
    return http_doc

# -----------------------------------------------------------------------------
# Fake provider server
# -----------------------------------------------------------------------------
class FakeProvider:
    """Serves canned responses per path and counts hits."""

    def __init__(self):
        self.responses = {}
        self.delays = {}
        self.hits = collections.Counter()
        self.server = None

    def set_json(self, path: str, payload, status: int = 200):
        self.responses[path] = (status, json.dumps(payload).encode())

    def set_raw(self, path: str, body: bytes, status: int = 200):
        self.responses[path] = (status, body)

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))

    async def handle(self, request: web.Request) -> web.Response:
        self.hits[request.path] += 1
        delay = self.delays.get(request.path)
        if delay:
            await asyncio.sleep(delay)
        status, body = self.responses.get(request.path, (404, b"not found"))
        return web.Response(status=status, body=body, content_type="application/json")


@pytest.fixture
async def provider():
    fake = FakeProvider()
    app = web.Application()
    app.router.add_route("GET", "/{tail:.*}", fake.handle)
    fake.server = TestServer(app)
    await fake.server.start_server()
    yield fake
    await fake.server.close()

# -----------------------------------------------------------------------------
# Core fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def registry():
    return InMemorySourceRegistry()


@pytest.fixture
def cache():
    return SnapshotCache()


@pytest.fixture
async def poller(registry, cache):
    p = Poller(registry, cache, timeout=1.0, min_interval=0.05)
    yield p
    await p.stop_all(grace=1.0)
    await p.close()
