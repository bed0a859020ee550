# tests/test_api.py
"""
HTTP API integration test suite
-------------------------------

Drives the FastAPI app through TestClient (startup/shutdown events included).
Providers point at a closed local port so fetches fail fast; merged-view
tests seed the snapshot cache directly.
"""

import pytest
from fastapi.testclient import TestClient

from routemerge.config import Settings
from routemerge.local_store import LocalConfigStore
from routemerge.main import create_app
from routemerge.models import HTTPConfiguration, LocalEntities, LocalRouter, LocalService, Snapshot, Source
from routemerge.registry import InMemorySourceRegistry
from routemerge.utils.common import utc_now

DEAD_URL = "http://127.0.0.1:1/config"


def _settings(**overrides):
    base = {"registry_backend": "memory", "log_level": "WARNING", "http_timeout": 1.0}
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def client():
    app = create_app(_settings())
    with TestClient(app) as c:
        yield c

# -----------------------------------------------------------------------------
# Provider CRUD
# -----------------------------------------------------------------------------
def test_list_starts_empty(client):
    assert client.get("/api/traefik/http-providers").json() == {"providers": []}


def test_create_provider(client):
    resp = client.post(
        "/api/traefik/http-providers",
        json={"name": "ext", "url": DEAD_URL, "priority": 5, "refresh_interval": 2},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["name"] == "ext"
    assert body["priority"] == 5
    assert body["refresh_interval"] == 30
    assert body["is_active"] is True
    assert body["last_error"].startswith("Connection error: ")
    assert body["last_fetched"] == ""

    listed = client.get("/api/traefik/http-providers").json()["providers"]
    assert [p["name"] for p in listed] == ["ext"]


def test_create_duplicate_name_conflicts(client):
    payload = {"name": "ext", "url": DEAD_URL, "is_active": False}
    assert client.post("/api/traefik/http-providers", json=payload).status_code == 201
    resp = client.post("/api/traefik/http-providers", json=payload)
    assert resp.status_code == 409
    assert resp.json() == {"error": "Provider with this name already exists"}


def test_create_rejects_invalid_payload(client):
    resp = client.post("/api/traefik/http-providers", json={"name": "x", "url": "not-a-url"})
    assert resp.status_code == 422


def test_get_unknown_provider(client):
    resp = client.get("/api/traefik/http-providers/42")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Provider not found"}


def test_update_provider(client):
    created = client.post(
        "/api/traefik/http-providers", json={"name": "ext", "url": DEAD_URL, "is_active": False}
    ).json()

    resp = client.put(f"/api/traefik/http-providers/{created['id']}", json={"priority": 8, "refresh_interval": 3})
    assert resp.status_code == 200
    assert resp.json()["priority"] == 8
    assert resp.json()["refresh_interval"] == 30

    aggregator = client.app.state.aggregator
    resp = client.put(f"/api/traefik/http-providers/{created['id']}", json={"is_active": True})
    assert resp.json()["is_active"] is True
    assert aggregator.poller.is_polling(created["id"])

    resp = client.put(f"/api/traefik/http-providers/{created['id']}", json={"is_active": False})
    assert resp.json()["is_active"] is False
    assert not aggregator.poller.is_polling(created["id"])
    assert created["id"] not in aggregator.cache


def test_update_unknown_and_duplicate(client):
    client.post("/api/traefik/http-providers", json={"name": "a", "url": DEAD_URL, "is_active": False})
    b = client.post("/api/traefik/http-providers", json={"name": "b", "url": DEAD_URL, "is_active": False}).json()

    assert client.put("/api/traefik/http-providers/999", json={"priority": 1}).status_code == 404
    resp = client.put(f"/api/traefik/http-providers/{b['id']}", json={"name": "a"})
    assert resp.status_code == 409
    assert resp.json() == {"error": "Provider name already in use"}


def test_delete_provider(client):
    created = client.post("/api/traefik/http-providers", json={"name": "ext", "url": DEAD_URL}).json()
    aggregator = client.app.state.aggregator
    assert aggregator.poller.is_polling(created["id"])

    resp = client.delete(f"/api/traefik/http-providers/{created['id']}")
    assert resp.json() == {"message": "Provider deleted successfully"}
    assert not aggregator.poller.is_polling(created["id"])
    assert client.get(f"/api/traefik/http-providers/{created['id']}").status_code == 404
    assert client.delete(f"/api/traefik/http-providers/{created['id']}").status_code == 404


def test_intervals_follow_settings():
    app = create_app(_settings(min_poll_interval=10, default_refresh_interval=60))
    with TestClient(app) as c:
        created = c.post(
            "/api/traefik/http-providers",
            json={"name": "ext", "url": DEAD_URL, "refresh_interval": 8, "is_active": False},
        ).json()
        assert created["refresh_interval"] == 60

        resp = c.put(f"/api/traefik/http-providers/{created['id']}", json={"refresh_interval": 9})
        assert resp.json()["refresh_interval"] == 60
        resp = c.put(f"/api/traefik/http-providers/{created['id']}", json={"refresh_interval": 10})
        assert resp.json()["refresh_interval"] == 10


def test_local_name_is_rejected(client):
    resp = client.post("/api/traefik/http-providers", json={"name": "local", "url": DEAD_URL})
    assert resp.status_code == 422

    created = client.post(
        "/api/traefik/http-providers", json={"name": "ext", "url": DEAD_URL, "is_active": False}
    ).json()
    resp = client.put(f"/api/traefik/http-providers/{created['id']}", json={"name": "local"})
    assert resp.status_code == 422


def test_registry_write_failure_is_a_503(tmp_path, monkeypatch):
    app = create_app(_settings(registry_backend="file", data_dir=tmp_path))
    with TestClient(app, raise_server_exceptions=False) as c:
        def disk_full(path, data):
            raise OSError("No space left on device")

        monkeypatch.setattr("routemerge.registry.safe_write_json", disk_full)
        resp = c.post("/api/traefik/http-providers", json={"name": "ext", "url": DEAD_URL, "is_active": False})
        assert resp.status_code == 503
        assert resp.json() == {"error": "Provider registry unavailable"}
        assert c.get("/api/traefik/http-providers").json() == {"providers": []}

# -----------------------------------------------------------------------------
# Fetch controls
# -----------------------------------------------------------------------------
def test_refresh(client):
    created = client.post("/api/traefik/http-providers", json={"name": "ext", "url": DEAD_URL}).json()
    resp = client.post(f"/api/traefik/http-providers/{created['id']}/refresh")
    assert resp.status_code == 200
    assert resp.json() == {"message": "Refresh triggered"}
    assert client.post("/api/traefik/http-providers/999/refresh").status_code == 404


def test_refresh_without_aggregator():
    app = create_app(_settings())
    with TestClient(app) as c:
        c.app.state.aggregator = None
        resp = c.post("/api/traefik/http-providers/1/refresh")
        assert resp.status_code == 503
        assert resp.json() == {"error": "Aggregator service not available"}


def test_test_endpoint_reports_fetch_result(client):
    created = client.post(
        "/api/traefik/http-providers", json={"name": "ext", "url": DEAD_URL, "is_active": False}
    ).json()
    assert created["last_error"] == ""

    resp = client.post(f"/api/traefik/http-providers/{created['id']}/test")
    assert resp.status_code == 200
    assert resp.json()["last_error"].startswith("Connection error: ")
    assert client.post("/api/traefik/http-providers/999/test").status_code == 404


def test_response_endpoint_without_cached_document(client):
    created = client.post("/api/traefik/http-providers", json={"name": "ext", "url": DEAD_URL}).json()
    resp = client.get(f"/api/traefik/http-providers/{created['id']}/response")
    assert resp.status_code == 404
    assert resp.json() == {"error": "No cached response available"}

# -----------------------------------------------------------------------------
# Merged views
# -----------------------------------------------------------------------------
@pytest.fixture
def seeded():
    registry = InMemorySourceRegistry([Source(id=1, name="ext", url=DEAD_URL, priority=5)])
    store = LocalConfigStore(
        entities=LocalEntities(
            routers=[LocalRouter(name="app", hostnames=["app.example.com"], service="app-svc")],
            services=[LocalService(name="app-svc", servers=["http://app:8080"])],
        )
    )
    app = create_app(_settings(provider_token="s3cret"), registry=registry, local_store=store)
    with TestClient(app) as c:
        source = Source(id=1, name="ext", url=DEAD_URL, priority=5)
        document = HTTPConfiguration(
            routers={"app": {"rule": "Host(`other`)"}, "ext-router": {"service": "ext-svc"}},
            services={"ext-svc": {"loadBalancer": {"servers": []}}},
        )
        c.app.state.aggregator.cache.put(1, Snapshot.from_document(source, document, utc_now()))
        yield c


def test_merged_config(seeded):
    body = seeded.get("/api/traefik/merged-config").json()

    http = body["config"]["http"]
    assert set(http["routers"]) == {"app", "ext-router"}
    assert http["routers"]["app"]["rule"] == "Host(`app.example.com`)"
    assert set(http["services"]) == {"app-svc", "ext-svc"}
    assert "app-redirect-https" in http["middlewares"]
    assert body["conflicts"] == [
        {"type": "router", "name": "app", "source": "ext", "overridden_by": "local", "source_priority": 5}
    ]
    assert [s["name"] for s in body["sources"]] == ["local", "ext"]
    assert body["sources"][0]["router_count"] == 1
    assert body["sources"][1]["status"] == "healthy"


def test_provider_config_requires_token(seeded):
    assert seeded.get("/api/traefik/provider/config").status_code == 401
    assert seeded.get("/api/traefik/provider/config", params={"token": "wrong"}).status_code == 401

    resp = seeded.get("/api/traefik/provider/config", headers={"Authorization": "Bearer s3cret"})
    assert resp.status_code == 200
    assert set(resp.json()["http"]["routers"]) == {"app", "ext-router"}

    assert seeded.get("/api/traefik/provider/config", params={"token": "s3cret"}).status_code == 200


def test_provider_config_without_token_configured(client):
    resp = client.get("/api/traefik/provider/config")
    assert resp.status_code == 200
    assert resp.json() == {"http": {"routers": {}, "services": {}, "middlewares": {}}}

# -----------------------------------------------------------------------------
# Health & metrics
# -----------------------------------------------------------------------------
def test_health_probes(client):
    assert client.get("/health/live").text == "OK"
    ready = client.get("/health/ready")
    assert ready.status_code == 200
    assert ready.json()["ready"] is True


def test_metrics_endpoint(client):
    client.post("/api/traefik/http-providers", json={"name": "ext", "url": DEAD_URL})
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "routemerge_fetch_total" in resp.text
    assert "routemerge_active_pollers" in resp.text


def test_request_id_header(client):
    resp = client.get("/health/live", headers={"X-Request-ID": "abc123"})
    assert resp.headers["X-Request-ID"] == "abc123"
