"""FastAPI event ingress tests."""

from __future__ import annotations

from pathlib import Path
import sys
import time

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

import fluxwarden.api.main as api_main
from fluxwarden.api.main import app
from fluxwarden.api.routes import app_state, get_engine
from fluxwarden.control_plane.node_client import NodeApiClient
from fluxwarden.control_plane.registry import Node
from fluxwarden.main import FluxWardenApp
from fluxwarden.shared.settings import Settings

LIVE_API_URL = "http://10.0.0.5:16127"


class OneNodeClient(NodeApiClient):
    async def probe(self, api_url: str) -> bool:
        return api_url == LIVE_API_URL


class RecordingSurface:
    def __init__(self):
        self.purged: list[str] = []

    async def purge_session(self, node: Node) -> None:
        self.purged.append(node.node_id)

    async def reload_display(self, node: Node) -> None:
        pass


def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.02)


@pytest.fixture
def surface(monkeypatch) -> RecordingSurface:
    surface = RecordingSurface()
    settings = Settings(scan_hosts=("10.0.0.5",), target_prefixes=("foo",), settle_delay=30)
    original_create = FluxWardenApp.create.__func__

    async def create(cls, _settings, client=None, surface_=None):
        return await original_create(cls, settings, client=OneNodeClient(), surface=surface)

    monkeypatch.setattr(api_main, "load_settings", lambda: settings)
    monkeypatch.setattr(FluxWardenApp, "create", classmethod(create))
    app_state.engine = None
    app_state.owns_engine = False
    return surface


def _node_state(client: TestClient, node_id: str) -> str:
    nodes = client.get("/v1/nodes").json()["nodes"]
    return next(n["state"] for n in nodes if n["id"] == node_id)


def test_engine_dependency_requires_initialization() -> None:
    app_state.engine = None
    with pytest.raises(HTTPException) as exc_info:
        get_engine()
    assert exc_info.value.status_code == 503


def test_health_and_nodes(surface: RecordingSurface) -> None:
    with TestClient(app) as client:
        health = client.get("/v1/health")
        assert health.status_code == 200
        assert health.json()["node_count"] == 1
        assert health.json()["credential_sealing"] is True

        nodes = client.get("/v1/nodes").json()
        assert nodes["count"] == 1
        assert nodes["nodes"][0]["id"] == "IP01-node01"
        assert nodes["nodes"][0]["partition"] == "persist:IP01-node01"
        assert "token" not in nodes["nodes"][0]

    assert app_state.engine is None


def test_credential_lifecycle_over_http(surface: RecordingSurface) -> None:
    with TestClient(app) as client:
        accepted = client.post("/v1/nodes/IP01-node01/credential", json={"token": "tok-1"})
        assert accepted.status_code == 202
        assert accepted.json() == {"node_id": "IP01-node01", "event": "credential.acquired", "accepted": True}
        _wait_for(lambda: _node_state(client, "IP01-node01") == "scheduled")

        assert client.delete("/v1/nodes/IP01-node01/credential").status_code == 202
        _wait_for(lambda: _node_state(client, "IP01-node01") == "unauthenticated")

        client.post("/v1/nodes/IP01-node01/credential", json={"token": "tok-2"})
        _wait_for(lambda: _node_state(client, "IP01-node01") == "scheduled")
        version = client.post(
            "/v1/nodes/IP01-node01/version",
            json={"old_version": "4.0.0", "new_version": "4.1.0"},
        )
        assert version.status_code == 202
        _wait_for(lambda: _node_state(client, "IP01-node01") == "unauthenticated")
        assert surface.purged == []


def test_refresh_purges_session(surface: RecordingSurface) -> None:
    with TestClient(app) as client:
        assert client.post("/v1/nodes/IP01-node01/refresh").status_code == 202
        _wait_for(lambda: surface.purged == ["IP01-node01"])


def test_unknown_node_and_bad_body(surface: RecordingSurface) -> None:
    with TestClient(app) as client:
        assert client.post("/v1/nodes/IP09-node01/credential", json={"token": "t"}).status_code == 404
        assert client.post("/v1/nodes/IP01-node01/credential", json={"token": ""}).status_code == 422
        assert client.delete("/v1/nodes/IP09-node01/credential").status_code == 404


def test_logs_are_redacted(surface: RecordingSurface) -> None:
    with TestClient(app) as client:
        client.post("/v1/nodes/IP01-node01/credential", json={"token": "tok-very-secret"})
        _wait_for(lambda: _node_state(client, "IP01-node01") == "scheduled")

        response = client.get("/v1/logs", params={"limit": 50})
        assert response.status_code == 200
        body = response.json()
        assert body["count"] == len(body["lines"]) > 0
        assert all("tok-very-secret" not in line for line in body["lines"])
