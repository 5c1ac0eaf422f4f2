import json
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import pytest

from auth_utils import (
    OBSERVERS,
    PLATFORM_ADMINS,
    PROJECT_ADMINS,
    auth_header,
    configure_auth_env,
    mock_jwks,
)


def _load_main(tmp_path: Path):
    shipyard_api_dir = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(shipyard_api_dir))
    os.environ["SHIPYARD_DB_PATH"] = str(tmp_path / "shipyard-test.db")
    configure_auth_env()

    for module in ["main", "config", "storage", "policy", "auth", "client", "apply", "management"]:
        if module in sys.modules:
            del sys.modules[module]

    import importlib

    main = importlib.import_module("main")
    return main


pytestmark = pytest.mark.anyio


@asynccontextmanager
async def _client(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path)
    mock_jwks(monkeypatch)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=main.app),
        base_url="http://testserver",
    ) as client:
        yield client, main


def _project(name: str) -> dict:
    return {"apiVersion": "shipyard.io/v1alpha1", "kind": "Project", "metadata": {"name": name}}


def _warehouse(namespace: str, name: str) -> dict:
    return {
        "apiVersion": "shipyard.io/v1alpha1",
        "kind": "Warehouse",
        "metadata": {"namespace": namespace, "name": name},
        "spec": {"subscriptions": [{"image": {"repoURL": "nginx", "semverConstraint": "^1.26.0"}}]},
    }


def _admin() -> dict:
    return auth_header([PLATFORM_ADMINS], subject="root")


async def test_create_project_and_warehouse(tmp_path: Path, monkeypatch):
    async with _client(tmp_path, monkeypatch) as (client, main):
        body = json.dumps([_project("demo"), _warehouse("demo", "wh1")])
        response = await client.post(
            "/v1/resources",
            content=body,
            headers={"Content-Type": "application/json", **_admin()},
        )
    assert response.status_code == 201
    results = response.json()["results"]
    assert len(results) == 2
    assert results[0]["createdResourceManifest"]["kind"] == "Project"
    assert results[1]["createdResourceManifest"]["kind"] == "Warehouse"
    assert results[1]["createdResourceManifest"]["metadata"]["namespace"] == "demo"
    assert set(results[0].keys()) == {"createdResourceManifest"}
    assert main.storage.get("Warehouse", "demo", "wh1")["spec"] == _warehouse("demo", "wh1")["spec"]


async def test_apply_twice_creates_then_updates(tmp_path: Path, monkeypatch):
    manifest = b"""
apiVersion: shipyard.io/v1alpha1
kind: Project
metadata:
  name: demo
---
apiVersion: shipyard.io/v1alpha1
kind: Stage
metadata:
  namespace: demo
  name: test
spec:
  requestedFreight:
  - origin:
      kind: Warehouse
      name: wh1
"""
    async with _client(tmp_path, monkeypatch) as (client, _):
        headers = {"Content-Type": "application/yaml", **_admin()}
        first = await client.put("/v2/resources", content=manifest, headers=headers)
        second = await client.put("/v2/resources", content=manifest, headers=headers)
    assert first.status_code == 200
    assert second.status_code == 200
    created = [result["createdResourceManifest"] for result in first.json()["results"]]
    updated = [result["updatedResourceManifest"] for result in second.json()["results"]]
    for before, after in zip(created, updated):
        assert after["metadata"]["resourceVersion"] == "2"
        after["metadata"]["resourceVersion"] = before["metadata"]["resourceVersion"]
        assert after == before


async def test_update_missing_single_resource_is_not_found(tmp_path: Path, monkeypatch):
    async with _client(tmp_path, monkeypatch) as (client, _):
        response = await client.put(
            "/v1/resources",
            content=json.dumps(_project("demo")),
            headers={"X-Request-Id": "req-404", **_admin()},
        )
    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "NOT_FOUND"
    assert body["error_code"] == "NOT_FOUND"
    assert body["message"] == 'Project "demo" not found'
    assert body["request_id"] == "req-404"


async def test_update_with_upsert_flag_creates(tmp_path: Path, monkeypatch):
    async with _client(tmp_path, monkeypatch) as (client, _):
        response = await client.put(
            "/v1/resources?upsert=true",
            content=json.dumps(_project("demo")),
            headers=_admin(),
        )
    assert response.status_code == 200
    assert response.json()["results"][0]["createdResourceManifest"]["metadata"]["name"] == "demo"


async def test_create_existing_single_resource_conflicts(tmp_path: Path, monkeypatch):
    async with _client(tmp_path, monkeypatch) as (client, _):
        first = await client.post("/v1/resources", content=json.dumps(_project("demo")), headers=_admin())
        second = await client.post("/v1/resources", content=json.dumps(_project("demo")), headers=_admin())
    assert first.status_code == 201
    assert second.status_code == 409
    assert second.json()["code"] == "ALREADY_EXISTS"


async def test_partial_failure_returns_every_result(tmp_path: Path, monkeypatch):
    body = json.dumps([_project("demo"), _warehouse("ghost", "wh1"), _warehouse("demo", "wh2")])
    async with _client(tmp_path, monkeypatch) as (client, _):
        response = await client.put("/v2/resources", content=body, headers=_admin())
    assert response.status_code == 200
    results = response.json()["results"]
    assert [list(result.keys()) for result in results] == [
        ["createdResourceManifest"],
        ["error"],
        ["createdResourceManifest"],
    ]
    assert results[1]["error"] == 'create resource: namespace "ghost" not found'


@pytest.mark.parametrize(
    "body,message",
    [
        (b"", "empty manifest"),
        (b"{invalid json", "invalid JSON"),
        (b"invalid: [unclosed sequence", "invalid YAML"),
        (b"[]", "no resources found in manifest"),
    ],
)
async def test_malformed_manifest_rejected(tmp_path: Path, monkeypatch, body, message):
    async with _client(tmp_path, monkeypatch) as (client, main):
        response = await client.put("/v2/resources", content=body, headers=_admin())
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_ARGUMENT"
    assert response.json()["message"].startswith(message)
    assert main.storage.list_resources("Project") == []


async def test_binary_yaml_value_is_invalid_argument(tmp_path: Path, monkeypatch):
    body = b"kind: Project\nmetadata:\n  name: demo\ndata: !!binary aGVsbG8=\n"
    async with _client(tmp_path, monkeypatch) as (client, main):
        response = await client.put("/v2/resources", content=body, headers=_admin())
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_ARGUMENT"
    assert main.storage.list_resources("Project") == []


async def test_client_disconnect_stops_remaining_applies(tmp_path: Path, monkeypatch):
    body = json.dumps([_project("a"), _project("b"), _warehouse("a", "wh1")])
    polls = []

    async def is_disconnected(self):
        polls.append(True)
        return len(polls) > 1

    async with _client(tmp_path, monkeypatch) as (client, main):
        monkeypatch.setattr(main.Request, "is_disconnected", is_disconnected)
        response = await client.put("/v2/resources", content=body, headers=_admin())
    assert response.status_code == 200
    results = response.json()["results"]
    assert results[0]["createdResourceManifest"]["metadata"]["name"] == "a"
    assert results[1:] == [
        {"error": "request cancelled while applying manifest"},
        {"error": "request cancelled while applying manifest"},
    ]
    assert [project["metadata"]["name"] for project in main.storage.list_resources("Project")] == ["a"]
    assert main.storage.list_resources("Warehouse") == []


async def test_connected_client_applies_every_resource(tmp_path: Path, monkeypatch):
    body = json.dumps([_project("demo"), _warehouse("demo", "wh1")])
    async with _client(tmp_path, monkeypatch) as (client, _):
        response = await client.put("/v2/resources", content=body, headers=_admin())
    assert [list(result.keys()) for result in response.json()["results"]] == [
        ["createdResourceManifest"],
        ["createdResourceManifest"],
    ]


async def test_oversized_manifest_rejected(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("SHIPYARD_MAX_MANIFEST_BYTES", "64")
    async with _client(tmp_path, monkeypatch) as (client, _):
        response = await client.put("/v2/resources", content=json.dumps(_warehouse("demo", "wh1")), headers=_admin())
    assert response.status_code == 413
    assert response.json()["code"] == "PAYLOAD_TOO_LARGE"


async def test_missing_token_rejected(tmp_path: Path, monkeypatch):
    async with _client(tmp_path, monkeypatch) as (client, _):
        response = await client.put("/v2/resources", content=json.dumps(_project("demo")))
    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"


async def test_observer_cannot_create(tmp_path: Path, monkeypatch):
    async with _client(tmp_path, monkeypatch) as (client, main):
        response = await client.put(
            "/v2/resources",
            content=json.dumps(_project("demo")),
            headers=auth_header([OBSERVERS], subject="olive"),
        )
    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"
    assert main.storage.list_resources("Project") == []


async def test_project_admin_bootstraps_project_then_owns_it(tmp_path: Path, monkeypatch):
    alice = auth_header([PROJECT_ADMINS], subject="alice")
    async with _client(tmp_path, monkeypatch) as (client, main):
        bootstrap = await client.put(
            "/v2/resources",
            content=json.dumps([_warehouse("demo", "wh1"), _project("demo")]),
            headers=alice,
        )
        before_reconcile = await client.put(
            "/v2/resources",
            content=json.dumps(_warehouse("demo", "wh1")),
            headers=alice,
        )
        from management import reconcile_project_owners

        reconcile_project_owners(main.storage)
        after_reconcile = await client.put(
            "/v2/resources",
            content=json.dumps(_warehouse("demo", "wh1")),
            headers=alice,
        )
    assert bootstrap.status_code == 200
    kinds = [result["createdResourceManifest"]["kind"] for result in bootstrap.json()["results"]]
    assert kinds == ["Project", "Warehouse"]
    project = bootstrap.json()["results"][0]["createdResourceManifest"]
    assert project["metadata"]["annotations"]["shipyard.io/create-actor"] == "alice"
    assert before_reconcile.status_code == 403
    assert after_reconcile.status_code == 200
    assert "updatedResourceManifest" in after_reconcile.json()["results"][0]


async def test_health_does_not_require_token(tmp_path: Path, monkeypatch):
    async with _client(tmp_path, monkeypatch) as (client, _):
        response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "UP"}
