from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest

from relay_core import remote as remote_module
from relay_core.remote import RemoteStore, RemoteStoreError


class _DummyAsyncClient:
    requests: List[Dict[str, Any]] = []
    status_code = 200
    payload: Any = None

    def __init__(self, *args, **kwargs) -> None:
        self.timeout = kwargs.get("timeout")

    async def __aenter__(self) -> "_DummyAsyncClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def post(self, endpoint: str, json: Any, headers: Dict[str, str]):
        _DummyAsyncClient.requests.append({"endpoint": endpoint, "json": json, "headers": headers})
        request = remote_module.httpx.Request("POST", endpoint)
        return remote_module.httpx.Response(_DummyAsyncClient.status_code, request=request, json=_DummyAsyncClient.payload)


class _UnreachableAsyncClient(_DummyAsyncClient):
    async def post(self, endpoint: str, json: Any, headers: Dict[str, str]):
        request = remote_module.httpx.Request("POST", endpoint)
        raise remote_module.httpx.ConnectError("connection refused", request=request)


@pytest.fixture
def dummy_client(monkeypatch):
    _DummyAsyncClient.requests = []
    _DummyAsyncClient.status_code = 200
    _DummyAsyncClient.payload = None
    monkeypatch.setattr(remote_module.httpx, "AsyncClient", _DummyAsyncClient)
    return _DummyAsyncClient


def _store(schema: str = "public") -> RemoteStore:
    return RemoteStore("https://example.supabase.co/", "test-key", schema=schema, device_id="device-1")


def test_list_posts_to_edge_function(dummy_client):
    dummy_client.payload = {"runners": [{"id": "r1", "name": "Ana"}, "junk"]}

    rows = asyncio.run(_store().list("runners", "team-a"))

    assert rows == [{"id": "r1", "name": "Ana"}]
    request = dummy_client.requests[0]
    assert request["endpoint"] == "https://example.supabase.co/functions/v1/runners-list"
    assert request["json"] == {"teamId": "team-a", "deviceId": "device-1"}
    assert request["headers"]["Authorization"] == "Bearer test-key"
    assert "Accept-Profile" not in request["headers"]


def test_upsert_sends_rows_and_action(dummy_client):
    dummy_client.payload = {"legs": [{"id": "l1", "number": 1}]}

    ack = asyncio.run(_store(schema="relay").upsert("legs", "team-a", [{"number": 1}]))

    assert ack == {"legs": [{"id": "l1", "number": 1}]}
    request = dummy_client.requests[0]
    assert request["endpoint"].endswith("/functions/v1/legs-upsert")
    assert request["json"] == {"teamId": "team-a", "deviceId": "device-1", "legs": [{"number": 1}], "action": "upsert"}
    assert request["headers"]["Accept-Profile"] == "relay"
    assert request["headers"]["Content-Profile"] == "relay"


def test_http_error_carries_supabase_detail(dummy_client):
    dummy_client.status_code = 400
    dummy_client.payload = {"message": "invalid team"}

    with pytest.raises(RemoteStoreError, match="invalid team") as excinfo:
        asyncio.run(_store().list("legs", "team-a"))

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail == "invalid team"


def test_transport_error_is_wrapped(monkeypatch):
    monkeypatch.setattr(remote_module.httpx, "AsyncClient", _UnreachableAsyncClient)

    with pytest.raises(RemoteStoreError, match="unavailable"):
        asyncio.run(_store().list("legs", "team-a"))


def test_unconfigured_store_refuses_calls():
    store = RemoteStore("", "")
    assert not store.configured
    with pytest.raises(RemoteStoreError, match="not configured"):
        asyncio.run(store.list("legs", "team-a"))


def test_unknown_table_is_rejected():
    with pytest.raises(ValueError, match="Unknown table"):
        asyncio.run(_store().list("teams", "team-a"))


def test_team_start_time_round_trip(dummy_client):
    dummy_client.payload = {"success": True, "team": {"id": "team-a", "start_time": "2024-06-01T07:00:00.000Z"}}

    team = asyncio.run(_store().get_team("team-a"))
    asyncio.run(_store().update_team("team-a", "2024-06-01T08:00:00.000Z"))

    assert team["start_time"] == "2024-06-01T07:00:00.000Z"
    first, second = dummy_client.requests
    assert first["endpoint"].endswith("/functions/v1/teams-get")
    assert first["json"] == {"teamId": "team-a", "deviceId": "device-1"}
    assert second["endpoint"].endswith("/functions/v1/teams-update")
    assert second["json"] == {"teamId": "team-a", "deviceId": "device-1", "start_time": "2024-06-01T08:00:00.000Z"}


def test_get_team_rejects_payload_without_team(dummy_client):
    dummy_client.payload = {"success": False}

    with pytest.raises(RemoteStoreError, match="teams-get"):
        asyncio.run(_store().get_team("team-a"))
