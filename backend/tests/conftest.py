from __future__ import annotations

import asyncio
import copy
import itertools
from typing import Any, Callable, Dict, List, Optional

import pytest

from relay_core.models import utc_now_iso
from relay_core.remote import RemoteStoreError


RACE_START = 1_700_000_000_000


class FakeRemote:
    """In-memory stand-in for the edge-function store, keyed by row id."""

    def __init__(self) -> None:
        self.configured = True
        self.device_id: Optional[str] = None
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {"runners": {}, "legs": {}}
        self.teams: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.fail_list = False
        self.fail_upsert = False
        self.before_upsert: Optional[Callable[[str, List[Dict[str, Any]]], None]] = None
        self._ids = itertools.count(1)

    async def list(self, table: str, team_id: str) -> List[Dict[str, Any]]:
        self.calls.append(("list", table, team_id))
        if self.fail_list:
            raise RemoteStoreError(f"{table}-list unavailable")
        return [copy.deepcopy(row) for row in self.tables[table].values()]

    async def upsert(self, table: str, team_id: str, rows: List[Dict[str, Any]], action: str = "upsert") -> Any:
        self.calls.append(("upsert", table, team_id, copy.deepcopy(rows)))
        if self.before_upsert is not None:
            self.before_upsert(table, rows)
        if self.fail_upsert:
            raise RemoteStoreError(f"{table}-upsert unavailable")
        stored = []
        for row in rows:
            record = dict(row)
            if not record.get("id"):
                record["id"] = f"{table[:-1]}-{next(self._ids)}"
            if not record.get("updated_at"):
                record["updated_at"] = utc_now_iso()
            self.tables[table][record["id"]] = record
            stored.append(copy.deepcopy(record))
        return {table: stored}

    async def get_team(self, team_id: str) -> Dict[str, Any]:
        self.calls.append(("get_team", team_id))
        if self.fail_list:
            raise RemoteStoreError("teams-get unavailable")
        return copy.deepcopy(self.teams.get(team_id, {"id": team_id, "start_time": None}))

    async def update_team(self, team_id: str, start_time: str) -> Any:
        self.calls.append(("update_team", team_id, start_time))
        if self.fail_upsert:
            raise RemoteStoreError("teams-update unavailable")
        team = self.teams.setdefault(team_id, {"id": team_id})
        team["start_time"] = start_time
        return {"success": True, "team": copy.deepcopy(team)}

    def upserts(self, table: str) -> List[List[Dict[str, Any]]]:
        return [call[3] for call in self.calls if call[0] == "upsert" and call[1] == table]

    def rows_by_number(self) -> Dict[int, Dict[str, Any]]:
        return {int(row["number"]): row for row in self.tables["legs"].values()}


class FakeHandle:
    def __init__(self, realtime: "FakeRealtime", name: str, on_status: Callable[[str], None]) -> None:
        self.realtime = realtime
        self.name = name
        self.on_status = on_status
        self.closed = False

    def unsubscribe(self) -> None:
        self.closed = True


class FakeRealtime:
    def __init__(self) -> None:
        self.handles: Dict[str, FakeHandle] = {}
        self.opened: List[str] = []
        self.listeners: Dict[str, Callable[[Dict[str, Any]], None]] = {}
        self.broadcasts: List[tuple] = []

    def subscribe_changes(self, name, table, team_id, on_event, on_status) -> FakeHandle:
        self.listeners[name] = on_event
        return self._open(name, on_status)

    def subscribe_broadcast(self, name, on_message, on_status) -> FakeHandle:
        self.listeners[name] = on_message
        return self._open(name, on_status)

    def broadcast(self, name: str, message: Dict[str, Any]) -> None:
        self.broadcasts.append((name, message))

    def _open(self, name: str, on_status: Callable[[str], None]) -> FakeHandle:
        handle = FakeHandle(self, name, on_status)
        self.handles[name] = handle
        self.opened.append(name)
        return handle

    def emit_status(self, name: str, status: str) -> None:
        self.handles[name].on_status(status)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def fake_realtime() -> FakeRealtime:
    return FakeRealtime()
