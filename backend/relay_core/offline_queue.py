from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from .models import LEGS_TABLE, RUNNERS_TABLE, OfflineChange
from .persistence import LocalSnapshotStore
from .remote import RemoteStore, RemoteStoreError


logger = logging.getLogger(__name__)

# Local-only hint carried in queued runner payloads so a rename made offline
# still finds the remote row it came from.
PREVIOUS_NAME_KEY = "previous_name"


def _natural_key(table: str, row: Dict[str, Any]) -> Optional[str]:
    if table == RUNNERS_TABLE:
        name = row.get("name")
        return str(name).strip().lower() if name else None
    number = row.get("number")
    return str(number) if number is not None else None


class OfflineQueue:
    """Edits recorded while disconnected, persisted per team."""

    def __init__(self, snapshots: LocalSnapshotStore) -> None:
        self._snapshots = snapshots
        self._changes: List[OfflineChange] = snapshots.load_offline_queue()

    def __len__(self) -> int:
        return len(self._changes)

    def enqueue(
        self,
        table: str,
        remote_id: str | None,
        payload: Dict[str, Any],
        timestamp: int | None = None,
    ) -> OfflineChange:
        if table not in (RUNNERS_TABLE, LEGS_TABLE):
            raise ValueError(f"Unknown table: {table}")
        change = OfflineChange(
            table=table,
            remote_id=remote_id,
            payload=dict(payload),
            timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        )
        self._changes.append(change)
        self._snapshots.save_offline_queue(self._changes)
        logger.info("Queued offline %s change (%d pending)", table, len(self._changes))
        return change

    def pending(self) -> List[OfflineChange]:
        return sorted(self._changes, key=lambda change: change.timestamp)

    def clear(self) -> None:
        self._changes = []
        self._snapshots.save_offline_queue(self._changes)

    def reload(self) -> None:
        self._changes = self._snapshots.load_offline_queue()

    async def replay(self, remote: RemoteStore, team_id: str) -> Dict[str, Any]:
        """Replay queued changes as upserts keyed on each record's natural key.

        Runners match an existing remote row by name and legs by number; a
        match is updated in place, anything else is inserted. Changes that
        fail stay queued for the next attempt.
        """

        result: Dict[str, Any] = {"synced": 0, "remaining": 0, "errors": []}
        changes = self.pending()
        if not changes:
            return result

        existing: Dict[str, Dict[str, Dict[str, Any]]] = {}
        by_id: Dict[str, Dict[str, Dict[str, Any]]] = {}
        unavailable: Dict[str, str] = {}
        for table in (RUNNERS_TABLE, LEGS_TABLE):
            if not any(change.table == table for change in changes):
                continue
            try:
                rows = await remote.list(table, team_id)
            except RemoteStoreError as exc:
                unavailable[table] = str(exc)
                result["errors"].append(f"{table}: {exc}")
                continue
            existing[table] = {}
            by_id[table] = {}
            for row in rows:
                key = _natural_key(table, row)
                if key is not None:
                    existing[table][key] = row
                if row.get("id"):
                    by_id[table][str(row["id"])] = row

        remaining: List[OfflineChange] = []
        for change in changes:
            if change.table in unavailable:
                remaining.append(change)
                continue

            row = dict(change.payload)
            previous_name = row.pop(PREVIOUS_NAME_KEY, None)
            match = None
            if change.remote_id:
                match = by_id[change.table].get(change.remote_id)
            if match is None:
                key = _natural_key(change.table, row)
                match = existing[change.table].get(key) if key is not None else None
            if match is None and previous_name:
                match = existing[change.table].get(_natural_key(change.table, {"name": previous_name}))

            if match is not None and match.get("id"):
                row["id"] = match["id"]
            else:
                row.pop("id", None)

            try:
                ack = await remote.upsert(change.table, team_id, [row])
            except RemoteStoreError as exc:
                remaining.append(change)
                result["errors"].append(f"{change.table} {_natural_key(change.table, row)}: {exc}")
                continue

            stored = self._stored_row(change.table, row, ack)
            key = _natural_key(change.table, stored)
            if key is not None:
                existing[change.table][key] = stored
            if stored.get("id"):
                by_id[change.table][str(stored["id"])] = stored
            result["synced"] += 1

        self._changes = remaining
        self._snapshots.save_offline_queue(self._changes)
        result["remaining"] = len(remaining)
        logger.info(
            "Offline replay finished: %d synced, %d remaining", result["synced"], result["remaining"]
        )
        return result

    @staticmethod
    def _stored_row(table: str, sent: Dict[str, Any], ack: Any) -> Dict[str, Any]:
        rows = ack.get(table) if isinstance(ack, dict) else ack
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            return {**sent, **rows[0]}
        return sent
