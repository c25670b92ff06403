from __future__ import annotations

import asyncio

from relay_core.offline_queue import PREVIOUS_NAME_KEY, OfflineQueue
from relay_core.persistence import LocalSnapshotStore


def _queue(tmp_path) -> OfflineQueue:
    return OfflineQueue(LocalSnapshotStore(tmp_path, "team-a"))


def test_enqueue_persists_across_instances(tmp_path):
    queue = _queue(tmp_path)
    queue.enqueue("legs", None, {"number": 5, "start_time": "2025-08-22T10:00:00.000Z"}, timestamp=10)

    reloaded = _queue(tmp_path)
    assert len(reloaded) == 1
    assert reloaded.pending()[0].payload["number"] == 5

    reloaded.clear()
    assert len(_queue(tmp_path)) == 0


def test_replay_updates_matches_and_inserts_new_rows(tmp_path, fake_remote):
    fake_remote.tables["runners"]["runner-a"] = {"id": "runner-a", "name": "Ana", "pace": 420, "van": "1"}
    fake_remote.tables["legs"]["leg-5"] = {"id": "leg-5", "number": 5, "distance": 6.05, "start_time": None}

    queue = _queue(tmp_path)
    queue.enqueue("legs", None, {"number": 5, "start_time": "2025-08-22T10:00:00.000Z"}, timestamp=2)
    queue.enqueue("runners", None, {"name": "ana", "pace": 390, "van": "1"}, timestamp=1)
    queue.enqueue("runners", None, {"name": "Newcomer", "pace": 500, "van": "2"}, timestamp=3)

    summary = asyncio.run(queue.replay(fake_remote, "team-a"))

    assert summary == {"synced": 3, "remaining": 0, "errors": []}
    assert fake_remote.tables["runners"]["runner-a"]["pace"] == 390
    assert fake_remote.tables["legs"]["leg-5"]["start_time"] == "2025-08-22T10:00:00.000Z"
    names = sorted(row["name"] for row in fake_remote.tables["runners"].values())
    assert names == ["Newcomer", "ana"]
    assert len(queue) == 0

    upserts = [call for call in fake_remote.calls if call[0] == "upsert"]
    assert [call[1] for call in upserts] == ["runners", "legs", "runners"]


def test_replay_matches_renamed_runner_by_previous_name(tmp_path, fake_remote):
    fake_remote.tables["runners"]["runner-a"] = {"id": "runner-a", "name": "Ana", "pace": 420, "van": "1"}

    queue = _queue(tmp_path)
    queue.enqueue("runners", None, {"name": "Anna", "pace": 420, "van": "1", PREVIOUS_NAME_KEY: "Ana"})
    asyncio.run(queue.replay(fake_remote, "team-a"))

    assert list(fake_remote.tables["runners"]) == ["runner-a"]
    stored = fake_remote.tables["runners"]["runner-a"]
    assert stored["name"] == "Anna"
    assert PREVIOUS_NAME_KEY not in stored


def test_failed_changes_stay_queued(tmp_path, fake_remote):
    queue = _queue(tmp_path)
    queue.enqueue("legs", "leg-5", {"number": 5}, timestamp=1)
    fake_remote.fail_upsert = True

    summary = asyncio.run(queue.replay(fake_remote, "team-a"))

    assert summary["synced"] == 0
    assert summary["remaining"] == 1
    assert summary["errors"] == ["legs 5: legs-upsert unavailable"]
    assert len(_queue(tmp_path)) == 1


def test_unreachable_table_keeps_its_changes(tmp_path, fake_remote):
    queue = _queue(tmp_path)
    queue.enqueue("runners", None, {"name": "Ana", "pace": 400, "van": "1"}, timestamp=1)
    fake_remote.fail_list = True

    summary = asyncio.run(queue.replay(fake_remote, "team-a"))

    assert summary["remaining"] == 1
    assert summary["errors"] == ["runners: runners-list unavailable"]
