from __future__ import annotations

import json

import pytest

from relay_core.models import Leg, OfflineChange, Runner
from relay_core.persistence import LocalSnapshotStore


def test_snapshots_are_scoped_per_team(tmp_path):
    team_a = LocalSnapshotStore(tmp_path, "team-a")
    team_b = LocalSnapshotStore(tmp_path, "team-b")

    team_a.save_runners([Runner(id=1, name="Ana", pace=400, van=1, remote_id="r-1")])
    team_a.save_legs([Leg(id=1, runner_id=1, distance=6.26, actual_start=5)])

    assert (tmp_path / "relay_team-a_runners.json").exists()
    assert team_a.load_runners()[0].remote_id == "r-1"
    assert team_a.load_legs()[0].actual_start == 5
    assert team_b.load_runners() == []


def test_corrupt_snapshot_falls_back_to_default(tmp_path, caplog):
    snapshots = LocalSnapshotStore(tmp_path, "team-a")
    snapshots.runners_path.write_text("{not json")

    assert snapshots.load_runners() == []
    assert "Falling back to default" in caplog.text


def test_malformed_rows_are_skipped(tmp_path):
    snapshots = LocalSnapshotStore(tmp_path, "team-a")
    snapshots.legs_path.write_text(json.dumps([{"id": 1, "runner_id": 1, "distance": 5}, {"bogus": True}]))

    legs = snapshots.load_legs()
    assert [leg.id for leg in legs] == [1]


def test_runner_names_and_setup_flags(tmp_path):
    snapshots = LocalSnapshotStore(tmp_path, "team-a")
    snapshots.save_runner_names({1: "Ana", 2: "Ben"})
    snapshots.save_setup(setup_locked=True, is_setup_complete=True, start_time=123)

    assert snapshots.load_runner_names() == {1: "Ana", 2: "Ben"}
    assert snapshots.load_setup() == {
        "setup_locked": True,
        "is_setup_complete": True,
        "start_time": 123,
        "start_time_pending": False,
    }

    snapshots.save_setup(False, True, start_time=456, start_time_pending=True)
    assert snapshots.load_setup()["start_time_pending"]


def test_offline_queue_file_is_removed_when_empty(tmp_path):
    snapshots = LocalSnapshotStore(tmp_path, "team-a")
    change = OfflineChange(table="legs", remote_id=None, payload={"number": 5}, timestamp=1)
    snapshots.save_offline_queue([change])
    assert snapshots.load_offline_queue() == [change]

    snapshots.save_offline_queue([])
    assert not snapshots.offline_queue_path.exists()


def test_unreadable_offline_changes_are_dropped(tmp_path):
    snapshots = LocalSnapshotStore(tmp_path, "team-a")
    snapshots.offline_queue_path.write_text(
        json.dumps(
            [
                {"table": "legs", "remoteId": "leg-1", "payload": {"number": 1}, "timestamp": 2},
                {"table": "teams", "payload": {}, "timestamp": 3},
            ]
        )
    )
    changes = snapshots.load_offline_queue()
    assert [change.remote_id for change in changes] == ["leg-1"]


def test_device_id_is_stable(tmp_path):
    first = LocalSnapshotStore(tmp_path, "team-a").device_id()
    second = LocalSnapshotStore(tmp_path, "team-b").device_id()
    assert first == second


def test_write_failure_raises_runtime_error(tmp_path):
    blocker = tmp_path / "blocked"
    blocker.write_text("file, not a directory")
    snapshots = LocalSnapshotStore(blocker, "team-a")

    with pytest.raises(RuntimeError, match="Failed to write local snapshot"):
        snapshots.save_runners([])


def test_clear_team_removes_team_files(tmp_path):
    snapshots = LocalSnapshotStore(tmp_path, "team-a")
    snapshots.save_runners([])
    snapshots.save_setup(True, True)
    device_id = snapshots.device_id()

    snapshots.clear_team()

    assert not snapshots.runners_path.exists()
    assert not snapshots.setup_path.exists()
    assert snapshots.device_id() == device_id
