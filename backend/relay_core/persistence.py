from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Leg, OfflineChange, Runner


logger = logging.getLogger(__name__)


class LocalSnapshotStore:
    """JSON snapshots of one team's race data, the offline queue and device id.

    Reads never fail: a missing or corrupt file falls back to a default with a
    warning. Writes raise ``RuntimeError``.
    """

    def __init__(self, data_dir: Path, team_id: str | None = None) -> None:
        self.data_dir = Path(data_dir)
        self.team_id = team_id

    def _team_key(self) -> str:
        return self.team_id or "local"

    def _path(self, name: str) -> Path:
        return self.data_dir / f"relay_{self._team_key()}_{name}.json"

    @property
    def runners_path(self) -> Path:
        return self._path("runners")

    @property
    def legs_path(self) -> Path:
        return self._path("legs")

    @property
    def runner_names_path(self) -> Path:
        return self._path("runner_names")

    @property
    def offline_queue_path(self) -> Path:
        return self._path("offline_queue")

    @property
    def setup_path(self) -> Path:
        return self._path("setup")

    @property
    def device_id_path(self) -> Path:
        return self.data_dir / "relay_device_id.json"

    # ---- snapshots -----------------------------------------------------------

    def load_runners(self) -> List[Runner]:
        rows = self._read_json_file(self.runners_path, [])
        runners: List[Runner] = []
        if not isinstance(rows, list):
            logger.warning("Ignoring runner snapshot with unexpected payload: %s", type(rows))
            return runners
        for row in rows:
            try:
                runners.append(Runner(**row))
            except TypeError as exc:
                logger.warning("Skipping malformed runner snapshot row %s: %s", row, exc)
        return runners

    def save_runners(self, runners: List[Runner]) -> None:
        self._write_json_file(self.runners_path, [asdict(runner) for runner in runners])

    def load_legs(self) -> List[Leg]:
        rows = self._read_json_file(self.legs_path, [])
        legs: List[Leg] = []
        if not isinstance(rows, list):
            logger.warning("Ignoring leg snapshot with unexpected payload: %s", type(rows))
            return legs
        for row in rows:
            try:
                legs.append(Leg(**row))
            except TypeError as exc:
                logger.warning("Skipping malformed leg snapshot row %s: %s", row, exc)
        return legs

    def save_legs(self, legs: List[Leg]) -> None:
        self._write_json_file(self.legs_path, [asdict(leg) for leg in legs])

    def load_runner_names(self) -> Dict[int, str]:
        raw = self._read_json_file(self.runner_names_path, {})
        names: Dict[int, str] = {}
        if not isinstance(raw, dict):
            return names
        for key, value in raw.items():
            try:
                names[int(key)] = str(value)
            except (TypeError, ValueError):
                continue
        return names

    def save_runner_names(self, names: Dict[int, str]) -> None:
        self._write_json_file(self.runner_names_path, {str(key): value for key, value in names.items()})

    def load_setup(self) -> Dict[str, Any]:
        raw = self._read_json_file(self.setup_path, {})
        if not isinstance(raw, dict):
            raw = {}
        return {
            "setup_locked": bool(raw.get("setup_locked", False)),
            "is_setup_complete": bool(raw.get("is_setup_complete", False)),
            "start_time": raw.get("start_time"),
            "start_time_pending": bool(raw.get("start_time_pending", False)),
        }

    def save_setup(
        self,
        setup_locked: bool,
        is_setup_complete: bool,
        start_time: Optional[int] = None,
        start_time_pending: bool = False,
    ) -> None:
        self._write_json_file(
            self.setup_path,
            {
                "setup_locked": setup_locked,
                "is_setup_complete": is_setup_complete,
                "start_time": start_time,
                "start_time_pending": start_time_pending,
            },
        )

    # ---- offline queue -------------------------------------------------------

    def load_offline_queue(self) -> List[OfflineChange]:
        rows = self._read_json_file(self.offline_queue_path, [])
        changes: List[OfflineChange] = []
        if not isinstance(rows, list):
            logger.warning("Ignoring offline queue with unexpected payload: %s", type(rows))
            return changes
        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                changes.append(OfflineChange.from_dict(row))
            except ValueError as exc:
                logger.warning("Dropping unreadable offline change %s: %s", row, exc)
        return changes

    def save_offline_queue(self, changes: List[OfflineChange]) -> None:
        if not changes:
            self._remove_local_file(self.offline_queue_path)
            return
        self._write_json_file(self.offline_queue_path, [change.to_dict() for change in changes])

    # ---- device identity -------------------------------------------------------

    def device_id(self) -> str:
        raw = self._read_json_file(self.device_id_path, {})
        if isinstance(raw, dict) and raw.get("device_id"):
            return str(raw["device_id"])
        device_id = str(uuid.uuid4())
        self._write_json_file(self.device_id_path, {"device_id": device_id})
        logger.info("Generated new device id %s", device_id)
        return device_id

    def clear_team(self) -> None:
        for path in (
            self.runners_path,
            self.legs_path,
            self.runner_names_path,
            self.offline_queue_path,
            self.setup_path,
        ):
            self._remove_local_file(path)

    # ---- file helpers ----------------------------------------------------------

    def _read_json_file(self, path: Path, default: Any) -> Any:
        try:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Falling back to default for %s due to read error: %s", path, exc)
            return default

    def _write_json_file(self, path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
        except OSError as exc:
            raise RuntimeError(f"Failed to write local snapshot {path}") from exc

    @staticmethod
    def _remove_local_file(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Unable to remove local snapshot %s: %s", path, exc)
