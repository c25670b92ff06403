from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional


RUNNER_COUNT = 12
DEFAULT_PACE = 420  # 7:00 per mile
DEFAULT_LEG_COUNT = 36

# Hood to Coast leg distances in miles, legs 1-36.
LEG_DISTANCES: List[float] = [
    6.26, 6.05, 4.08, 6.64, 6.05, 7.10,
    5.25, 6.00, 5.38, 6.15, 3.92, 5.85,
    5.21, 7.91, 6.00, 4.00, 5.32, 4.15,
    5.89, 5.58, 5.06, 6.82, 4.16, 4.83,
    3.80, 5.65, 6.36, 3.83, 5.97, 5.32,
    3.96, 4.20, 7.72, 4.12, 7.07, 5.03,
]

# Leg ids where the van rotation changes; 37 is the finish line.
MAJOR_EXCHANGES: List[int] = [7, 13, 19, 25, 31, 37]

RUNNERS_TABLE = "runners"
LEGS_TABLE = "legs"
TEAMS_TABLE = "teams"


@dataclass
class Runner:
    """A team member. ``id`` is the local 1..12 slot, ``remote_id`` the durable row id."""

    id: int
    name: str
    pace: float  # seconds per mile
    van: int
    remote_id: Optional[str] = None
    updated_at: Optional[str] = None

    def is_valid(self) -> bool:
        return (
            isinstance(self.id, int)
            and self.id > 0
            and isinstance(self.pace, (int, float))
            and self.pace > 0
            and self.van in (1, 2)
        )


@dataclass
class Leg:
    id: int
    runner_id: int
    distance: float
    projected_start: int = 0
    projected_finish: int = 0
    actual_start: Optional[int] = None
    actual_finish: Optional[int] = None
    pace_override: Optional[float] = None
    remote_id: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.actual_start is not None and self.actual_finish is None

    @property
    def is_finished(self) -> bool:
        return self.actual_finish is not None


@dataclass
class RaceState:
    start_time: int
    runners: List[Runner] = field(default_factory=list)
    legs: List[Leg] = field(default_factory=list)
    is_setup_complete: bool = False
    team_id: Optional[str] = None
    last_synced_at: Optional[int] = None

    def runner(self, runner_id: int) -> Optional[Runner]:
        for runner in self.runners:
            if runner.id == runner_id:
                return runner
        return None

    def leg(self, leg_id: int) -> Optional[Leg]:
        for leg in self.legs:
            if leg.id == leg_id:
                return leg
        return None


@dataclass
class OfflineChange:
    """A mutation recorded while disconnected, replayed on reconnect."""

    table: str
    remote_id: Optional[str]
    payload: Dict[str, Any]
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "OfflineChange":
        table = str(raw.get("table") or "")
        if table not in (RUNNERS_TABLE, LEGS_TABLE):
            raise ValueError(f"Unknown offline change table: {table!r}")
        payload = raw.get("payload")
        if not isinstance(payload, dict):
            raise ValueError("Offline change payload must be an object")
        remote_id = raw.get("remote_id") or raw.get("remoteId")
        return cls(
            table=table,
            remote_id=str(remote_id) if remote_id else None,
            payload=payload,
            timestamp=int(raw.get("timestamp") or 0),
        )


def default_van(runner_id: int) -> int:
    return 1 if runner_id <= RUNNER_COUNT // 2 else 2


def default_runner(runner_id: int) -> Runner:
    return Runner(id=runner_id, name=f"Runner {runner_id}", pace=DEFAULT_PACE, van=default_van(runner_id))


def make_default_runners() -> List[Runner]:
    return [default_runner(index) for index in range(1, RUNNER_COUNT + 1)]


def copy_legs(legs: List[Leg]) -> List[Leg]:
    return [replace(leg) for leg in legs]


def copy_runners(runners: List[Runner]) -> List[Runner]:
    return [replace(runner) for runner in runners]


def parse_pace(value: str) -> int:
    """Parse ``"MM:SS"`` or bare minutes into seconds per mile."""

    clean = value.strip()
    if ":" in clean:
        minutes_raw, _, seconds_raw = clean.partition(":")
        try:
            minutes = int(minutes_raw)
            seconds = int(seconds_raw or 0)
        except ValueError as exc:
            raise ValueError("Invalid pace format") from exc
        if minutes < 0 or seconds < 0 or seconds >= 60:
            raise ValueError("Invalid pace format")
        return minutes * 60 + seconds

    try:
        minutes = int(clean)
    except ValueError as exc:
        raise ValueError("Invalid pace format") from exc
    if minutes < 0:
        raise ValueError("Invalid pace format")
    return minutes * 60


def format_pace(seconds: float) -> str:
    minutes = int(seconds // 60)
    secs = int(round(seconds % 60))
    if secs == 60:
        minutes, secs = minutes + 1, 0
    return f"{minutes}:{secs:02d}"


# ---- remote row conversion ----------------------------------------------------


def ms_to_iso(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    moment = dt.datetime.fromtimestamp(value / 1000, tz=dt.timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_to_ms(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        moment = dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt.timezone.utc)
    return int(moment.timestamp() * 1000)


def parse_timestamp(value: Optional[str]) -> Optional[dt.datetime]:
    ms = iso_to_ms(value)
    if ms is None:
        return None
    return dt.datetime.fromtimestamp(ms / 1000, tz=dt.timezone.utc)


def utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def runner_from_row(row: Dict[str, Any], local_id: int) -> Runner:
    try:
        pace = float(row.get("pace"))
    except (TypeError, ValueError):
        pace = DEFAULT_PACE
    if pace <= 0:
        pace = DEFAULT_PACE

    try:
        van = int(row.get("van"))
    except (TypeError, ValueError):
        van = default_van(local_id)
    if van not in (1, 2):
        van = default_van(local_id)

    return Runner(
        id=local_id,
        name=str(row.get("name") or f"Runner {local_id}"),
        pace=pace,
        van=van,
        remote_id=str(row["id"]) if row.get("id") else None,
        updated_at=row.get("updated_at"),
    )


def runner_to_row(runner: Runner) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "name": runner.name,
        "pace": runner.pace,
        "van": str(runner.van),
    }
    if runner.remote_id:
        row["id"] = runner.remote_id
    return row


def leg_from_row(row: Dict[str, Any], runner_id: int, fallback_distance: float) -> Leg:
    try:
        distance = float(row.get("distance"))
    except (TypeError, ValueError):
        distance = fallback_distance

    pace_override = row.get("pace_override")
    try:
        pace_override = float(pace_override) if pace_override is not None else None
    except (TypeError, ValueError):
        pace_override = None

    return Leg(
        id=int(row["number"]),
        runner_id=runner_id,
        distance=distance,
        actual_start=iso_to_ms(row.get("start_time")),
        actual_finish=iso_to_ms(row.get("finish_time")),
        pace_override=pace_override,
        remote_id=str(row["id"]) if row.get("id") else None,
        updated_at=row.get("updated_at"),
    )


def leg_to_row(leg: Leg, remote_runner_id: Optional[str]) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "number": leg.id,
        "distance": leg.distance,
        "runner_id": remote_runner_id,
        "start_time": ms_to_iso(leg.actual_start),
        "finish_time": ms_to_iso(leg.actual_finish),
    }
    if leg.pace_override is not None:
        row["pace_override"] = leg.pace_override
    if leg.remote_id:
        row["id"] = leg.remote_id
    return row
