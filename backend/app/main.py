from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional, Union

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from relay_core import LocalSnapshotStore, RaceStore, RemoteStore, SyncCoordinator, SyncSettings
from relay_core.events import Event
from relay_core.models import Leg, Runner, parse_pace
from relay_core.projection import (
    calculate_total_distance_traveled,
    get_leg_status,
    get_major_exchange_times,
    validate_race_state,
    validate_time_update,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sync = coordinator()
    await sync.start()
    try:
        yield
    finally:
        await sync.stop()


app = FastAPI(title="Relay Race Sync API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger(__name__)

TIME_FIELD_NAMES = {"start": "actual_start", "finish": "actual_finish"}


class RunnerModel(BaseModel):
    id: int
    name: str
    pace: float
    van: int
    remote_id: Optional[str] = Field(default=None, alias="remoteId")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class LegModel(BaseModel):
    id: int
    runner_id: int = Field(alias="runnerId")
    distance: float
    projected_start: int = Field(alias="projectedStart")
    projected_finish: int = Field(alias="projectedFinish")
    actual_start: Optional[int] = Field(default=None, alias="actualStart")
    actual_finish: Optional[int] = Field(default=None, alias="actualFinish")
    pace_override: Optional[float] = Field(default=None, alias="paceOverride")
    remote_id: Optional[str] = Field(default=None, alias="remoteId")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    status: str

    model_config = ConfigDict(populate_by_name=True)


class RaceResponse(BaseModel):
    start_time: int = Field(alias="startTime")
    is_setup_complete: bool = Field(alias="isSetupComplete")
    team_id: Optional[str] = Field(default=None, alias="teamId")
    runners: List[RunnerModel]
    legs: List[LegModel]
    current_leg_id: Optional[int] = Field(default=None, alias="currentLegId")
    next_leg_id: Optional[int] = Field(default=None, alias="nextLegId")
    can_undo: bool = Field(alias="canUndo")
    undo_description: Optional[str] = Field(default=None, alias="undoDescription")
    total_distance: float = Field(alias="totalDistance")
    major_exchanges: List[Dict[str, Any]] = Field(alias="majorExchanges")

    model_config = ConfigDict(populate_by_name=True)


class StartTimePayload(BaseModel):
    start_time: int = Field(alias="startTime", gt=0)

    model_config = ConfigDict(populate_by_name=True)


class ActualTimePayload(BaseModel):
    field: Literal["start", "finish"]
    time: Optional[int] = Field(default=None, ge=0)


class DistancePayload(BaseModel):
    distance: float = Field(gt=0)


class RunnerUpdatePayload(BaseModel):
    name: Optional[str] = None
    pace: Optional[Union[float, str]] = Field(default=None, description="Seconds per mile or MM:SS")
    van: Optional[int] = None


class AssignLegsPayload(BaseModel):
    leg_ids: List[int] = Field(alias="legIds")

    model_config = ConfigDict(populate_by_name=True)


class PaceOverridePayload(BaseModel):
    leg_id: int = Field(alias="legId")
    pace: Optional[float] = Field(default=None, gt=0)

    model_config = ConfigDict(populate_by_name=True)


class OnlinePayload(BaseModel):
    online: bool


class ValidationResponse(BaseModel):
    is_valid: bool = Field(alias="isValid")
    issues: List[str]
    warnings: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class RepairResponse(BaseModel):
    repaired: bool
    changes: List[str]


class UndoResponse(BaseModel):
    undone: bool
    description: Optional[str] = None


class ReplaySummary(BaseModel):
    synced: int
    remaining: int
    errors: List[str]


@lru_cache(maxsize=1)
def coordinator() -> SyncCoordinator:
    settings = SyncSettings.from_env()
    snapshots = LocalSnapshotStore(settings.data_dir, settings.team_id)
    race_store = RaceStore()
    remote = RemoteStore.from_settings(settings)
    sync = SyncCoordinator(race_store, remote, snapshots, settings=settings)
    sync.load_local()
    return sync


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _apply(effects: List[Event]) -> None:
    sync = coordinator()
    sync.dispatch(effects)
    await sync.bus.drain()


def _runner_model(runner: Runner) -> RunnerModel:
    return RunnerModel(
        id=runner.id,
        name=runner.name,
        pace=runner.pace,
        van=runner.van,
        remoteId=runner.remote_id,
        updatedAt=runner.updated_at,
    )


def _leg_model(leg: Leg, now: int) -> LegModel:
    return LegModel(
        id=leg.id,
        runnerId=leg.runner_id,
        distance=leg.distance,
        projectedStart=leg.projected_start,
        projectedFinish=leg.projected_finish,
        actualStart=leg.actual_start,
        actualFinish=leg.actual_finish,
        paceOverride=leg.pace_override,
        remoteId=leg.remote_id,
        updatedAt=leg.updated_at,
        status=get_leg_status(leg, now),
    )


def _race_response() -> RaceResponse:
    race_store = coordinator().store
    state = race_store.state
    now = _now_ms()
    current = race_store.current_runner(now)
    following = race_store.next_runner(now)
    return RaceResponse(
        startTime=state.start_time,
        isSetupComplete=state.is_setup_complete,
        teamId=state.team_id,
        runners=[_runner_model(runner) for runner in state.runners],
        legs=[_leg_model(leg, now) for leg in state.legs],
        currentLegId=current.id if current else None,
        nextLegId=following.id if following else None,
        canUndo=race_store.can_undo(),
        undoDescription=race_store.get_undo_description(),
        totalDistance=calculate_total_distance_traveled(state.legs),
        majorExchanges=get_major_exchange_times(state.legs),
    )


def _not_found_or_bad_request(exc: ValueError) -> HTTPException:
    status_code = 404 if "not found" in str(exc).lower() else 400
    return HTTPException(status_code=status_code, detail=str(exc))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/race", response_model=RaceResponse)
def race():
    return _race_response()


@app.post("/race/start-time", response_model=RaceResponse)
async def set_start_time(payload: StartTimePayload):
    sync = coordinator()
    try:
        result = await sync.set_start_time(payload.start_time)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Race start time set to %s (%s)", payload.start_time, result)
    await sync.bus.drain()
    return _race_response()


@app.post("/legs/pace-override", response_model=RaceResponse)
async def set_pace_override(payload: PaceOverridePayload):
    try:
        effects = coordinator().store.set_leg_pace_override(payload.leg_id, payload.pace)
    except ValueError as exc:
        raise _not_found_or_bad_request(exc) from exc
    await _apply(effects)
    return _race_response()


@app.post("/legs/{leg_id}/actual", response_model=RaceResponse)
async def record_actual_time(leg_id: int, payload: ActualTimePayload):
    race_store = coordinator().store
    field_name = TIME_FIELD_NAMES[payload.field]
    if race_store.leg(leg_id) is None:
        raise HTTPException(status_code=404, detail=f"Leg {leg_id} not found")

    check = validate_time_update(race_store.legs, leg_id, field_name, payload.time)
    if not check.is_valid:
        raise HTTPException(status_code=400, detail="; ".join(check.issues))
    for warning in check.warnings:
        logger.info("Leg %s time update: %s", leg_id, warning)

    try:
        effects = race_store.update_leg_actual_time(leg_id, field_name, payload.time)
    except ValueError as exc:
        raise _not_found_or_bad_request(exc) from exc
    await _apply(effects)
    return _race_response()


@app.post("/legs/{leg_id}/distance", response_model=RaceResponse)
async def update_leg_distance(leg_id: int, payload: DistancePayload):
    try:
        effects = coordinator().store.update_leg_distance(leg_id, payload.distance)
    except ValueError as exc:
        raise _not_found_or_bad_request(exc) from exc
    await _apply(effects)
    return _race_response()


@app.patch("/runners/{runner_id}", response_model=RaceResponse)
async def update_runner(runner_id: int, payload: RunnerUpdatePayload):
    try:
        pace = parse_pace(payload.pace) if isinstance(payload.pace, str) else payload.pace
        effects = coordinator().store.update_runner(runner_id, name=payload.name, pace=pace, van=payload.van)
    except ValueError as exc:
        raise _not_found_or_bad_request(exc) from exc
    await _apply(effects)
    return _race_response()


@app.post("/runners/{runner_id}/legs", response_model=RaceResponse)
async def assign_runner_to_legs(runner_id: int, payload: AssignLegsPayload):
    try:
        effects = coordinator().store.assign_runner_to_legs(runner_id, payload.leg_ids)
    except ValueError as exc:
        raise _not_found_or_bad_request(exc) from exc
    await _apply(effects)
    return _race_response()


@app.post("/undo", response_model=UndoResponse)
async def undo():
    race_store = coordinator().store
    description = race_store.get_undo_description()
    effects = race_store.undo_last_start_runner()
    if not effects:
        return UndoResponse(undone=False)
    await _apply(effects)
    return UndoResponse(undone=True, description=description)


@app.get("/validation", response_model=ValidationResponse)
def validation():
    result = validate_race_state(coordinator().store.legs)
    return ValidationResponse(isValid=result.is_valid, issues=result.issues, warnings=result.warnings)


@app.post("/repair", response_model=RepairResponse)
async def repair():
    race_store = coordinator().store
    changes, effects = race_store.repair_leg_states()
    if not race_store.is_data_consistent() and race_store.fix_data_inconsistencies():
        changes.append("Repaired runner assignments")
    await _apply(effects)
    return RepairResponse(repaired=bool(changes), changes=changes)


@app.get("/sync/status")
def sync_status() -> dict:
    return coordinator().status()


@app.post("/sync/online", response_model=ReplaySummary)
async def set_online(payload: OnlinePayload):
    summary = await coordinator().set_online(payload.online)
    return ReplaySummary(
        synced=summary.get("synced", 0),
        remaining=summary.get("remaining", 0),
        errors=[str(item) for item in summary.get("errors", [])],
    )
