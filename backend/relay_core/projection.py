"""Schedule projection and leg-state validation.

Every function here is pure: legs are never mutated in place, changed legs are
replaced by copies. Given the same legs, runners and race start time the
output is identical on every device, which is what lets independently
computed schedules converge once the underlying records converge.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence

from .models import LEG_DISTANCES, MAJOR_EXCHANGES, Leg, Runner


logger = logging.getLogger(__name__)

NEXT_UP_WINDOW_MS = 30 * 60 * 1000
LONG_RUNNING_WARNING_HOURS = 6
HANDOFF_GAP_WARNING_MS = 5 * 60 * 1000

STATUS_READY = "ready"
STATUS_RUNNING = "running"
STATUS_FINISHED = "finished"
STATUS_NEXT_UP = "next-up"


class RaceInitializationError(ValueError):
    """Raised when a race cannot be laid out from the supplied inputs."""


@dataclass
class ValidationResult:
    is_valid: bool
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class RepairResult:
    repaired: bool
    changes: List[str]
    legs: List[Leg]


def _now_ms() -> int:
    return int(time.time() * 1000)


def calculate_projected_finish(start_time: int, pace: float, distance: float) -> int:
    return start_time + int(round(pace * distance * 1000))


def effective_pace(leg: Leg, runner: Optional[Runner]) -> Optional[float]:
    if leg.pace_override is not None and leg.pace_override > 0:
        return leg.pace_override
    if runner is None:
        return None
    return runner.pace


def initialize_race(
    start_time: int,
    runners: Sequence[Runner],
    distances: Sequence[float] = LEG_DISTANCES,
) -> List[Leg]:
    """Lay out every leg with runners assigned round-robin by leg index."""

    if not runners:
        raise RaceInitializationError("Cannot initialize race: no runners provided")
    if start_time is None or start_time <= 0:
        raise RaceInitializationError("Cannot initialize race: invalid start time")

    valid_runners = [runner for runner in runners if runner is not None and runner.is_valid()]
    rejected = [runner for runner in runners if runner is None or not runner.is_valid()]
    if rejected:
        logger.warning("Skipping %d invalid runners during race initialization: %s", len(rejected), rejected)
    if not valid_runners:
        raise RaceInitializationError("Cannot initialize race: no valid runners found")

    legs: List[Leg] = []
    current_start = start_time
    for index, distance in enumerate(distances):
        runner = valid_runners[index % len(valid_runners)]
        projected_finish = calculate_projected_finish(current_start, runner.pace, distance)
        legs.append(
            Leg(
                id=index + 1,
                runner_id=runner.id,
                distance=distance,
                projected_start=current_start,
                projected_finish=projected_finish,
            )
        )
        current_start = projected_finish

    logger.info("Initialized %d legs with %d runners", len(legs), len(valid_runners))
    return legs


def recalculate_projections(
    legs: Sequence[Leg],
    from_index: int,
    runners: Iterable[Runner],
    race_start_time: Optional[int] = None,
) -> List[Leg]:
    """Recompute projected start/finish for every leg at or after ``from_index``.

    A leg that has actually started keeps its ``projected_start``; only its
    projected finish moves, measured from the actual start.
    """

    updated = list(legs)
    runner_by_id: Dict[int, Runner] = {runner.id: runner for runner in runners}

    for index in range(max(0, from_index), len(updated)):
        leg = updated[index]
        pace = effective_pace(leg, runner_by_id.get(leg.runner_id))
        if pace is None:
            continue

        started = leg.actual_start is not None
        if index == 0:
            if started:
                start = leg.actual_start
            elif race_start_time:
                start = race_start_time
            else:
                start = leg.projected_start
        elif started and leg.projected_start:
            start = leg.projected_start
        else:
            previous = updated[index - 1]
            start = previous.actual_finish if previous.actual_finish is not None else previous.projected_finish

        finish_base = leg.actual_start if started else start
        finish = calculate_projected_finish(finish_base, pace, leg.distance)
        if start != leg.projected_start or finish != leg.projected_finish:
            updated[index] = replace(leg, projected_start=start, projected_finish=finish)

    return updated


def validate_race_state(legs: Sequence[Leg]) -> ValidationResult:
    issues: List[str] = []
    ordered = sorted(legs, key=lambda leg: leg.id)

    for current, following in zip(ordered, ordered[1:]):
        if following.id != current.id + 1:
            issues.append(f"Gap in leg sequence: {current.id} -> {following.id}")
        if (
            current.actual_finish is not None
            and following.actual_start is not None
            and current.actual_finish > following.actual_start
        ):
            issues.append(f"Leg {current.id} finished after Leg {following.id} started")

    for leg in ordered:
        if leg.actual_finish is not None and leg.actual_start is None:
            issues.append(f"Leg {leg.id} has finish time but no start time")
        elif (
            leg.actual_finish is not None
            and leg.actual_start is not None
            and leg.actual_finish <= leg.actual_start
        ):
            issues.append(f"Leg {leg.id} finish time is not after its start time")

    running = [leg.id for leg in ordered if leg.is_running]
    if len(running) > 1:
        issues.append("Multiple runners currently running: " + ", ".join(str(leg_id) for leg_id in running))

    if ordered and ordered[-1].actual_finish is not None:
        unfinished = [leg.id for leg in ordered[:-1] if leg.actual_finish is None]
        if unfinished:
            issues.append(
                "Race marked as complete but legs "
                + ", ".join(str(leg_id) for leg_id in unfinished)
                + " are not finished"
            )

    return ValidationResult(is_valid=not issues, issues=issues)


def validate_time_update(
    legs: Sequence[Leg],
    leg_id: int,
    field_name: str,
    new_time: Optional[int],
) -> ValidationResult:
    """Check a proposed actual-time edit before it is applied."""

    if field_name not in ("actual_start", "actual_finish"):
        raise ValueError(f"Unsupported time field: {field_name}")

    by_id = {leg.id: leg for leg in legs}
    leg = by_id.get(leg_id)
    if leg is None:
        return ValidationResult(is_valid=False, issues=[f"Leg {leg_id} not found"])

    issues: List[str] = []
    warnings: List[str] = []
    proposed = [replace(item, **{field_name: new_time}) if item.id == leg_id else item for item in legs]

    running = [item.id for item in proposed if item.is_running]
    if len(running) > 1:
        issues.append("Multiple legs running simultaneously: " + ", ".join(str(item) for item in running))

    previous = by_id.get(leg_id - 1)
    following = by_id.get(leg_id + 1)

    if field_name == "actual_start" and new_time is not None:
        if previous is not None and previous.actual_finish is not None and new_time < previous.actual_finish:
            issues.append(f"Cannot start Leg {leg_id} before Leg {leg_id - 1} finished")
        for item in legs:
            if item.is_running and item.id != leg_id:
                issues.append(f"Cannot start Leg {leg_id} while Leg {item.id} is still running")
                break

    if field_name == "actual_finish" and new_time is not None:
        if leg.actual_start is not None and new_time <= leg.actual_start:
            issues.append("Finish time must be after start time")
        if following is not None and following.actual_start is not None and new_time > following.actual_start:
            issues.append(f"Cannot finish Leg {leg_id} after Leg {leg_id + 1} has already started")
        if following is not None and following.actual_start is None:
            warnings.append(f"Leg {leg_id} finished but Leg {leg_id + 1} hasn't started yet")

    return ValidationResult(is_valid=not issues, issues=issues, warnings=warnings)


def detect_and_repair_impossible_leg_states(legs: Sequence[Leg], now: Optional[int] = None) -> RepairResult:
    """Finish any running leg whose successor has already started.

    The finish is back-filled from the successor's start. A leg that is
    simply still running is left alone, only flagged when it has been out
    for an implausibly long time.
    """

    now = _now_ms() if now is None else now
    updated = list(legs)
    position = {leg.id: index for index, leg in enumerate(updated)}
    ordered = sorted(updated, key=lambda leg: leg.id)
    changes: List[str] = []

    for current, following in zip(ordered, ordered[1:] + [None]):
        if not current.is_running:
            continue
        if following is not None and following.actual_start is not None:
            updated[position[current.id]] = replace(current, actual_finish=following.actual_start)
            changes.append(
                f"Auto-finished Leg {current.id} because Leg {following.id} started (logical impossibility)"
            )
        else:
            hours_running = round((now - current.actual_start) / (60 * 60 * 1000))
            if hours_running > LONG_RUNNING_WARNING_HOURS:
                logger.warning("Leg %s has been running for %s hours", current.id, hours_running)

    for change in changes:
        logger.info(change)
    return RepairResult(repaired=bool(changes), changes=changes, legs=updated)


def auto_fix_single_runner_violations(legs: Sequence[Leg], now: Optional[int] = None) -> RepairResult:
    now = _now_ms() if now is None else now
    updated = list(legs)
    position = {leg.id: index for index, leg in enumerate(updated)}
    changes: List[str] = []

    running = sorted((leg for leg in updated if leg.is_running), key=lambda leg: leg.id)
    if len(running) > 1:
        for leg in running[1:]:
            following = next((item for item in updated if item.id == leg.id + 1), None)
            finish = following.actual_start if following is not None and following.actual_start else now
            if finish <= leg.actual_start:
                finish = max(now, leg.actual_start + 1)
            updated[position[leg.id]] = replace(leg, actual_finish=finish)
            changes.append(f"Auto-finished Leg {leg.id} to resolve multiple runners conflict")

    ordered = sorted(updated, key=lambda leg: leg.id)
    for index in range(len(ordered) - 1):
        current = ordered[index]
        following = ordered[index + 1]
        if current.actual_finish is not None and following.actual_start is None:
            started = replace(following, actual_start=current.actual_finish)
            updated[position[following.id]] = started
            ordered[index + 1] = started
            changes.append(f"Auto-started Leg {following.id} to fill gap after Leg {current.id}")

    for change in changes:
        logger.info(change)
    return RepairResult(repaired=bool(changes), changes=changes, legs=updated)


# ---- schedule queries -------------------------------------------------------


def get_leg_status(leg: Leg, now: int) -> str:
    if leg.actual_finish is not None:
        return STATUS_FINISHED
    if leg.actual_start is not None:
        return STATUS_RUNNING
    start = leg.projected_start
    if now < start and start - now <= NEXT_UP_WINDOW_MS:
        return STATUS_NEXT_UP
    return STATUS_READY


def get_effective_start_time(leg: Leg, legs: Sequence[Leg], race_start_time: Optional[int] = None) -> int:
    if leg.actual_start is not None:
        return leg.actual_start
    ordered = sorted(legs, key=lambda item: item.id)
    index = next((i for i, item in enumerate(ordered) if item.id == leg.id), -1)
    if index <= 0:
        return race_start_time or leg.projected_start
    previous = ordered[index - 1]
    if previous.actual_finish is not None:
        return previous.actual_finish
    return previous.projected_finish


def get_run_time(leg: Leg) -> Optional[int]:
    if leg.actual_start is None or leg.actual_finish is None:
        return None
    return leg.actual_finish - leg.actual_start


def calculate_total_distance_traveled(legs: Iterable[Leg]) -> float:
    return sum(leg.distance for leg in legs if leg.actual_finish is not None)


def get_major_exchange_times(legs: Sequence[Leg]) -> List[Dict[str, Optional[int]]]:
    by_id = {leg.id: leg for leg in legs}
    exchanges: List[Dict[str, Optional[int]]] = []
    for exchange_id in MAJOR_EXCHANGES:
        ending = by_id.get(exchange_id - 1)
        if ending is None:
            continue
        exchanges.append(
            {
                "legId": exchange_id,
                "projectedFinish": ending.projected_finish,
                "actualFinish": ending.actual_finish,
            }
        )
    return exchanges


class ProjectionCalculator:
    """Current/next runner lookups with a cache scoped to one legs list.

    The cache is dropped whenever a different legs list is passed in, and a
    cached answer is reused only within ``cache_window_ms`` of the time it was
    computed for.
    """

    def __init__(self, cache_window_ms: int = 1000) -> None:
        self.cache_window_ms = cache_window_ms
        self._legs_ref: Optional[Sequence[Leg]] = None
        self._current: Optional[tuple[int, Optional[Leg]]] = None
        self._next: Optional[tuple[int, Optional[int], Optional[Leg]]] = None

    def invalidate(self) -> None:
        self._legs_ref = None
        self._current = None
        self._next = None

    def _check_legs(self, legs: Sequence[Leg]) -> None:
        if self._legs_ref is not legs:
            self.invalidate()
            self._legs_ref = legs

    def current_runner(self, legs: Sequence[Leg], now: int) -> Optional[Leg]:
        self._check_legs(legs)
        if self._current is not None and abs(now - self._current[0]) < self.cache_window_ms:
            return self._current[1]

        ordered = sorted(legs, key=lambda leg: leg.id)
        result: Optional[Leg] = None
        for leg in ordered:
            if leg.actual_start is not None and leg.actual_start <= now and leg.actual_finish is None:
                result = leg
                break

        if result is None:
            finished = [leg for leg in ordered if leg.actual_finish is not None]
            if finished:
                last = finished[-1]
                following = next((leg for leg in ordered if leg.id == last.id + 1), None)
                if following is not None and following.actual_start is None:
                    result = following

        self._current = (now, result)
        return result

    def next_runner(self, legs: Sequence[Leg], now: int, race_start_time: Optional[int] = None) -> Optional[Leg]:
        self._check_legs(legs)
        if (
            self._next is not None
            and abs(now - self._next[0]) < self.cache_window_ms
            and self._next[1] == race_start_time
        ):
            return self._next[2]

        ordered = sorted(legs, key=lambda leg: leg.id)
        result: Optional[Leg] = None
        current = self.current_runner(legs, now)
        if current is not None:
            result = next((leg for leg in ordered if leg.id == current.id + 1), None)
        else:
            for leg in ordered:
                if leg.actual_start is not None:
                    continue
                if leg.id == 1 and race_start_time and now < race_start_time:
                    result = leg
                    break
                start = leg.projected_start or race_start_time
                if start and now < start:
                    result = leg
                    break

        self._next = (now, race_start_time, result)
        return result
