from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .events import (
    HANDOFF,
    LEG_FINISHED,
    LEG_STARTED,
    LEG_UPDATE,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    RACE_COMPLETE,
    RUNNER_UPDATE,
    Event,
)
from .models import RUNNER_COUNT, Leg, RaceState, Runner, default_runner, make_default_runners, utc_now_iso
from .projection import (
    ProjectionCalculator,
    RaceInitializationError,
    auto_fix_single_runner_violations,
    detect_and_repair_impossible_leg_states,
    initialize_race,
    recalculate_projections,
)


logger = logging.getLogger(__name__)

TIME_FIELDS = ("actual_start", "actual_finish")


def _now_ms() -> int:
    return int(time.time() * 1000)


class RaceStore:
    """Single owner of the device's ``RaceState``.

    Every mutation builds a complete new state, re-runs projections and swaps
    it in at once, so readers never see raw edits without the recomputed
    schedule. Mutations return the effects they imply instead of publishing
    them: high-priority ``leg_update``/``runner_update`` for local edits that
    must be pushed, and low-priority notifications derived from leg
    transitions.
    """

    def __init__(
        self,
        state: RaceState | None = None,
        calculator: ProjectionCalculator | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.state = state or RaceState(start_time=0, runners=make_default_runners(), legs=[])
        self.calculator = calculator or ProjectionCalculator()
        self._clock = clock

    # ---- read side -----------------------------------------------------------

    @property
    def runners(self) -> List[Runner]:
        return self.state.runners

    @property
    def legs(self) -> List[Leg]:
        return self.state.legs

    def runner(self, runner_id: int) -> Optional[Runner]:
        return self.state.runner(runner_id)

    def leg(self, leg_id: int) -> Optional[Leg]:
        return self.state.leg(leg_id)

    def current_runner(self, now: int | None = None) -> Optional[Leg]:
        return self.calculator.current_runner(self.state.legs, self._clock() if now is None else now)

    def next_runner(self, now: int | None = None) -> Optional[Leg]:
        return self.calculator.next_runner(
            self.state.legs,
            self._clock() if now is None else now,
            self.state.start_time or None,
        )

    # ---- commit ----------------------------------------------------------------

    def _commit(
        self,
        runners: Sequence[Runner] | None = None,
        legs: Sequence[Leg] | None = None,
        start_time: int | None = None,
        from_index: int = 0,
        **extra,
    ) -> List[Event]:
        previous = self.state
        next_runners = sorted(runners if runners is not None else previous.runners, key=lambda runner: runner.id)
        next_legs = sorted(legs if legs is not None else previous.legs, key=lambda leg: leg.id)
        next_start = previous.start_time if start_time is None else start_time

        next_legs = recalculate_projections(next_legs, from_index, next_runners, next_start or None)
        self.state = replace(
            previous,
            runners=list(next_runners),
            legs=next_legs,
            start_time=next_start,
            **extra,
        )
        return self._transition_effects(previous.legs, self.state)

    def _transition_effects(self, before: Sequence[Leg], state: RaceState) -> List[Event]:
        old_by_id = {leg.id: leg for leg in before}
        last_leg_id = state.legs[-1].id if state.legs else None
        effects: List[Event] = []
        for leg in state.legs:
            old = old_by_id.get(leg.id)
            if old is None:
                continue
            runner = state.runner(leg.runner_id)
            runner_name = runner.name if runner else None
            if old.actual_start is None and leg.actual_start is not None:
                effects.append(
                    Event(
                        LEG_STARTED,
                        {"legId": leg.id, "runnerId": leg.runner_id, "runnerName": runner_name, "at": leg.actual_start},
                        priority=PRIORITY_LOW,
                    )
                )
            if old.actual_finish is None and leg.actual_finish is not None:
                effects.append(
                    Event(
                        LEG_FINISHED,
                        {"legId": leg.id, "runnerId": leg.runner_id, "runnerName": runner_name, "at": leg.actual_finish},
                        priority=PRIORITY_LOW,
                    )
                )
                if leg.id == last_leg_id:
                    effects.append(Event(RACE_COMPLETE, {"finishedAt": leg.actual_finish}, priority=PRIORITY_LOW))
                else:
                    effects.append(
                        Event(HANDOFF, {"fromLegId": leg.id, "toLegId": leg.id + 1, "at": leg.actual_finish}, priority=PRIORITY_LOW)
                    )
        return effects

    @staticmethod
    def _leg_update(leg_ids: Iterable[int]) -> List[Event]:
        return [Event(LEG_UPDATE, {"legId": leg_id}, priority=PRIORITY_HIGH) for leg_id in leg_ids]

    @staticmethod
    def _runner_update(runner_id: int) -> Event:
        return Event(RUNNER_UPDATE, {"runnerId": runner_id}, priority=PRIORITY_HIGH)

    def _require_leg(self, leg_id: int) -> Leg:
        leg = self.state.leg(leg_id)
        if leg is None:
            raise ValueError(f"Leg {leg_id} not found")
        return leg

    def _require_runner(self, runner_id: int) -> Runner:
        runner = self.state.runner(runner_id)
        if runner is None:
            raise ValueError(f"Runner {runner_id} not found")
        return runner

    def _leg_index(self, leg_id: int) -> int:
        for index, leg in enumerate(self.state.legs):
            if leg.id == leg_id:
                return index
        return 0

    # ---- reconciliation setters ---------------------------------------------

    def set_race_data(
        self,
        start_time: int | None = None,
        runners: Sequence[Runner] | None = None,
        legs: Sequence[Leg] | None = None,
        is_setup_complete: bool | None = None,
    ) -> List[Event]:
        extra = {}
        if is_setup_complete is not None:
            extra["is_setup_complete"] = is_setup_complete
        return self._commit(runners=runners, legs=legs, start_time=start_time, **extra)

    def set_runners(self, runners: Sequence[Runner]) -> List[Event]:
        return self._commit(runners=runners)

    def set_legs(self, legs: Sequence[Leg]) -> List[Event]:
        return self._commit(legs=legs)

    def upsert_runner(self, runner: Runner) -> List[Event]:
        runners = [item for item in self.state.runners if item.id != runner.id]
        runners.append(runner)
        return self._commit(runners=runners)

    def upsert_leg(self, leg: Leg) -> List[Event]:
        legs = [item for item in self.state.legs if item.id != leg.id]
        legs.append(leg)
        return self._commit(legs=legs)

    def delete_runner(self, runner_id: int) -> List[Event]:
        return self._commit(runners=[item for item in self.state.runners if item.id != runner_id])

    def delete_leg(self, leg_id: int) -> List[Event]:
        return self._commit(legs=[item for item in self.state.legs if item.id != leg_id])

    def restore_from_offline(
        self,
        runners: Sequence[Runner],
        legs: Sequence[Leg],
        start_time: int | None = None,
        is_setup_complete: bool | None = None,
    ) -> List[Event]:
        if not runners:
            runners = make_default_runners()
        logger.info("Restoring %d runners and %d legs from local snapshot", len(runners), len(legs))
        self._commit(runners=runners, legs=legs, start_time=start_time, is_setup_complete=bool(is_setup_complete))
        return []

    # ---- domain operations -----------------------------------------------------

    def set_start_time(self, start_time: int) -> List[Event]:
        if start_time is None or start_time <= 0:
            raise ValueError("Start time must be a positive epoch millisecond value")
        return self._commit(start_time=start_time)

    def update_runner(
        self,
        runner_id: int,
        name: str | None = None,
        pace: float | None = None,
        van: int | None = None,
    ) -> List[Event]:
        runner = self._require_runner(runner_id)
        changes = {}
        if name is not None:
            if not name.strip():
                raise ValueError("Runner name cannot be empty")
            changes["name"] = name.strip()
        if pace is not None:
            if pace <= 0:
                raise ValueError("Pace must be positive")
            changes["pace"] = pace
        if van is not None:
            if van not in (1, 2):
                raise ValueError("Van must be 1 or 2")
            changes["van"] = van
        if not changes:
            return []

        updated = replace(runner, updated_at=utc_now_iso(), **changes)
        runners = [updated if item.id == runner_id else item for item in self.state.runners]
        effects = self._commit(runners=runners)
        return [self._runner_update(runner_id)] + effects

    def update_leg_distance(self, leg_id: int, distance: float) -> List[Event]:
        self._require_leg(leg_id)
        if distance is None or distance <= 0:
            raise ValueError("Distance must be positive")
        legs = [
            replace(leg, distance=distance, updated_at=utc_now_iso()) if leg.id == leg_id else leg
            for leg in self.state.legs
        ]
        effects = self._commit(legs=legs, from_index=self._leg_index(leg_id))
        return self._leg_update([leg_id]) + effects

    def update_leg_actual_time(self, leg_id: int, field_name: str, value: int | None) -> List[Event]:
        """Record an actual start or finish.

        Recording a finish also starts the next leg at the same instant when
        that leg has not started yet.
        """

        if field_name not in TIME_FIELDS:
            raise ValueError(f"Unsupported time field: {field_name}")
        self._require_leg(leg_id)

        touched = [leg_id]
        stamp = utc_now_iso()
        legs = [
            replace(leg, updated_at=stamp, **{field_name: value}) if leg.id == leg_id else leg
            for leg in self.state.legs
        ]
        legs = recalculate_projections(
            sorted(legs, key=lambda leg: leg.id), self._leg_index(leg_id), self.state.runners, self.state.start_time or None
        )

        if field_name == "actual_finish" and value is not None:
            following = next((leg for leg in legs if leg.id == leg_id + 1), None)
            if following is not None and following.actual_start is None:
                legs = [replace(leg, actual_start=value, updated_at=stamp) if leg.id == following.id else leg for leg in legs]
                touched.append(following.id)

        effects = self._commit(legs=legs, from_index=self._leg_index(leg_id))
        return self._leg_update(touched) + effects

    def assign_runner_to_legs(self, runner_id: int, leg_ids: Iterable[int]) -> List[Event]:
        self._require_runner(runner_id)
        targets = set(leg_ids)
        missing = targets - {leg.id for leg in self.state.legs}
        if missing:
            raise ValueError(f"Leg {min(missing)} not found")
        if not targets:
            return []

        stamp = utc_now_iso()
        legs = [
            replace(leg, runner_id=runner_id, updated_at=stamp) if leg.id in targets else leg
            for leg in self.state.legs
        ]
        effects = self._commit(legs=legs)
        return self._leg_update(sorted(targets)) + effects

    def set_leg_pace_override(self, leg_id: int, pace: float | None) -> List[Event]:
        self._require_leg(leg_id)
        if pace is not None and pace <= 0:
            raise ValueError("Pace override must be positive")
        legs = [
            replace(leg, pace_override=pace, updated_at=utc_now_iso()) if leg.id == leg_id else leg
            for leg in self.state.legs
        ]
        effects = self._commit(legs=legs, from_index=self._leg_index(leg_id))
        return self._leg_update([leg_id]) + effects

    def initialize_legs(self) -> List[Event]:
        start_time = self.state.start_time
        runners = self.state.runners
        try:
            legs = initialize_race(start_time, runners)
        except RaceInitializationError as exc:
            logger.warning("Race initialization failed (%s); substituting defaults for the bad input", exc)
            if not start_time or start_time <= 0:
                start_time = self._clock()
                logger.info("Using current time %s as the race start", start_time)
            if not any(runner.is_valid() for runner in runners):
                runners = make_default_runners()
                logger.info("Using default runners")
            legs = initialize_race(start_time, runners)
        self._commit(runners=runners, legs=legs, start_time=start_time)
        return []

    def complete_setup(self) -> List[Event]:
        if not self.state.legs:
            self.initialize_legs()
        self.state = replace(self.state, is_setup_complete=True)
        return []

    def force_reset(self) -> List[Event]:
        logger.warning("Resetting race state to defaults")
        self.state = RaceState(start_time=0, runners=make_default_runners(), legs=[], team_id=self.state.team_id)
        self.calculator.invalidate()
        return []

    def set_team_id(self, team_id: str | None) -> List[Event]:
        if team_id == self.state.team_id:
            return []
        logger.info("Switching team from %s to %s", self.state.team_id, team_id)
        self.state = RaceState(start_time=0, runners=make_default_runners(), legs=[], team_id=team_id)
        self.calculator.invalidate()
        return []

    # ---- consistency -----------------------------------------------------------

    def is_data_consistent(self) -> bool:
        runners = self.state.runners
        if sorted(runner.id for runner in runners) != list(range(1, RUNNER_COUNT + 1)):
            return False
        if not all(runner.is_valid() for runner in runners):
            return False
        return all(1 <= leg.runner_id <= RUNNER_COUNT for leg in self.state.legs)

    def fix_data_inconsistencies(self) -> bool:
        """Restore exactly ``RUNNER_COUNT`` valid runners and re-home orphaned legs.

        Missing or invalid slots get a placeholder runner (keeping the remote
        id so sync still maps the slot); runners outside the slot range are
        dropped. Returns whether anything changed.
        """

        by_id = {runner.id: runner for runner in self.state.runners}
        changed = False
        runners: List[Runner] = []
        for runner_id in range(1, RUNNER_COUNT + 1):
            runner = by_id.get(runner_id)
            if runner is not None and runner.is_valid():
                runners.append(runner)
                continue
            placeholder = default_runner(runner_id)
            if runner is None:
                logger.warning("Runner %s missing; adding placeholder", runner_id)
            else:
                logger.warning("Replacing invalid runner %s with placeholder", runner)
                placeholder = replace(placeholder, remote_id=runner.remote_id)
            runners.append(placeholder)
            changed = True

        extra = [runner for runner in self.state.runners if not 1 <= runner.id <= RUNNER_COUNT]
        if extra:
            logger.warning("Dropping runners outside slots 1-%d: %s", RUNNER_COUNT, extra)
            changed = True

        legs: List[Leg] = []
        for index, leg in enumerate(sorted(self.state.legs, key=lambda leg: leg.id)):
            if 1 <= leg.runner_id <= RUNNER_COUNT:
                legs.append(leg)
                continue
            replacement = runners[index % RUNNER_COUNT]
            logger.info("Reassigned leg %s from missing runner %s to runner %s", leg.id, leg.runner_id, replacement.id)
            legs.append(replace(leg, runner_id=replacement.id))
            changed = True

        if changed:
            self._commit(runners=runners, legs=legs)
        return changed

    def repair_leg_states(self, now: int | None = None) -> Tuple[List[str], List[Event]]:
        """Run both leg-state repairs and commit the result.

        Returns the change log and the effects; repaired legs are stamped so
        the fix propagates like any other edit.
        """

        now = self._clock() if now is None else now
        first = detect_and_repair_impossible_leg_states(self.state.legs, now=now)
        second = auto_fix_single_runner_violations(first.legs, now=now)
        changes = first.changes + second.changes
        if not changes:
            return [], []

        before = {leg.id: leg for leg in self.state.legs}
        stamp = utc_now_iso()
        touched: List[int] = []
        legs: List[Leg] = []
        for leg in second.legs:
            old = before.get(leg.id)
            if old is not None and (old.actual_start, old.actual_finish) != (leg.actual_start, leg.actual_finish):
                leg = replace(leg, updated_at=stamp)
                touched.append(leg.id)
            legs.append(leg)
        effects = self._commit(legs=legs)
        return changes, self._leg_update(sorted(touched)) + effects

    # ---- undo ------------------------------------------------------------------

    def _last_started_leg(self) -> Optional[Leg]:
        started = [leg for leg in self.state.legs if leg.actual_start is not None]
        if not started:
            return None
        return max(started, key=lambda leg: leg.id)

    def can_undo(self) -> bool:
        legs = self.state.legs
        if any(leg.is_running for leg in legs):
            return True
        return bool(legs) and legs[-1].actual_finish is not None

    def get_undo_description(self) -> Optional[str]:
        if not self.can_undo():
            return None
        leg = self._last_started_leg()
        if leg is None:
            return None
        runner = self.state.runner(leg.runner_id)
        name = runner.name if runner else f"Runner {leg.runner_id}"
        if leg.id == self.state.legs[-1].id and leg.actual_finish is not None:
            return f"Undo finish of Leg {leg.id} ({name})"
        return f"Undo start of Leg {leg.id} ({name})"

    def undo_last_start_runner(self) -> List[Event]:
        if not self.can_undo():
            return []
        target = self._last_started_leg()
        if target is None:
            return []

        stamp = utc_now_iso()
        last_leg_id = self.state.legs[-1].id
        touched: List[int] = []
        legs: List[Leg] = []

        if target.id == last_leg_id and target.actual_finish is not None:
            for leg in self.state.legs:
                if leg.id == target.id:
                    leg = replace(leg, actual_finish=None, updated_at=stamp)
                    touched.append(leg.id)
                legs.append(leg)
            logger.info("Undid race finish on Leg %s", target.id)
        else:
            for leg in self.state.legs:
                if leg.id == target.id:
                    leg = replace(leg, actual_start=None, actual_finish=None, updated_at=stamp)
                    touched.append(leg.id)
                elif leg.id == target.id - 1 and leg.actual_finish is not None:
                    leg = replace(leg, actual_finish=None, updated_at=stamp)
                    touched.append(leg.id)
                legs.append(leg)
            logger.info("Undid start of Leg %s", target.id)

        effects = self._commit(legs=legs, from_index=max(0, self._leg_index(target.id) - 1))
        return self._leg_update(sorted(touched)) + effects
