from __future__ import annotations

from dataclasses import replace

import pytest

from relay_core.events import HANDOFF, LEG_FINISHED, LEG_STARTED, LEG_UPDATE, RACE_COMPLETE, RUNNER_UPDATE
from relay_core.models import DEFAULT_PACE, RUNNER_COUNT, Runner
from relay_core.store import RaceStore

T = 1_700_000_000_000


@pytest.fixture
def store() -> RaceStore:
    race_store = RaceStore(clock=lambda: T)
    race_store.set_start_time(T)
    race_store.initialize_legs()
    return race_store


def _times(race_store: RaceStore):
    return [
        (leg.id, leg.actual_start, leg.actual_finish, leg.projected_start, leg.projected_finish)
        for leg in race_store.legs
    ]


def test_initialize_legs_builds_full_schedule(store):
    assert len(store.legs) == 36
    assert store.legs[0].projected_start == T
    assert store.is_data_consistent()


def test_initialize_legs_falls_back_to_default_runners():
    race_store = RaceStore(clock=lambda: T)
    race_store.set_runners([Runner(id=1, name="Broken", pace=-5, van=1)])
    race_store.initialize_legs()

    assert len(race_store.runners) == RUNNER_COUNT
    assert race_store.runners[0].name == "Runner 1"
    assert race_store.legs[0].projected_start == T


def test_initialize_legs_keeps_valid_runners_without_start_time():
    race_store = RaceStore(clock=lambda: T)
    race_store.upsert_runner(Runner(id=1, name="Alice", pace=400, van=1, remote_id="runner-1"))
    race_store.initialize_legs()

    assert race_store.runner(1).name == "Alice"
    assert race_store.runner(1).remote_id == "runner-1"
    assert race_store.state.start_time == T
    assert race_store.legs[0].projected_start == T


def test_finish_auto_starts_next_leg(store):
    store.update_leg_actual_time(3, "actual_start", T + 50)
    effects = store.update_leg_actual_time(3, "actual_finish", T + 100)

    leg3, leg4 = store.leg(3), store.leg(4)
    assert leg3.actual_finish == T + 100
    assert leg4.actual_start == T + 100
    assert leg4.projected_start == T + 100
    assert leg3.updated_at is not None and leg4.updated_at == leg3.updated_at

    high = [(event.type, event.payload["legId"]) for event in effects if event.priority == "high"]
    assert high == [(LEG_UPDATE, 3), (LEG_UPDATE, 4)]
    low = [event.type for event in effects if event.priority == "low"]
    assert low == [LEG_FINISHED, HANDOFF, LEG_STARTED]


def test_finish_does_not_overwrite_started_next_leg(store):
    store.update_leg_actual_time(1, "actual_start", T)
    legs = [replace(leg, actual_start=T + 900) if leg.id == 2 else leg for leg in store.legs]
    store.set_legs(legs)

    store.update_leg_actual_time(1, "actual_finish", T + 500)
    assert store.leg(2).actual_start == T + 900


def test_update_leg_actual_time_rejects_unknown_field(store):
    with pytest.raises(ValueError, match="Unsupported time field"):
        store.update_leg_actual_time(1, "projected_start", T)
    with pytest.raises(ValueError, match="Leg 99 not found"):
        store.update_leg_actual_time(99, "actual_start", T)


def test_update_runner_emits_runner_update(store):
    effects = store.update_runner(2, name="  Dana ", pace=450)
    assert store.runner(2).name == "Dana"
    assert store.runner(2).pace == 450
    assert [(event.type, event.payload) for event in effects] == [(RUNNER_UPDATE, {"runnerId": 2})]


def test_update_runner_changes_downstream_projections(store):
    before = store.leg(3).projected_start
    store.update_runner(1, pace=360)
    assert store.leg(3).projected_start < before


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"name": " "}, "cannot be empty"),
        ({"pace": 0}, "Pace must be positive"),
        ({"van": 3}, "Van must be 1 or 2"),
    ],
)
def test_update_runner_validation(store, kwargs, message):
    with pytest.raises(ValueError, match=message):
        store.update_runner(1, **kwargs)


def test_assign_runner_to_legs(store):
    effects = store.assign_runner_to_legs(5, [1, 2])
    assert store.leg(1).runner_id == 5
    assert store.leg(2).runner_id == 5
    assert [event.payload["legId"] for event in effects if event.type == LEG_UPDATE] == [1, 2]

    with pytest.raises(ValueError, match="Leg 40 not found"):
        store.assign_runner_to_legs(5, [40])


def test_leg_distance_and_pace_override(store):
    store.update_leg_distance(1, 10.0)
    assert store.leg(1).projected_finish == T + 420 * 10 * 1000
    store.set_leg_pace_override(1, 400)
    assert store.leg(1).projected_finish == T + 400 * 10 * 1000
    store.set_leg_pace_override(1, None)
    assert store.leg(1).projected_finish == T + 420 * 10 * 1000

    with pytest.raises(ValueError, match="Distance must be positive"):
        store.update_leg_distance(1, 0)


def test_undo_restores_previous_runner(store):
    store.update_leg_actual_time(1, "actual_start", T)
    store.update_leg_actual_time(1, "actual_finish", T + 1_000)
    before_undo = _times(store)

    assert store.can_undo()
    assert store.get_undo_description() == "Undo start of Leg 2 (Runner 2)"
    effects = store.undo_last_start_runner()

    assert store.leg(2).actual_start is None
    assert store.leg(1).actual_finish is None
    assert store.leg(1).is_running
    assert sorted(event.payload["legId"] for event in effects if event.type == LEG_UPDATE) == [1, 2]

    store.update_leg_actual_time(1, "actual_finish", T + 1_000)
    assert _times(store) == before_undo


def test_undo_race_finish_keeps_final_start(store):
    legs = []
    clock = T
    for leg in store.legs:
        legs.append(replace(leg, actual_start=clock, actual_finish=clock + 100))
        clock += 100
    store.set_legs(legs)
    final_start = store.leg(36).actual_start

    assert store.get_undo_description() == "Undo finish of Leg 36 (Runner 12)"
    store.undo_last_start_runner()

    assert store.leg(36).actual_start == final_start
    assert store.leg(36).actual_finish is None
    assert store.leg(35).actual_finish is not None


def test_cannot_undo_before_race_starts(store):
    assert not store.can_undo()
    assert store.get_undo_description() is None
    assert store.undo_last_start_runner() == []


def test_race_complete_effect_on_final_finish(store):
    legs = [replace(leg, actual_start=T + leg.id, actual_finish=T + leg.id + 1) for leg in store.legs]
    legs[-1] = replace(legs[-1], actual_finish=None)
    store.set_legs(legs)

    effects = store.update_leg_actual_time(36, "actual_finish", T + 1_000)
    assert RACE_COMPLETE in [event.type for event in effects]
    assert HANDOFF not in [event.type for event in effects]


def test_fix_data_inconsistencies_fills_missing_slot(store):
    store.delete_runner(12)
    assert not store.is_data_consistent()

    assert store.fix_data_inconsistencies()
    assert len(store.runners) == RUNNER_COUNT
    assert store.runner(12).name == "Runner 12"
    assert store.leg(12).runner_id == 12
    assert store.is_data_consistent()
    assert not store.fix_data_inconsistencies()


def test_fix_data_inconsistencies_replaces_invalid_runner(store):
    store.upsert_runner(Runner(id=12, name="Broken", pace=-5, van=1, remote_id="runner-12"))
    store.upsert_runner(Runner(id=13, name="Extra", pace=400, van=2))

    assert store.fix_data_inconsistencies()
    assert [runner.id for runner in store.runners] == list(range(1, RUNNER_COUNT + 1))
    assert store.runner(12).pace == DEFAULT_PACE
    assert store.runner(12).remote_id == "runner-12"
    assert store.is_data_consistent()


def test_fix_data_inconsistencies_reassigns_orphaned_legs(store):
    store.set_legs([replace(leg, runner_id=99) if leg.id == 14 else leg for leg in store.legs])
    assert not store.is_data_consistent()

    assert store.fix_data_inconsistencies()
    assert store.leg(14).runner_id == 2
    assert store.is_data_consistent()


def test_fix_data_inconsistencies_rebuilds_defaults(store):
    store.set_runners([Runner(id=1, name="Broken", pace=0, van=1)])
    assert store.fix_data_inconsistencies()
    assert len(store.runners) == RUNNER_COUNT
    assert store.is_data_consistent()


def test_repair_leg_states_finishes_overlapping_leg(store):
    legs = [
        replace(leg, actual_start=T) if leg.id == 1 else replace(leg, actual_start=T + 700) if leg.id == 2 else leg
        for leg in store.legs
    ]
    store.set_legs(legs)

    changes, effects = store.repair_leg_states(now=T + 800)
    assert store.leg(1).actual_finish == T + 700
    assert changes
    assert [event.payload["legId"] for event in effects if event.type == LEG_UPDATE] == [1]


def test_set_team_id_resets_state(store):
    store.set_team_id("team-a")
    assert store.state.team_id == "team-a"
    assert store.legs == []
    assert store.set_team_id("team-a") == []


def test_force_reset_keeps_team(store):
    store.set_team_id("team-a")
    store.set_start_time(T)
    store.initialize_legs()
    store.force_reset()
    assert store.state.team_id == "team-a"
    assert store.legs == []
    assert store.state.start_time == 0


def test_complete_setup_initializes_missing_legs():
    race_store = RaceStore(clock=lambda: T)
    race_store.set_start_time(T)
    race_store.complete_setup()
    assert race_store.state.is_setup_complete
    assert len(race_store.legs) == 36


def test_remote_merge_produces_notifications_only(store):
    legs = [replace(leg, actual_start=T + 5) if leg.id == 1 else leg for leg in store.legs]
    effects = store.set_legs(legs)
    assert [event.type for event in effects] == [LEG_STARTED]
    assert all(event.priority == "low" for event in effects)
