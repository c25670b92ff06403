"""Sync coordinator: keeps one device's race store converging with the team.

Local edits are applied to the store first and pushed in the background.
Remote state comes back through full fetches (initial, periodic, and
realtime-triggered) that are merged record by record with last-write-wins.
Re-entrant operations are guarded by in-flight flags; a call that finds its
flag set returns without doing anything.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .events import LEG_UPDATE, RUNNER_UPDATE, Event, EventBus
from .merge import merge_legs, merge_runners
from .models import (
    LEG_DISTANCES,
    LEGS_TABLE,
    RUNNER_COUNT,
    RUNNERS_TABLE,
    TEAMS_TABLE,
    Leg,
    Runner,
    iso_to_ms,
    leg_from_row,
    leg_to_row,
    ms_to_iso,
    runner_from_row,
    runner_to_row,
    utc_now_iso,
)
from .offline_queue import PREVIOUS_NAME_KEY, OfflineQueue
from .persistence import LocalSnapshotStore
from .remote import (
    FAILURE_STATUSES,
    STATUS_SUBSCRIBED,
    ChannelHandle,
    RealtimeClient,
    RemoteStore,
)
from .retry import ReconnectBackoff, RetryConfig, RetryManager, retry
from .settings import SyncSettings
from .store import RaceStore


logger = logging.getLogger(__name__)

RESULT_SYNCED = "synced"
RESULT_QUEUED = "queued"


class ChannelState(str, enum.Enum):
    UNSUBSCRIBED = "UNSUBSCRIBED"
    SUBSCRIBING = "SUBSCRIBING"
    SUBSCRIBED = "SUBSCRIBED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    ABANDONED = "ABANDONED"


def next_channel_state(state: ChannelState, status: str, backoff_exhausted: bool) -> ChannelState:
    """Transition for a channel receiving a transport status."""

    if state in (ChannelState.ABANDONED, ChannelState.UNSUBSCRIBED):
        return state
    if status == STATUS_SUBSCRIBED:
        return ChannelState.SUBSCRIBED
    if status in FAILURE_STATUSES:
        return ChannelState.ABANDONED if backoff_exhausted else ChannelState.RETRY_SCHEDULED
    return state


@dataclass
class Channel:
    name: str
    open: Callable[[Callable[[str], None]], ChannelHandle]
    backoff: ReconnectBackoff
    state: ChannelState = ChannelState.UNSUBSCRIBED
    handle: Optional[ChannelHandle] = None
    generation: int = 0
    retry_task: Optional[asyncio.Task] = None


class SyncCoordinator:
    def __init__(
        self,
        store: RaceStore,
        remote: RemoteStore,
        snapshots: LocalSnapshotStore,
        bus: EventBus | None = None,
        realtime: RealtimeClient | None = None,
        settings: SyncSettings | None = None,
        retry_manager: RetryManager | None = None,
        device_id: str | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.remote = remote
        self.snapshots = snapshots
        self.bus = bus or EventBus()
        self.realtime = realtime
        self.settings = settings or SyncSettings()
        self.retry_manager = retry_manager or RetryManager(clock=clock)
        self.retry_config = RetryConfig(timeout=self.settings.request_timeout)
        self.device_id = device_id or self.settings.device_id or snapshots.device_id()
        if not self.remote.device_id:
            self.remote.device_id = self.device_id
        self._sleep = sleep
        self._rand = rand
        self._clock = clock

        if self.store.state.team_id is None and self.settings.team_id:
            self.store.set_team_id(self.settings.team_id)
        self.snapshots.team_id = self.store.state.team_id

        self.online = True
        self.setup_locked = False
        self.start_time_pending = False
        self.last_synced_at: Optional[int] = None
        self.offline_queue = OfflineQueue(snapshots)
        self.runner_names: Dict[int, str] = snapshots.load_runner_names()

        self._fetching_runners = False
        self._fetching_legs = False
        self._fetching_team = False
        self._pushing = False
        self._dirty_runners: Set[int] = set()
        self._dirty_legs: Set[int] = set()
        self._runner_id_map: Dict[str, int] = {}

        self.channels: Dict[str, Channel] = {}
        self._refetch_runners = False
        self._refetch_legs = False
        self._refetch_team = False
        self._refetch_task: Optional[asyncio.Task] = None
        self._recent_broadcasts: Dict[Tuple[Any, Any, Any], float] = {}
        self._reconcile_task: Optional[asyncio.Task] = None
        self._bus_unsubscribers: List[Callable[[], None]] = [
            self.bus.subscribe(LEG_UPDATE, self._on_leg_update),
            self.bus.subscribe(RUNNER_UPDATE, self._on_runner_update),
        ]

    @property
    def team_id(self) -> Optional[str]:
        return self.store.state.team_id

    @property
    def can_reach_remote(self) -> bool:
        return self.online and bool(self.team_id) and self.remote.configured

    # ---- lifecycle -------------------------------------------------------------

    def load_local(self) -> bool:
        """Restore the last persisted snapshot for the current team."""

        runners = self.snapshots.load_runners()
        legs = self.snapshots.load_legs()
        setup = self.snapshots.load_setup()
        self.setup_locked = setup["setup_locked"]
        self.start_time_pending = setup["start_time_pending"]
        if not runners and not legs:
            return False
        self.store.restore_from_offline(
            runners,
            legs,
            start_time=setup.get("start_time"),
            is_setup_complete=setup["is_setup_complete"],
        )
        for runner in self.store.runners:
            if runner.remote_id:
                self._runner_id_map[runner.remote_id] = runner.id
        return True

    async def start(self) -> None:
        self.load_local()
        if self.realtime is not None:
            self._build_channels()
            if self.online:
                self._subscribe_all()
        await self.fetch_initial_data()
        if self._reconcile_task is None:
            self._reconcile_task = asyncio.get_running_loop().create_task(self._reconcile_loop())

    async def stop(self) -> None:
        for task in (self._reconcile_task, self._refetch_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reconcile_task = None
        self._refetch_task = None
        self._teardown_channels()
        for unsubscribe in self._bus_unsubscribers:
            unsubscribe()
        self._bus_unsubscribers = []

    def switch_team(self, team_id: str | None) -> None:
        if team_id == self.team_id:
            return
        self._teardown_channels()
        self.store.set_team_id(team_id)
        self.snapshots.team_id = team_id
        self.offline_queue.reload()
        self.runner_names = self.snapshots.load_runner_names()
        self._runner_id_map = {}
        self.setup_locked = False
        self.start_time_pending = False
        self.load_local()
        if self.realtime is not None:
            self._build_channels()
            if self.online:
                self._subscribe_all()

    # ---- local effects -----------------------------------------------------------

    def dispatch(self, effects: List[Event]) -> None:
        """Persist the current state and hand mutation effects to the bus."""

        self.persist_local()
        self.bus.publish_all(effects)

    def persist_local(self) -> None:
        state = self.store.state
        try:
            self.snapshots.save_runners(state.runners)
            self.snapshots.save_legs(state.legs)
            self.snapshots.save_runner_names(self.runner_names)
            self.snapshots.save_setup(
                self.setup_locked,
                state.is_setup_complete,
                state.start_time or None,
                start_time_pending=self.start_time_pending,
            )
        except RuntimeError as exc:
            logger.warning("Unable to persist local race snapshot: %s", exc)

    # ---- fetch & merge -------------------------------------------------------------

    async def _list(self, table: str) -> Optional[List[Dict[str, Any]]]:
        team_id = self.team_id
        result = await retry(lambda: self.remote.list(table, team_id), self.retry_config, sleep=self._sleep, rand=self._rand)
        if not result.success:
            logger.warning("Fetching %s failed after %d attempts: %s", table, result.attempts, result.error)
            return None
        return result.data or []

    async def fetch_and_merge_runners(self) -> bool:
        if self._fetching_runners or not self.can_reach_remote:
            return False
        self._fetching_runners = True
        try:
            rows = await self._list(RUNNERS_TABLE)
            if rows is None:
                return False
            self._apply_runner_rows(rows)
            if rows and not self.setup_locked:
                logger.info("Remote runners exist for team %s; locking setup", self.team_id)
                self.setup_locked = True
            if rows and not self.store.state.is_setup_complete:
                # Legs come from the leg fetch, never from here.
                self.store.set_race_data(is_setup_complete=True)
            self.persist_local()
            return True
        finally:
            self._fetching_runners = False

    async def fetch_and_merge_legs(self) -> bool:
        if self._fetching_legs or not self.can_reach_remote:
            return False
        self._fetching_legs = True
        try:
            rows = await self._list(LEGS_TABLE)
            if rows is None:
                return False
            self._apply_leg_rows(rows)
            self.persist_local()
            return True
        finally:
            self._fetching_legs = False

    async def fetch_start_time(self) -> bool:
        """Adopt the team's race start time unless a local change is still unsent."""

        if self._fetching_team or not self.can_reach_remote:
            return False
        if self.start_time_pending:
            return await self.push_start_time() == RESULT_SYNCED
        self._fetching_team = True
        try:
            team_id = self.team_id
            result = await retry(
                lambda: self.remote.get_team(team_id), self.retry_config, sleep=self._sleep, rand=self._rand
            )
            if not result.success:
                logger.warning("Fetching team %s failed after %d attempts: %s", team_id, result.attempts, result.error)
                return False
            remote_start = iso_to_ms((result.data or {}).get("start_time"))
            if remote_start and remote_start > 0 and remote_start != self.store.state.start_time:
                logger.info("Adopting team start time %s", ms_to_iso(remote_start))
                self.bus.publish_all(self.store.set_start_time(remote_start))
                self.persist_local()
            return True
        finally:
            self._fetching_team = False

    async def fetch_initial_data(self) -> bool:
        await self.fetch_start_time()
        runners_ok = await self.fetch_and_merge_runners()
        legs_ok = await self.fetch_and_merge_legs()
        if runners_ok and legs_ok and self.store.state.is_setup_complete and not self.store.legs:
            logger.info("Team %s has runners but no legs; laying out the schedule", self.team_id)
            self.store.initialize_legs()
            self.persist_local()
        if runners_ok and legs_ok:
            self.last_synced_at = int(time.time() * 1000)
        return runners_ok and legs_ok

    def _map_runner_rows(self, rows: List[Dict[str, Any]]) -> List[Runner]:
        """Assign local slot ids to remote runner rows.

        A remote id keeps the slot it was given before; unseen rows take the
        slot of a same-named unsynced local runner, then the lowest free slot.
        """

        local_by_remote = {runner.remote_id: runner.id for runner in self.store.runners if runner.remote_id}
        local_by_remote.update(self._runner_id_map)
        used: Set[int] = set()
        assigned: List[Tuple[Dict[str, Any], int]] = []
        pending: List[Dict[str, Any]] = []

        for row in rows:
            remote_id = str(row.get("id") or "")
            local_id = local_by_remote.get(remote_id) if remote_id else None
            if local_id is not None and local_id not in used:
                used.add(local_id)
                assigned.append((row, local_id))
            else:
                pending.append(row)

        unsynced_by_name = {
            runner.name.strip().lower(): runner.id
            for runner in self.store.runners
            if not runner.remote_id and runner.id not in used
        }
        unmatched: List[Dict[str, Any]] = []
        for row in pending:
            local_id = unsynced_by_name.pop(str(row.get("name") or "").strip().lower(), None)
            if local_id is not None and local_id not in used:
                used.add(local_id)
                assigned.append((row, local_id))
            else:
                unmatched.append(row)

        free_slots = [slot for slot in range(1, RUNNER_COUNT + 1) if slot not in used]
        for row in unmatched:
            if not free_slots:
                logger.warning(
                    "Skipping remote runner %s (%s): all %d slots are taken",
                    row.get("id"),
                    row.get("name"),
                    RUNNER_COUNT,
                )
                continue
            slot = free_slots.pop(0)
            used.add(slot)
            assigned.append((row, slot))

        runners: List[Runner] = []
        for row, local_id in assigned:
            runner = runner_from_row(row, local_id)
            if runner.remote_id:
                self._runner_id_map[runner.remote_id] = local_id
            runners.append(runner)
        return runners

    def _apply_runner_rows(self, rows: List[Dict[str, Any]]) -> None:
        incoming = self._map_runner_rows(rows)
        outcome = merge_runners(incoming, self.store.runners)
        if not outcome.changed:
            return
        logger.info("Merged %d remote runner updates (%d kept local)", len(outcome.applied), outcome.kept)
        effects = self.store.set_runners(outcome.records)
        for runner in outcome.applied:
            self.runner_names[runner.id] = runner.name
        self.bus.publish_all(effects)

    def _map_leg_rows(self, rows: List[Dict[str, Any]]) -> List[Leg]:
        runner_count = len(self.store.runners) or 1
        legs: List[Leg] = []
        for row in rows:
            try:
                number = int(row.get("number"))
            except (TypeError, ValueError):
                logger.warning("Skipping remote leg without a valid number: %s", row)
                continue
            local = self.store.leg(number)
            remote_runner = str(row.get("runner_id") or "")
            runner_id = self._runner_id_map.get(remote_runner) if remote_runner else None
            if runner_id is None:
                runner_id = local.runner_id if local else ((number - 1) % runner_count) + 1
            if local is not None:
                fallback_distance = local.distance
            elif 0 < number <= len(LEG_DISTANCES):
                fallback_distance = LEG_DISTANCES[number - 1]
            else:
                fallback_distance = 0.0
            leg = leg_from_row(row, runner_id, fallback_distance)
            if local is not None:
                # Projections are local-only and must survive a remote win.
                leg = replace(leg, projected_start=local.projected_start, projected_finish=local.projected_finish)
                if "pace_override" not in row:
                    leg = replace(leg, pace_override=local.pace_override)
            legs.append(leg)
        return legs

    def _apply_leg_rows(self, rows: List[Dict[str, Any]]) -> None:
        incoming = self._map_leg_rows(rows)
        outcome = merge_legs(incoming, self.store.legs)
        if not outcome.changed:
            return
        logger.info("Merged %d remote leg updates (%d kept local)", len(outcome.applied), outcome.kept)
        self.bus.publish_all(self.store.set_legs(outcome.records))

        # Rows merged one by one can leave two legs running; repaired legs are pushed back.
        changes, effects = self.store.repair_leg_states()
        if changes:
            logger.info("Repaired %d leg states after merge", len(changes))
            self.persist_local()
            self.bus.publish_all(effects)

    # ---- push ------------------------------------------------------------------

    async def safe_update(self, table: str, remote_id: str | None, payload: Dict[str, Any]) -> str:
        """Apply a remote-shaped row locally, then push it or queue it.

        Returns ``"synced"`` when the remote store accepted the row and
        ``"queued"`` when it was kept for offline replay.
        """

        if table not in (RUNNERS_TABLE, LEGS_TABLE):
            raise ValueError(f"Unknown table: {table}")
        row = {**self._current_row(table, remote_id, payload), **payload}
        row["updated_at"] = utc_now_iso()
        if remote_id:
            row["id"] = remote_id

        # A local write always lands locally; last-write-wins only applies to fetched rows.
        if table == RUNNERS_TABLE:
            local = self._local_runner(remote_id, payload.get("name"))
            if local is not None:
                runner_id = local.id
            else:
                taken = {runner.id for runner in self.store.runners}
                free = [slot for slot in range(1, RUNNER_COUNT + 1) if slot not in taken]
                if not free:
                    raise ValueError(f"No free runner slot for {payload.get('name') or remote_id}")
                runner_id = free[0]
            runner = runner_from_row(row, runner_id)
            if runner.remote_id:
                self._runner_id_map[runner.remote_id] = runner_id
            self.store.upsert_runner(runner)
        else:
            legs = self._map_leg_rows([row])
            if not legs:
                raise ValueError("Leg update needs a valid leg number")
            self.bus.publish_all(self.store.upsert_leg(legs[0]))
        self.persist_local()
        return await self._push_rows(table, [row])

    def _local_runner(self, remote_id: str | None, name: Any) -> Optional[Runner]:
        for runner in self.store.runners:
            if (remote_id and runner.remote_id == remote_id) or (not remote_id and runner.name == name):
                return runner
        return None

    def _current_row(self, table: str, remote_id: str | None, payload: Dict[str, Any]) -> Dict[str, Any]:
        if table == RUNNERS_TABLE:
            runner = self._local_runner(remote_id, payload.get("name"))
            return self._runner_row(runner) if runner else {}
        for leg in self.store.legs:
            if (remote_id and leg.remote_id == remote_id) or (not remote_id and leg.id == payload.get("number")):
                return self._leg_row(leg)
        return {}

    def _runner_row(self, runner: Runner) -> Dict[str, Any]:
        row = runner_to_row(runner)
        if runner.updated_at:
            row["updated_at"] = runner.updated_at
        return row

    def _leg_row(self, leg: Leg) -> Dict[str, Any]:
        runner = self.store.runner(leg.runner_id)
        row = leg_to_row(leg, runner.remote_id if runner else None)
        if leg.updated_at:
            row["updated_at"] = leg.updated_at
        return row

    async def _on_leg_update(self, event: Event) -> None:
        leg_id = event.payload.get("legId")
        if leg_id is not None:
            self._dirty_legs.add(int(leg_id))
        await self.push_pending()

    async def _on_runner_update(self, event: Event) -> None:
        runner_id = event.payload.get("runnerId")
        if runner_id is not None:
            self._dirty_runners.add(int(runner_id))
        await self.push_pending()

    async def push_pending(self) -> None:
        """Push every record marked dirty; a running push picks up new marks."""

        if self._pushing:
            return
        self._pushing = True
        try:
            while self._dirty_runners or self._dirty_legs:
                runner_ids = sorted(self._dirty_runners)
                leg_ids = sorted(self._dirty_legs)
                self._dirty_runners.clear()
                self._dirty_legs.clear()

                runner_rows = [self._runner_row(runner) for runner in self.store.runners if runner.id in runner_ids]
                if runner_rows:
                    await self._push_rows(RUNNERS_TABLE, runner_rows)
                leg_rows = [self._leg_row(leg) for leg in self.store.legs if leg.id in leg_ids]
                if leg_rows:
                    await self._push_rows(LEGS_TABLE, leg_rows)
        finally:
            self._pushing = False

    async def _push_rows(self, table: str, rows: List[Dict[str, Any]]) -> str:
        if not self.can_reach_remote:
            self._enqueue_rows(table, rows)
            return RESULT_QUEUED

        team_id = self.team_id
        result = await self.retry_manager.execute(
            lambda: self.remote.upsert(table, team_id, rows),
            self.retry_config,
            circuit=f"upsert-{table}",
            sleep=self._sleep,
        )
        if not result.success:
            logger.warning("Push to %s failed (%s); queueing %d rows", table, result.error, len(rows))
            self._enqueue_rows(table, rows)
            return RESULT_QUEUED

        self._absorb_ack(table, rows, result.data)
        self._send_broadcast(table)
        return RESULT_SYNCED

    def _enqueue_rows(self, table: str, rows: List[Dict[str, Any]]) -> None:
        for row in rows:
            payload = dict(row)
            remote_id = payload.get("id")
            if table == RUNNERS_TABLE:
                local = next((r for r in self.store.runners if r.name == payload.get("name")), None)
                previous = self.runner_names.get(local.id) if local else None
                if previous and previous != payload.get("name"):
                    payload[PREVIOUS_NAME_KEY] = previous
            self.offline_queue.enqueue(table, str(remote_id) if remote_id else None, payload)

    def _absorb_ack(self, table: str, sent: List[Dict[str, Any]], ack: Any) -> None:
        """Record remote ids handed back for rows that had none."""

        if table == RUNNERS_TABLE:
            for row in sent:
                runner = next((r for r in self.store.runners if r.name == row.get("name")), None)
                if runner is not None:
                    self.runner_names[runner.id] = runner.name

        rows = ack.get(table) if isinstance(ack, dict) else ack
        if not isinstance(rows, list):
            self.persist_local()
            return
        if table == RUNNERS_TABLE:
            for row in rows:
                if not isinstance(row, dict) or not row.get("id"):
                    continue
                runner = next((r for r in self.store.runners if r.name == row.get("name")), None)
                if runner is None or runner.remote_id:
                    continue
                self._runner_id_map[str(row["id"])] = runner.id
                self.store.upsert_runner(replace(runner, remote_id=str(row["id"])))
                self.runner_names[runner.id] = runner.name
        else:
            for row in rows:
                if not isinstance(row, dict) or not row.get("id"):
                    continue
                try:
                    leg = self.store.leg(int(row.get("number")))
                except (TypeError, ValueError):
                    continue
                if leg is None or leg.remote_id:
                    continue
                self.store.upsert_leg(replace(leg, remote_id=str(row["id"])))
        self.persist_local()

    def _send_broadcast(self, table: str) -> None:
        if self.realtime is None or not self.team_id:
            return
        message = {"type": table, "deviceId": self.device_id, "timestamp": int(time.time() * 1000)}
        try:
            self.realtime.broadcast(self._broadcast_channel_name(), message)
        except Exception as exc:
            logger.warning("Broadcast on %s failed: %s", self._broadcast_channel_name(), exc)

    async def initial_save(self) -> bool:
        """Seed the remote store with local runners and legs once per team.

        When the team already has remote runners this fetches instead, so it is
        safe to call repeatedly.
        """

        if not self.can_reach_remote:
            return False
        rows = await self._list(RUNNERS_TABLE)
        if rows is None:
            return False
        if rows:
            self.setup_locked = True
            return await self.fetch_initial_data()

        runner_rows = [self._runner_row(runner) for runner in self.store.runners]
        if await self._push_rows(RUNNERS_TABLE, runner_rows) != RESULT_SYNCED:
            return False
        leg_rows = [self._leg_row(leg) for leg in self.store.legs]
        if leg_rows and await self._push_rows(LEGS_TABLE, leg_rows) != RESULT_SYNCED:
            return False
        if self.store.state.start_time:
            await self.push_start_time()
        self.setup_locked = True
        self.persist_local()
        return True

    async def set_start_time(self, start_time: int) -> str:
        """Change the race start locally and share it through the team record."""

        effects = self.store.set_start_time(start_time)
        if not self.store.legs:
            self.store.initialize_legs()
        self.start_time_pending = True
        self.dispatch(effects)
        return await self.push_start_time()

    async def push_start_time(self) -> str:
        if not self.can_reach_remote:
            return RESULT_QUEUED

        team_id = self.team_id
        start_iso = ms_to_iso(self.store.state.start_time)
        result = await self.retry_manager.execute(
            lambda: self.remote.update_team(team_id, start_iso),
            self.retry_config,
            circuit=f"update-{TEAMS_TABLE}",
            sleep=self._sleep,
        )
        if not result.success:
            logger.warning("Pushing start time for team %s failed (%s); will retry", team_id, result.error)
            return RESULT_QUEUED

        self.start_time_pending = False
        self.persist_local()
        self._send_broadcast(TEAMS_TABLE)
        return RESULT_SYNCED

    # ---- connectivity ------------------------------------------------------------

    async def set_online(self, online: bool) -> Dict[str, Any]:
        """Track network state; coming back online replays queued edits and refetches."""

        self.online = online
        if not online:
            logger.info("Device offline; edits will be queued")
            return {"synced": 0, "remaining": len(self.offline_queue), "errors": []}

        logger.info("Device online; resetting backoff and replaying %d queued changes", len(self.offline_queue))
        self.retry_manager.reset()
        self.retry_realtime()

        summary: Dict[str, Any] = {"synced": 0, "remaining": len(self.offline_queue), "errors": []}
        if self.can_reach_remote and len(self.offline_queue):
            summary = await self.offline_queue.replay(self.remote, self.team_id)
        await self.fetch_initial_data()
        return summary

    def retry_realtime(self) -> None:
        if self.realtime is None:
            return
        self._teardown_channels()
        self._build_channels()
        if self.online:
            self._subscribe_all()

    # ---- realtime ----------------------------------------------------------------

    def _broadcast_channel_name(self) -> str:
        return f"team-{self.team_id}-updates"

    def _build_channels(self) -> None:
        realtime = self.realtime
        team_id = self.team_id
        if realtime is None or not team_id:
            self.channels = {}
            return

        def backoff() -> ReconnectBackoff:
            return ReconnectBackoff(max_attempts=self.settings.max_reconnect_attempts, rand=self._rand)

        self.channels = {
            RUNNERS_TABLE: Channel(
                name=f"{RUNNERS_TABLE}-{team_id}",
                open=lambda on_status: realtime.subscribe_changes(
                    f"{RUNNERS_TABLE}-{team_id}", RUNNERS_TABLE, team_id, self._on_runner_change, on_status
                ),
                backoff=backoff(),
            ),
            LEGS_TABLE: Channel(
                name=f"{LEGS_TABLE}-{team_id}",
                open=lambda on_status: realtime.subscribe_changes(
                    f"{LEGS_TABLE}-{team_id}", LEGS_TABLE, team_id, self._on_leg_change, on_status
                ),
                backoff=backoff(),
            ),
            "broadcast": Channel(
                name=self._broadcast_channel_name(),
                open=lambda on_status: realtime.subscribe_broadcast(
                    self._broadcast_channel_name(), self.handle_broadcast, on_status
                ),
                backoff=backoff(),
            ),
        }

    def _subscribe_all(self) -> None:
        for channel in self.channels.values():
            self._subscribe(channel)

    def _subscribe(self, channel: Channel) -> None:
        channel.generation += 1
        generation = channel.generation
        channel.state = ChannelState.SUBSCRIBING

        def on_status(status: str) -> None:
            if generation == channel.generation:
                self._on_channel_status(channel, status)

        channel.handle = channel.open(on_status)

    def _on_channel_status(self, channel: Channel, status: str) -> None:
        next_state = next_channel_state(channel.state, status, channel.backoff.exhausted)
        if next_state is channel.state:
            return

        if next_state is ChannelState.SUBSCRIBED:
            channel.state = next_state
            channel.backoff.reset()
            logger.info("Realtime channel %s subscribed", channel.name)
            return

        self._close_handle(channel)
        if next_state is ChannelState.ABANDONED:
            channel.state = next_state
            logger.warning(
                "Realtime channel %s abandoned after %d attempts", channel.name, channel.backoff.attempts
            )
            return

        delay = channel.backoff.next_delay()
        if delay is None:
            channel.state = ChannelState.ABANDONED
            return
        channel.state = ChannelState.RETRY_SCHEDULED
        logger.info("Realtime channel %s %s; retrying in %.2fs", channel.name, status, delay)
        channel.retry_task = asyncio.get_running_loop().create_task(self._resubscribe_after(channel, delay))

    async def _resubscribe_after(self, channel: Channel, delay: float) -> None:
        await self._sleep(delay)
        if channel.state is ChannelState.RETRY_SCHEDULED and self.online:
            self._subscribe(channel)

    def _close_handle(self, channel: Channel) -> None:
        handle = channel.handle
        channel.handle = None
        channel.generation += 1
        if handle is None:
            return
        try:
            handle.unsubscribe()
        except Exception as exc:
            logger.warning("Error closing realtime channel %s: %s", channel.name, exc)

    def _teardown_channels(self) -> None:
        for channel in self.channels.values():
            if channel.retry_task is not None and not channel.retry_task.done():
                channel.retry_task.cancel()
            self._close_handle(channel)
            channel.state = ChannelState.UNSUBSCRIBED
            channel.backoff.reset()
        self.channels = {}

    def _on_runner_change(self, payload: Dict[str, Any]) -> None:
        logger.debug("Runner change notification: %s", payload.get("eventType"))
        self.schedule_refetch(runners=True)

    def _on_leg_change(self, payload: Dict[str, Any]) -> None:
        logger.debug("Leg change notification: %s", payload.get("eventType"))
        self.schedule_refetch(legs=True)

    def handle_broadcast(self, message: Dict[str, Any]) -> None:
        device_id = message.get("deviceId")
        if device_id and device_id == self.device_id:
            return

        now = self._clock()
        window = self.settings.broadcast_dedup_window
        self._recent_broadcasts = {
            key: seen for key, seen in self._recent_broadcasts.items() if now - seen < window
        }
        kind = message.get("type")
        timestamp = message.get("timestamp")
        if isinstance(timestamp, (int, float)):
            timestamp = round(timestamp / 1000)
        key = (kind, device_id, timestamp)
        if key in self._recent_broadcasts:
            return
        self._recent_broadcasts[key] = now

        if kind == RUNNERS_TABLE:
            self.schedule_refetch(runners=True)
        elif kind == LEGS_TABLE:
            self.schedule_refetch(legs=True)
        elif kind == TEAMS_TABLE:
            self.schedule_refetch(team=True)
        else:
            self.schedule_refetch(runners=True, legs=True, team=True)

    def schedule_refetch(self, runners: bool = False, legs: bool = False, team: bool = False) -> None:
        self._refetch_runners = self._refetch_runners or runners
        self._refetch_legs = self._refetch_legs or legs
        self._refetch_team = self._refetch_team or team
        if self._refetch_task is not None and not self._refetch_task.done():
            return
        self._refetch_task = asyncio.get_running_loop().create_task(self._debounced_refetch())

    async def _debounced_refetch(self) -> None:
        while self._refetch_runners or self._refetch_legs or self._refetch_team:
            await self._sleep(self.settings.refetch_debounce)
            runners, legs, team = self._refetch_runners, self._refetch_legs, self._refetch_team
            self._refetch_runners = self._refetch_legs = self._refetch_team = False
            if team:
                await self.fetch_start_time()
            if runners:
                await self.fetch_and_merge_runners()
            if legs:
                await self.fetch_and_merge_legs()

    # ---- reconciliation ----------------------------------------------------------

    async def _reconcile_loop(self) -> None:
        while True:
            await self._sleep(self.settings.reconcile_interval)
            await self.reconcile_once()

    async def reconcile_once(self) -> None:
        if not self.online:
            return
        await self.fetch_initial_data()
        if self.realtime is not None and not any(
            channel.state is ChannelState.SUBSCRIBED for channel in self.channels.values()
        ):
            logger.info("No active realtime channel; resubscribing")
            self.retry_realtime()

    # ---- diagnostics -------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        return {
            "online": self.online,
            "teamId": self.team_id,
            "deviceId": self.device_id,
            "setupLocked": self.setup_locked,
            "startTimePending": self.start_time_pending,
            "lastSyncedAt": self.last_synced_at,
            "fetchingRunners": self._fetching_runners,
            "fetchingLegs": self._fetching_legs,
            "pushing": self._pushing,
            "pendingOffline": len(self.offline_queue),
            "channels": {name: channel.state.value for name, channel in self.channels.items()},
            "breakers": self.retry_manager.status(),
            "eventQueue": self.bus.queue_status(),
        }
