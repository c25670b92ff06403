from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Hashable, Iterable, List, Optional, TypeVar

from .models import Leg, Runner, iso_to_ms


T = TypeVar("T")


@dataclass
class MergeOutcome(Generic[T]):
    records: List[T]
    applied: List[T] = field(default_factory=list)
    kept: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.applied)


def incoming_wins(local_ts: Optional[int], incoming_ts: Optional[int]) -> bool:
    """Last-write-wins on record timestamps.

    Equal timestamps keep the local record, so re-merging the same payload is
    a no-op. A record without a timestamp never replaces one that has one.
    """

    if incoming_ts is None:
        return False
    if local_ts is None:
        return True
    return incoming_ts > local_ts


def merge_records(
    incoming: Iterable[T],
    local: Iterable[T],
    key: Callable[[T], Hashable],
    timestamp: Callable[[T], Optional[int]],
) -> MergeOutcome[T]:
    merged: Dict[Hashable, T] = {}
    order: List[Hashable] = []
    for record in local:
        record_key = key(record)
        if record_key not in merged:
            order.append(record_key)
        merged[record_key] = record

    outcome: MergeOutcome[T] = MergeOutcome(records=[])
    for record in incoming:
        record_key = key(record)
        existing = merged.get(record_key)
        if existing is None:
            order.append(record_key)
            merged[record_key] = record
            outcome.applied.append(record)
        elif incoming_wins(timestamp(existing), timestamp(record)):
            merged[record_key] = record
            outcome.applied.append(record)
        else:
            outcome.kept += 1

    outcome.records = [merged[record_key] for record_key in order]
    return outcome


def merge_runners(incoming: Iterable[Runner], local: Iterable[Runner]) -> MergeOutcome[Runner]:
    return merge_records(incoming, local, key=lambda runner: runner.id, timestamp=lambda runner: iso_to_ms(runner.updated_at))


def merge_legs(incoming: Iterable[Leg], local: Iterable[Leg]) -> MergeOutcome[Leg]:
    return merge_records(incoming, local, key=lambda leg: leg.id, timestamp=lambda leg: iso_to_ms(leg.updated_at))
