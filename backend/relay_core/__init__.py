"""Relay race state, schedule projection and multi-device sync."""

from .events import Event, EventBus
from .models import Leg, OfflineChange, RaceState, Runner
from .persistence import LocalSnapshotStore
from .projection import ProjectionCalculator, RaceInitializationError
from .remote import RealtimeClient, RemoteStore, RemoteStoreError
from .settings import SyncSettings
from .store import RaceStore
from .sync import SyncCoordinator

__all__ = [
    "Event",
    "EventBus",
    "Leg",
    "LocalSnapshotStore",
    "OfflineChange",
    "ProjectionCalculator",
    "RaceInitializationError",
    "RaceState",
    "RaceStore",
    "RealtimeClient",
    "RemoteStore",
    "RemoteStoreError",
    "Runner",
    "SyncCoordinator",
    "SyncSettings",
]
