"""CLI helper for pushing a device's persisted offline queue to Supabase."""

from __future__ import annotations

import asyncio
import sys
from typing import Dict

from relay_core import LocalSnapshotStore, RemoteStore, SyncSettings
from relay_core.offline_queue import OfflineQueue


def _format_section(name: str, stats: Dict[str, object]) -> str:
    synced = stats.get("synced", 0)
    remaining = stats.get("remaining", 0)
    errors = stats.get("errors", [])
    lines = [f"{name}: {synced} synced, {remaining} remaining"]
    if isinstance(errors, list):
        for item in errors:
            lines.append(f"  - {item}")
    return "\n".join(lines)


def main() -> int:
    settings = SyncSettings.from_env()
    if not settings.team_id:
        print("ERROR: RELAY_TEAM_ID is required to replay the offline queue", file=sys.stderr)
        return 1

    snapshots = LocalSnapshotStore(settings.data_dir, settings.team_id)
    remote = RemoteStore.from_settings(settings, device_id=snapshots.device_id())
    if not remote.configured:
        print("ERROR: Supabase configuration is required to replay the offline queue", file=sys.stderr)
        return 1

    queue = OfflineQueue(snapshots)
    summary = asyncio.run(queue.replay(remote, settings.team_id))

    print(_format_section(f"Team {settings.team_id}", summary))
    return 1 if summary.get("errors") else 0


if __name__ == "__main__":
    raise SystemExit(main())
