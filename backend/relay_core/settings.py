from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path


logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r; using %s", name, raw, default)
        return default
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r; using %s", name, raw, default)
        return default
    return value


@dataclass(frozen=True)
class SyncSettings:
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_schema: str = "public"
    data_dir: Path = DEFAULT_DATA_DIR
    team_id: str | None = None
    device_id: str | None = None
    request_timeout: float = 10.0
    reconcile_interval: float = 60.0
    refetch_debounce: float = 0.5
    broadcast_dedup_window: float = 1.5
    max_reconnect_attempts: int = 5

    @property
    def remote_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @classmethod
    def from_env(cls) -> "SyncSettings":
        data_dir = os.getenv("RELAY_DATA_DIR")
        return cls(
            supabase_url=os.getenv("SUPABASE_URL", ""),
            supabase_key=(
                os.getenv("SUPABASE_SERVICE_ROLE_KEY")
                or os.getenv("SUPABASE_SERVICE_KEY")
                or os.getenv("SUPABASE_ANON_KEY")
                or ""
            ),
            supabase_schema=os.getenv("SUPABASE_SCHEMA", "public"),
            data_dir=Path(data_dir) if data_dir else DEFAULT_DATA_DIR,
            team_id=os.getenv("RELAY_TEAM_ID") or None,
            device_id=os.getenv("RELAY_DEVICE_ID") or None,
            request_timeout=_env_float("RELAY_REQUEST_TIMEOUT", 10.0),
            reconcile_interval=_env_float("RELAY_RECONCILE_INTERVAL", 60.0),
            refetch_debounce=_env_float("RELAY_REFETCH_DEBOUNCE", 0.5),
            broadcast_dedup_window=_env_float("RELAY_BROADCAST_DEDUP_WINDOW", 1.5),
            max_reconnect_attempts=_env_int("RELAY_MAX_RECONNECT_ATTEMPTS", 5),
        )
