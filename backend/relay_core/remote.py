from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx

from .models import LEGS_TABLE, RUNNERS_TABLE


logger = logging.getLogger(__name__)

STATUS_SUBSCRIBED = "SUBSCRIBED"
STATUS_TIMED_OUT = "TIMED_OUT"
STATUS_CHANNEL_ERROR = "CHANNEL_ERROR"
STATUS_CLOSED = "CLOSED"

FAILURE_STATUSES = (STATUS_TIMED_OUT, STATUS_CHANNEL_ERROR, STATUS_CLOSED)


class RemoteStoreError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class ChannelHandle(Protocol):
    def unsubscribe(self) -> None:
        ...


class RealtimeClient(Protocol):
    """Change-notification transport.

    ``on_event`` receives ``{"eventType": "INSERT"|"UPDATE"|"DELETE", "old", "new"}``
    payloads, ``on_message`` receives broadcast payloads
    ``{"type", "deviceId", "timestamp"}`` and ``on_status`` receives one of the
    ``STATUS_*`` strings.
    """

    def subscribe_changes(
        self,
        name: str,
        table: str,
        team_id: str,
        on_event: Callable[[Dict[str, Any]], None],
        on_status: Callable[[str], None],
    ) -> ChannelHandle:
        ...

    def subscribe_broadcast(
        self,
        name: str,
        on_message: Callable[[Dict[str, Any]], None],
        on_status: Callable[[str], None],
    ) -> ChannelHandle:
        ...

    def broadcast(self, name: str, message: Dict[str, Any]) -> None:
        ...


class RemoteStore:
    """Supabase edge-function client for the ``runners`` and ``legs`` tables and the team record."""

    def __init__(
        self,
        url: str,
        key: str,
        schema: str = "public",
        timeout: float = 10.0,
        device_id: str | None = None,
    ) -> None:
        self.supabase_url = url or ""
        self.supabase_key = key or ""
        self.supabase_schema = schema or "public"
        self.timeout = timeout
        self.device_id = device_id

    @classmethod
    def from_settings(cls, settings, device_id: str | None = None) -> "RemoteStore":
        return cls(
            url=settings.supabase_url,
            key=settings.supabase_key,
            schema=settings.supabase_schema,
            timeout=settings.request_timeout,
            device_id=device_id or settings.device_id,
        )

    @property
    def configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    async def list(self, table: str, team_id: str) -> List[Dict[str, Any]]:
        self._check_table(table)
        payload = await self._invoke(f"{table}-list", {"teamId": team_id, "deviceId": self.device_id})
        rows = payload.get(table) if isinstance(payload, dict) else payload
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise RemoteStoreError(f"Unexpected payload from {table}-list: {type(rows).__name__}")
        return [row for row in rows if isinstance(row, dict)]

    async def upsert(
        self,
        table: str,
        team_id: str,
        rows: List[Dict[str, Any]],
        action: str = "upsert",
    ) -> Any:
        self._check_table(table)
        body = {
            "teamId": team_id,
            "deviceId": self.device_id,
            table: rows,
            "action": action,
        }
        return await self._invoke(f"{table}-upsert", body)

    async def get_team(self, team_id: str) -> Dict[str, Any]:
        """Return the team record (``id``, ``name``, ``start_time``, ...)."""

        payload = await self._invoke("teams-get", {"teamId": team_id, "deviceId": self.device_id})
        team = payload.get("team") if isinstance(payload, dict) else None
        if not isinstance(team, dict):
            raise RemoteStoreError("Unexpected payload from teams-get")
        return team

    async def update_team(self, team_id: str, start_time: str) -> Any:
        body = {"teamId": team_id, "deviceId": self.device_id, "start_time": start_time}
        return await self._invoke("teams-update", body)

    # ---- internal Supabase helpers -------------------------------------------------

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in (RUNNERS_TABLE, LEGS_TABLE):
            raise ValueError(f"Unknown table: {table}")

    def _function_endpoint(self, name: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/functions/v1/{name}"

    def _supabase_headers(self) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
            headers["Content-Profile"] = self.supabase_schema
        return headers

    async def _invoke(self, name: str, body: Dict[str, Any]) -> Any:
        if not self.configured:
            raise RemoteStoreError("Supabase is not configured")

        endpoint = self._function_endpoint(name)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(endpoint, json=body, headers=self._supabase_headers())
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            detail = self._extract_supabase_detail(exc.response)
            logger.warning("Supabase %s failed (%s): %s", name, status_code, detail or exc)
            raise RemoteStoreError(
                detail or f"Supabase rejected {name} ({status_code})",
                status_code=status_code,
                detail=detail,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Supabase %s unavailable (%s)", name, exc)
            raise RemoteStoreError(f"Supabase {name} unavailable: {exc}") from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteStoreError(f"Unexpected non-JSON response from {name}") from exc

    @staticmethod
    def _extract_supabase_detail(response: httpx.Response | None) -> Optional[str]:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        candidates: List[Any] = []
        if isinstance(payload, dict):
            candidates.append(payload)
        elif isinstance(payload, list) and payload:
            candidates.append(payload[0])
        for item in candidates:
            if not isinstance(item, dict):
                continue
            for key in ("message", "detail", "error", "hint", "code"):
                value = item.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None
