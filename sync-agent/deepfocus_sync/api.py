from __future__ import annotations

import time
import uuid
from typing import Any, Protocol

import requests

from .models import ActiveSessionResponse, CleanupResponse, CreateSessionResponse, RemoteSession


class SessionLog(Protocol):
    def create(self, user_id: str, started_at: float, source: str | None = None) -> str: ...

    def close(self, session_id: str, ended_at: float, elapsed_seconds: int) -> None: ...

    def cleanup_orphans(self, user_id: str) -> int: ...

    def append_override(self, user_id: str, domain: str, duration_seconds: float, timestamp: float) -> None: ...

    def get_active_session(self, user_id: str) -> RemoteSession | None: ...

    def update_duration(self, session_id: str, elapsed_seconds: int) -> None: ...

    def suspend(self, session_id: str) -> None: ...

    def resume(self, session_id: str) -> None: ...


class RemoteSessionLog:
    def __init__(self, base_url: str, auth_token: str | None = None, timeout_seconds: float = 20.0):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout_seconds = timeout_seconds

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        r = requests.post(
            f"{self.base_url}{path}",
            json=payload,
            headers=self._headers(),
            timeout=self.timeout_seconds,
        )
        r.raise_for_status()
        return r.json() if r.content else {}

    def create(self, user_id: str, started_at: float, source: str | None = None) -> str:
        payload: dict[str, Any] = {"userId": user_id, "startTime": started_at}
        if source:
            payload["source"] = source
        data = self._post("/deepFocusSessions", payload)
        return CreateSessionResponse.model_validate(data).sessionId

    def close(self, session_id: str, ended_at: float, elapsed_seconds: int) -> None:
        self._post(
            f"/deepFocusSessions/{session_id}/close",
            {"endTime": ended_at, "duration": elapsed_seconds},
        )

    def cleanup_orphans(self, user_id: str) -> int:
        data = self._post("/deepFocusSessions/cleanupOrphans", {"userId": user_id})
        return CleanupResponse.model_validate(data).closed

    def append_override(self, user_id: str, domain: str, duration_seconds: float, timestamp: float) -> None:
        self._post(
            "/overrideSessions",
            {"userId": user_id, "domain": domain, "duration": duration_seconds, "timestamp": timestamp},
        )

    def get_active_session(self, user_id: str) -> RemoteSession | None:
        r = requests.get(
            f"{self.base_url}/deepFocusSessions/active",
            params={"userId": user_id},
            headers=self._headers(),
            timeout=self.timeout_seconds,
        )
        r.raise_for_status()
        return ActiveSessionResponse.model_validate(r.json()).session

    def update_duration(self, session_id: str, elapsed_seconds: int) -> None:
        self._post(f"/deepFocusSessions/{session_id}/duration", {"duration": elapsed_seconds})

    def suspend(self, session_id: str) -> None:
        self._post(f"/deepFocusSessions/{session_id}/suspend", {})

    def resume(self, session_id: str) -> None:
        self._post(f"/deepFocusSessions/{session_id}/resume", {})


class InMemorySessionLog:
    """Process-local session log with the same contract (offline mode and tests)."""

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.overrides: list[dict[str, Any]] = []

    def create(self, user_id: str, started_at: float, source: str | None = None) -> str:
        session_id = uuid.uuid4().hex
        self.sessions[session_id] = {
            "id": session_id,
            "userId": user_id,
            "startTime": started_at,
            "status": "active",
            "duration": 0,
            "source": source,
        }
        return session_id

    def close(self, session_id: str, ended_at: float, elapsed_seconds: int) -> None:
        row = self.sessions.get(session_id)
        if row is None:
            raise KeyError(f"Unknown session: {session_id}")
        row.update(status="completed", endTime=ended_at, duration=elapsed_seconds)

    def cleanup_orphans(self, user_id: str) -> int:
        closed = 0
        for row in self.sessions.values():
            if row["userId"] == user_id and row["status"] in {"active", "suspended"}:
                # Keep the last pushed duration; no recalculation
                row.update(status="completed", endTime=time.time())
                closed += 1
        return closed

    def append_override(self, user_id: str, domain: str, duration_seconds: float, timestamp: float) -> None:
        self.overrides.append(
            {"userId": user_id, "domain": domain, "duration": duration_seconds, "timestamp": timestamp}
        )

    def get_active_session(self, user_id: str) -> RemoteSession | None:
        open_rows = [
            row
            for row in self.sessions.values()
            if row["userId"] == user_id and row["status"] in {"active", "suspended"}
        ]
        if not open_rows:
            return None
        newest = max(open_rows, key=lambda row: row["startTime"])
        return RemoteSession.model_validate(newest)

    def update_duration(self, session_id: str, elapsed_seconds: int) -> None:
        self.sessions[session_id]["duration"] = elapsed_seconds

    def suspend(self, session_id: str) -> None:
        self.sessions[session_id]["status"] = "suspended"

    def resume(self, session_id: str) -> None:
        self.sessions[session_id]["status"] = "active"
