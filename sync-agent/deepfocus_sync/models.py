from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, TypeAdapter


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class FocusSession(BaseModel):
    id: str
    user_id: str
    started_at: float = Field(..., description="Epoch seconds")
    elapsed_seconds: int = 0
    paused_at: float | None = None
    total_paused_seconds: int = 0
    status: SessionStatus = SessionStatus.ACTIVE
    # False while `id` is a locally generated placeholder not yet known upstream
    synced: bool = True
    source: str | None = None

    @property
    def is_paused(self) -> bool:
        return self.status == SessionStatus.PAUSED


class FocusStateSnapshot(BaseModel):
    """Mirror of the session state kept in local storage (camelCase on disk)."""

    isDeepFocusActive: bool = False
    activeSessionId: str | None = None
    userId: str | None = None
    activeSessionStartTime: float | None = None
    activeSessionElapsedSeconds: int = 0
    isSessionPaused: bool = False
    pausedAt: float | None = None
    totalPausedTime: int = 0
    sessionStatus: SessionStatus | None = None
    sessionSynced: bool = True
    sessionSource: str | None = None
    blockedSites: list[str] = Field(default_factory=list)
    savedAt: float | None = None

    @classmethod
    def from_state(
        cls,
        *,
        is_active: bool,
        session: FocusSession | None,
        blocked_sites: list[str],
        saved_at: float | None = None,
    ) -> "FocusStateSnapshot":
        if session is None:
            return cls(isDeepFocusActive=is_active, blockedSites=list(blocked_sites), savedAt=saved_at)
        return cls(
            isDeepFocusActive=is_active,
            activeSessionId=session.id,
            userId=session.user_id,
            activeSessionStartTime=session.started_at,
            activeSessionElapsedSeconds=session.elapsed_seconds,
            isSessionPaused=session.is_paused,
            pausedAt=session.paused_at,
            totalPausedTime=session.total_paused_seconds,
            sessionStatus=session.status,
            sessionSynced=session.synced,
            sessionSource=session.source,
            blockedSites=list(blocked_sites),
            savedAt=saved_at,
        )

    def is_consistent(self) -> bool:
        if not self.isDeepFocusActive:
            return True
        return bool(self.activeSessionId) and self.activeSessionStartTime is not None

    def to_session(self) -> FocusSession | None:
        if not self.activeSessionId or self.activeSessionStartTime is None:
            return None
        status = self.sessionStatus or (SessionStatus.PAUSED if self.isSessionPaused else SessionStatus.ACTIVE)
        return FocusSession(
            id=self.activeSessionId,
            user_id=self.userId or "",
            started_at=self.activeSessionStartTime,
            elapsed_seconds=self.activeSessionElapsedSeconds,
            paused_at=self.pausedAt,
            total_paused_seconds=self.totalPausedTime,
            status=status,
            synced=self.sessionSynced,
            source=self.sessionSource,
        )


class OverrideSession(BaseModel):
    domain: str
    duration_seconds: float
    user_id: str
    timestamp: float


# Inbound cross-context messages. Anything not matching one of these variants
# exactly is rejected at the adapter boundary.


class ExtensionFocusStatePayload(BaseModel):
    isActive: StrictBool
    blockedSites: list[StrictStr] = Field(default_factory=list)


class ExtensionFocusStateChanged(BaseModel):
    type: Literal["EXTENSION_FOCUS_STATE_CHANGED"]
    extensionId: StrictStr = Field(..., min_length=1)
    payload: ExtensionFocusStatePayload


class OverridePayload(BaseModel):
    domain: StrictStr = Field(..., min_length=1)
    duration: float = Field(..., gt=0, strict=True)
    userId: StrictStr | None = None
    timestamp: float = Field(..., strict=True)
    extensionTimestamp: float | None = Field(default=None, strict=True)


class RecordOverrideSession(BaseModel):
    type: Literal["RECORD_OVERRIDE_SESSION"]
    source: StrictStr
    payload: OverridePayload

    @property
    def dedup_key(self) -> str:
        p = self.payload
        stamp = p.extensionTimestamp if p.extensionTimestamp is not None else p.timestamp
        return f"{p.domain}_{p.duration}_{stamp}"


InboundMessage = Annotated[
    Union[ExtensionFocusStateChanged, RecordOverrideSession],
    Field(discriminator="type"),
]

inbound_message_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)


# Remote session log wire models


class RemoteSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    userId: str
    startTime: float = Field(..., description="Epoch seconds")
    status: str = "active"
    # Elapsed seconds last pushed by the owning agent
    duration: int | None = None


class CreateSessionResponse(BaseModel):
    sessionId: str


class ActiveSessionResponse(BaseModel):
    # If no open session exists upstream, session is null/None
    session: RemoteSession | None = None


class CleanupResponse(BaseModel):
    closed: int = 0
