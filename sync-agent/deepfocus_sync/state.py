from __future__ import annotations

import time
from typing import Callable

from .events import DeepFocusChanged, EventBus
from .models import FocusSession, FocusStateSnapshot
from .storage import PersistenceMirror

_UNSET = object()


class SessionStateStore:
    """
    Per-process source of truth for the deep focus flag and its session.

    Only the reconciler calls `commit`; each commit is mirrored to local storage
    and announces flag changes on the event bus.
    """

    def __init__(self, mirror: PersistenceMirror, events: EventBus, clock: Callable[[], float] = time.time):
        self.mirror = mirror
        self.events = events
        self.clock = clock

        self._is_active = False
        self._session: FocusSession | None = None
        self._blocked_sites: list[str] = []
        self.revision = 0

    @property
    def is_deep_focus_active(self) -> bool:
        return self._is_active

    @property
    def session(self) -> FocusSession | None:
        return self._session

    @property
    def active_session_id(self) -> str | None:
        return self._session.id if self._session is not None else None

    @property
    def blocked_sites(self) -> list[str]:
        return list(self._blocked_sites)

    def snapshot(self) -> FocusStateSnapshot:
        return FocusStateSnapshot.from_state(
            is_active=self._is_active,
            session=self._session,
            blocked_sites=self._blocked_sites,
        )

    def commit(
        self,
        *,
        is_active: bool | None = None,
        session: FocusSession | None | object = _UNSET,
        blocked_sites: list[str] | None = None,
        from_extension: bool = False,
    ) -> None:
        was_active = self._is_active
        if is_active is not None:
            self._is_active = is_active
        if session is not _UNSET:
            self._session = session  # type: ignore[assignment]
        if blocked_sites is not None:
            self._blocked_sites = list(blocked_sites)
        self.revision += 1

        self.mirror.save(self.snapshot().model_copy(update={"savedAt": self.clock()}))
        if self._is_active != was_active:
            self.events.publish(DeepFocusChanged(is_active=self._is_active, from_extension=from_extension))

    def elapsed_at(self, now: float | None = None) -> int:
        """Active seconds of the bound session; frozen while paused, never decreasing."""
        session = self._session
        if session is None:
            return 0
        if session.is_paused:
            return session.elapsed_seconds
        ts = now if now is not None else self.clock()
        running = int(ts - session.started_at - session.total_paused_seconds)
        return max(session.elapsed_seconds, running)
