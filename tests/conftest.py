"""Shared fixtures: an in-memory session log with call accounting and a wired reconciler."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

import pytest

from deepfocus_sync.api import InMemorySessionLog
from deepfocus_sync.events import (
    DeepFocusChanged,
    EventBus,
    ExtensionFocusHandled,
    FocusStateError,
    OverrideSessionRecorded,
)
from deepfocus_sync.messages import LocalHub, MessageBusAdapter
from deepfocus_sync.reconciler import Reconciler
from deepfocus_sync.retry import RetryExecutor, RetryPolicy
from deepfocus_sync.state import SessionStateStore
from deepfocus_sync.storage import MemoryStorage, PersistenceMirror


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSessionLog(InMemorySessionLog):
    """InMemorySessionLog that counts calls and can fail a method a set number of times."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: dict[str, int] = {}
        self.failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def fail(self, method: str, times: int = 10**6) -> None:
        self.failures[method] = times

    def _track(self, method: str) -> None:
        with self._lock:
            self.calls[method] = self.calls.get(method, 0) + 1
            remaining = self.failures.get(method, 0)
            if remaining > 0:
                self.failures[method] = remaining - 1
                raise ConnectionError(f"{method} unavailable")

    def count(self, method: str) -> int:
        return self.calls.get(method, 0)

    def create(self, user_id: str, started_at: float, source: str | None = None) -> str:
        self._track("create")
        return super().create(user_id, started_at, source)

    def close(self, session_id: str, ended_at: float, elapsed_seconds: int) -> None:
        self._track("close")
        super().close(session_id, ended_at, elapsed_seconds)

    def cleanup_orphans(self, user_id: str) -> int:
        self._track("cleanup_orphans")
        return super().cleanup_orphans(user_id)

    def append_override(self, user_id: str, domain: str, duration_seconds: float, timestamp: float) -> None:
        self._track("append_override")
        super().append_override(user_id, domain, duration_seconds, timestamp)

    def get_active_session(self, user_id: str) -> Any:
        self._track("get_active_session")
        return super().get_active_session(user_id)

    def update_duration(self, session_id: str, elapsed_seconds: int) -> None:
        self._track("update_duration")
        super().update_duration(session_id, elapsed_seconds)

    def suspend(self, session_id: str) -> None:
        self._track("suspend")
        super().suspend(session_id)

    def resume(self, session_id: str) -> None:
        self._track("resume")
        super().resume(session_id)

    def open_session(self, session_id: str, user_id: str, started_at: float) -> None:
        self.sessions[session_id] = {
            "id": session_id,
            "userId": user_id,
            "startTime": started_at,
            "status": "active",
            "duration": 0,
        }


@dataclass
class Harness:
    reconciler: Reconciler
    log: RecordingSessionLog
    storage: MemoryStorage
    mirror: PersistenceMirror
    events: EventBus
    clock: FakeClock
    bus: MessageBusAdapter
    hub: LocalHub
    published: list[Any] = field(default_factory=list)

    def of_type(self, event_type: type) -> list[Any]:
        return [e for e in self.published if isinstance(e, event_type)]


def build_harness(
    *,
    user_id: str | None = "user-1",
    storage: MemoryStorage | None = None,
    log: RecordingSessionLog | None = None,
    hub: LocalHub | None = None,
    clock: FakeClock | None = None,
) -> Harness:
    storage = storage if storage is not None else MemoryStorage()
    log = log if log is not None else RecordingSessionLog()
    hub = hub if hub is not None else LocalHub()
    clock = clock if clock is not None else FakeClock()

    events = EventBus()
    mirror = PersistenceMirror(storage)
    store = SessionStateStore(mirror, events, clock=clock)
    bus = MessageBusAdapter([hub.join("tab")])

    async def no_sleep(_delay: float) -> None:
        return None

    reconciler = Reconciler(
        session_log=log,
        store=store,
        events=events,
        bus=bus,
        retry=RetryExecutor(RetryPolicy(max_attempts=3, base_delay_seconds=1.0), sleep=no_sleep),
        user_id=user_id,
        clock=clock,
    )
    harness = Harness(
        reconciler=reconciler,
        log=log,
        storage=storage,
        mirror=mirror,
        events=events,
        clock=clock,
        bus=bus,
        hub=hub,
    )
    for event_type in (DeepFocusChanged, ExtensionFocusHandled, OverrideSessionRecorded, FocusStateError):
        events.subscribe(event_type, harness.published.append)
    return harness


@pytest.fixture
def harness() -> Harness:
    return build_harness()


@pytest.fixture
def extension(harness: Harness):
    """A peer on the same hub standing in for the browser extension; records what it receives."""
    peer = harness.hub.join("extension")
    received: list[dict[str, Any]] = []

    async def record(payload: dict[str, Any]) -> None:
        received.append(payload)

    peer.on_message(record)
    peer.received = received  # type: ignore[attr-defined]
    return peer
