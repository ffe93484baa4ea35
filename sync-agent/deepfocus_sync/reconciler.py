from __future__ import annotations

import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Any, Callable

from .api import InMemorySessionLog, RemoteSessionLog, SessionLog
from .config import Config
from .dedup import Debouncer, ProcessedMessageSet
from .errors import RemoteWriteFailure
from .events import EventBus, ExtensionFocusHandled, FocusStateError, OverrideSessionRecorded
from .messages import KnownMessage, MessageBusAdapter, focus_command
from .models import (
    ExtensionFocusStateChanged,
    FocusSession,
    FocusStateSnapshot,
    OverrideSession,
    RecordOverrideSession,
    RemoteSession,
    SessionStatus,
)
from .retry import RetryExecutor, RetryPolicy
from .state import SessionStateStore
from .storage import FileStorage, KeyValueStorage, PersistenceMirror

logger = logging.getLogger(__name__)


class InitPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class Reconciler:
    """
    Resolves local, remote and cross-context signals into one deep focus state.

    Every state-changing entry point runs under one asyncio lock and re-reads the
    store after each await. Guard failures (no user, already active, recovery in
    progress) are logged no-ops. Remote writes go through the retry executor and,
    once retries are exhausted, surface as a single FocusStateError while the
    local state stands.
    """

    def __init__(
        self,
        *,
        session_log: SessionLog,
        store: SessionStateStore,
        events: EventBus,
        bus: MessageBusAdapter | None = None,
        retry: RetryExecutor | None = None,
        user_id: str | None = None,
        debouncer: Debouncer | None = None,
        processed: ProcessedMessageSet | None = None,
        auto_session_management: bool = True,
        duration_sync_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.session_log = session_log
        self.store = store
        self.events = events
        self.bus = bus
        self.retry = retry or RetryExecutor()
        self.user_id = user_id
        self.debouncer = debouncer or Debouncer()
        self.processed = processed or ProcessedMessageSet()
        self.auto_session_management = auto_session_management
        self.duration_sync_interval_seconds = duration_sync_interval_seconds
        self.clock = clock

        self.phase = InitPhase.UNINITIALIZED
        self._init_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self._last_duration_push: float | None = None

        if bus is not None:
            bus.set_handler(self.handle_message)

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        session_log: SessionLog | None = None,
        storage: KeyValueStorage | None = None,
        bus: MessageBusAdapter | None = None,
    ) -> "Reconciler":
        if session_log is None:
            session_log = (
                InMemorySessionLog() if config.offline else RemoteSessionLog(config.base_url, config.auth_token)
            )
        events = EventBus()
        mirror = PersistenceMirror(storage or FileStorage(config.state_dir), key=config.storage_key)
        policy = RetryPolicy(
            max_attempts=config.retry_attempts,
            base_delay_seconds=config.retry_delay_seconds,
            multiplier=config.retry_multiplier,
        )
        return cls(
            session_log=session_log,
            store=SessionStateStore(mirror, events),
            events=events,
            bus=bus,
            retry=RetryExecutor(policy),
            user_id=config.user_id,
            debouncer=Debouncer(config.debounce_seconds),
            processed=ProcessedMessageSet(config.processed_capacity, config.processed_keep),
            auto_session_management=config.auto_session_management,
            duration_sync_interval_seconds=config.duration_sync_interval_seconds,
        )

    @property
    def is_deep_focus_active(self) -> bool:
        return self.store.is_deep_focus_active

    @property
    def recovery_in_progress(self) -> bool:
        return self.phase is InitPhase.INITIALIZING

    # -- plumbing ----------------------------------------------------------

    async def _remote(self, key: str, fn: Callable[..., Any], *args: Any) -> Any:
        return await self.retry.run(key, lambda: asyncio.to_thread(fn, *args))

    def _report_failure(self, err: RemoteWriteFailure) -> None:
        self.events.publish(FocusStateError(error=str(err), operation=err.operation, timestamp=self.clock()))

    async def _notify_extension(self, is_active: bool) -> None:
        if self.bus is not None:
            await self.bus.broadcast(focus_command(is_active))

    async def _close_upstream(self, session: FocusSession, now: float) -> int:
        elapsed = self.store.elapsed_at(now)
        if not session.synced:
            logger.info("Session %s was never created upstream; nothing to close", session.id)
            return elapsed
        try:
            await self._remote(f"close:{session.id}", self.session_log.close, session.id, now, elapsed)
        except RemoteWriteFailure as e:
            self._report_failure(e)
        return elapsed

    # -- user-facing operations ----------------------------------------------

    async def enable_deep_focus(self, source: str | None = None) -> None:
        if not self.user_id:
            logger.warning("User not authenticated; cannot enable deep focus")
            return
        if self.store.is_deep_focus_active:
            logger.info("enable_deep_focus ignored: already active")
            return
        if self.store.active_session_id:
            logger.info("enable_deep_focus ignored: session %s already exists", self.store.active_session_id)
            return
        if self.recovery_in_progress:
            logger.info("enable_deep_focus ignored: recovery in progress")
            return

        async with self._lock:
            # Another flow may have won while we waited for the lock
            if self.store.is_deep_focus_active or self.store.active_session_id:
                logger.info("enable_deep_focus ignored: activated concurrently")
                return
            user_id = self.user_id
            started_at = self.clock()
            try:
                session_id = await self._remote(
                    f"create:{user_id}", self.session_log.create, user_id, started_at, source
                )
                synced = True
            except RemoteWriteFailure as e:
                self._report_failure(e)
                session_id = f"local-{uuid.uuid4().hex}"
                synced = False
                logger.warning("Deep focus enabled locally with pending session %s", session_id)

            session = FocusSession(
                id=session_id,
                user_id=user_id,
                started_at=started_at,
                synced=synced,
                source=source,
            )
            self.store.commit(is_active=True, session=session)
            self._last_duration_push = started_at
            logger.info("Deep focus enabled (session %s)", session_id)
            await self._notify_extension(True)

    async def disable_deep_focus(self) -> None:
        if not self.user_id:
            logger.warning("User not authenticated; cannot disable deep focus")
            return

        async with self._lock:
            session = self.store.session
            if not self.store.is_deep_focus_active and session is None:
                logger.debug("disable_deep_focus ignored: nothing active")
                return

            now = self.clock()
            if session is not None:
                elapsed = await self._close_upstream(session, now)
                logger.info("Deep focus session %s ended after %ds", session.id, elapsed)
            self.store.commit(is_active=False, session=None)
            self._last_duration_push = None
            await self._notify_extension(False)

    async def toggle_deep_focus(self) -> None:
        if self.store.is_deep_focus_active:
            await self.disable_deep_focus()
        else:
            await self.enable_deep_focus()

    # -- recovery ------------------------------------------------------------

    async def initialize(self, user_id: str | None = None) -> None:
        """Run session recovery once; concurrent callers wait on the same run."""
        if user_id is not None:
            self.user_id = user_id
        if self.phase is InitPhase.READY:
            return
        if not self.user_id:
            logger.warning("User not authenticated; deferring deep focus initialization")
            return
        if self._init_task is None:
            self.phase = InitPhase.INITIALIZING
            self._init_task = asyncio.create_task(self._run_initialize(self.user_id))
        await asyncio.shield(self._init_task)

    async def _run_initialize(self, user_id: str) -> None:
        try:
            snapshot, corrupted = self.store.mirror.load_validated()
            if corrupted:
                async with self._lock:
                    self.store.commit(is_active=False, session=None)

            revision = self.store.revision
            remote_known = True
            try:
                remote = await asyncio.to_thread(self.session_log.get_active_session, user_id)
            except Exception as e:
                logger.warning("Could not reach session log during recovery: %s", e)
                remote, remote_known = None, False

            async with self._lock:
                if self.store.revision != revision:
                    logger.info("Focus state changed during recovery; keeping the newer state")
                else:
                    await self._reconcile(user_id, snapshot, remote, remote_known)
            self.phase = InitPhase.READY
        except Exception:
            logger.exception("Deep focus initialization failed")
            self.phase = InitPhase.UNINITIALIZED
        finally:
            self._init_task = None

    async def _reconcile(
        self,
        user_id: str,
        snapshot: FocusStateSnapshot | None,
        remote: RemoteSession | None,
        remote_known: bool,
    ) -> None:
        if self.store.session is not None:
            logger.debug("Session %s already bound; nothing to recover", self.store.active_session_id)
            return

        snap_active = snapshot is not None and snapshot.isDeepFocusActive
        snap_session = snapshot.to_session() if snap_active else None
        blocked_sites = snapshot.blockedSites if snapshot is not None else self.store.blocked_sites

        if snap_session is not None:
            if not remote_known or (remote is not None and remote.id == snap_session.id):
                logger.info("Adopting active session %s from local snapshot", snap_session.id)
                self._adopt(snap_session, blocked_sites)
            elif remote is not None:
                logger.info("Session log has open session %s; replacing snapshot session %s", remote.id, snap_session.id)
                self._adopt(self._session_from_remote(remote), blocked_sites)
            elif not snap_session.synced:
                await self._adopt_pending(snap_session, blocked_sites)
            else:
                await self._cleanup_orphans(user_id, blocked_sites)
                return
            await self._notify_extension(True)
            return

        if snap_active or self.store.is_deep_focus_active:
            # Flag asserted (e.g. by the extension) with no session behind it
            if not snap_active:
                blocked_sites = self.store.blocked_sites
            if remote is not None:
                logger.info("Binding focus flag to open session %s", remote.id)
                self._adopt(self._session_from_remote(remote), blocked_sites)
                await self._notify_extension(True)
            elif remote_known:
                await self._cleanup_orphans(user_id, blocked_sites)
            elif snap_active and not self.store.is_deep_focus_active:
                logger.warning("Snapshot is active without a session and the session log is unreachable; resetting")
                self.store.commit(is_active=False, session=None, blocked_sites=blocked_sites)
            return

        logger.debug("Deep focus state consistent; nothing to reconcile")

    def _session_from_remote(self, remote: RemoteSession) -> FocusSession:
        status = SessionStatus.PAUSED if remote.status == "suspended" else SessionStatus.ACTIVE
        return FocusSession(
            id=remote.id,
            user_id=remote.userId,
            started_at=remote.startTime,
            elapsed_seconds=remote.duration or 0,
            paused_at=self.clock() if status is SessionStatus.PAUSED else None,
            status=status,
        )

    def _adopt(self, session: FocusSession, blocked_sites: list[str]) -> None:
        self.store.commit(is_active=True, session=session, blocked_sites=blocked_sites)
        self._last_duration_push = self.clock()

    async def _adopt_pending(self, session: FocusSession, blocked_sites: list[str]) -> None:
        try:
            session_id = await self._remote(
                f"create:{session.user_id}",
                self.session_log.create,
                session.user_id,
                session.started_at,
                session.source,
            )
        except RemoteWriteFailure as e:
            self._report_failure(e)
            logger.warning("Keeping pending session %s; upstream still unavailable", session.id)
        else:
            logger.info("Pending session %s created upstream as %s", session.id, session_id)
            session = session.model_copy(update={"id": session_id, "synced": True})
        self._adopt(session, blocked_sites)

    async def _cleanup_orphans(self, user_id: str, blocked_sites: list[str] | None = None) -> None:
        logger.info("Deep focus marked active without an open session upstream; cleaning up")
        try:
            closed = await self._remote(f"cleanup:{user_id}", self.session_log.cleanup_orphans, user_id)
        except RemoteWriteFailure as e:
            self._report_failure(e)
        else:
            if closed:
                logger.info("Closed %d orphaned session(s)", closed)
        self.store.commit(is_active=False, session=None, blocked_sites=blocked_sites)
        self._last_duration_push = None
        await self._notify_extension(False)

    # -- extension-driven state ------------------------------------------------

    async def sync_complete_focus_state(self, is_active: bool, blocked_sites: list[str]) -> None:
        """Apply the extension's view of the flag and blocked sites."""
        async with self._lock:
            session = self.store.session
            if not is_active and session is not None:
                await self._close_upstream(session, self.clock())
                self.store.commit(is_active=False, session=None, blocked_sites=blocked_sites, from_extension=True)
                self._last_duration_push = None
                return
            self.store.commit(is_active=is_active, blocked_sites=blocked_sites, from_extension=True)

    async def record_override_session(self, message: RecordOverrideSession) -> None:
        key = message.dedup_key
        if not self.processed.add(key):
            logger.info("Skipping duplicate override message %s", key)
            return

        payload = message.payload
        user_id = payload.userId or self.user_id
        if not user_id:
            logger.error("No user id available for override session on %s", payload.domain)
            return

        override = OverrideSession(
            domain=payload.domain,
            duration_seconds=payload.duration,
            user_id=user_id,
            timestamp=payload.timestamp,
        )
        try:
            await self._remote(
                f"override:{key}",
                self.session_log.append_override,
                override.user_id,
                override.domain,
                override.duration_seconds,
                override.timestamp,
            )
        except RemoteWriteFailure as e:
            self._report_failure(e)
            return

        logger.info("Recorded override session for %s (%ss)", override.domain, override.duration_seconds)
        self.events.publish(
            OverrideSessionRecorded(
                domain=override.domain,
                duration=override.duration_seconds,
                user_id=override.user_id,
                timestamp=self.clock(),
            )
        )

    async def handle_message(self, message: KnownMessage) -> None:
        if isinstance(message, ExtensionFocusStateChanged):
            p = message.payload
            key = f"{p.isActive}:{','.join(sorted(p.blockedSites))}"
            # These carry no message id, so the processed set cannot tell a copy
            # from a later identical assertion; the debounce window does that.
            if not self.debouncer.accept(key):
                logger.debug("Collapsing repeated extension focus state %s", key)
                return
            await self.sync_complete_focus_state(p.isActive, list(p.blockedSites))
            self.events.publish(
                ExtensionFocusHandled(
                    extension_id=message.extensionId,
                    is_active=p.isActive,
                    blocked_sites=tuple(p.blockedSites),
                )
            )
        elif isinstance(message, RecordOverrideSession):
            await self.record_override_session(message)

    # -- inactivity ------------------------------------------------------------

    async def pause_on_inactivity(self, inactivity_seconds: float, now: float | None = None) -> None:
        async with self._lock:
            session = self.store.session
            if (
                not self.auto_session_management
                or not self.store.is_deep_focus_active
                or session is None
                or session.is_paused
            ):
                return

            ts = now if now is not None else self.clock()
            paused = session.model_copy(
                update={
                    "elapsed_seconds": self.store.elapsed_at(ts),
                    "status": SessionStatus.PAUSED,
                    "paused_at": ts,
                }
            )
            self.store.commit(session=paused)
            logger.info("Deep focus session %s paused after %.0fs of inactivity", paused.id, inactivity_seconds)

            if paused.synced:
                try:
                    await self._remote(f"suspend:{paused.id}", self.session_log.suspend, paused.id)
                except RemoteWriteFailure as e:
                    self._report_failure(e)

    async def resume_on_activity(self, now: float | None = None) -> None:
        async with self._lock:
            session = self.store.session
            if (
                not self.auto_session_management
                or not self.store.is_deep_focus_active
                or session is None
                or not session.is_paused
            ):
                return

            ts = now if now is not None else self.clock()
            paused_for = max(0, int(ts - (session.paused_at if session.paused_at is not None else ts)))
            resumed = session.model_copy(
                update={
                    "status": SessionStatus.ACTIVE,
                    "paused_at": None,
                    "total_paused_seconds": session.total_paused_seconds + paused_for,
                }
            )
            self.store.commit(session=resumed)
            logger.info("Deep focus session %s resumed; paused %ds in total", resumed.id, resumed.total_paused_seconds)

            if resumed.synced:
                try:
                    await self._remote(f"resume:{resumed.id}", self.session_log.resume, resumed.id)
                except RemoteWriteFailure as e:
                    self._report_failure(e)

    # -- elapsed time ------------------------------------------------------------

    async def tick(self, now: float | None = None) -> None:
        # Skip rather than queue behind a slow remote write
        if self._lock.locked():
            return
        async with self._lock:
            session = self.store.session
            if session is None or session.is_paused or not self.store.is_deep_focus_active:
                return

            ts = now if now is not None else self.clock()
            elapsed = self.store.elapsed_at(ts)
            if elapsed != session.elapsed_seconds:
                self.store.commit(session=session.model_copy(update={"elapsed_seconds": elapsed}))

            last = self._last_duration_push
            if session.synced and (last is None or ts - last >= self.duration_sync_interval_seconds):
                self._last_duration_push = ts
                try:
                    await self._remote(f"duration:{session.id}", self.session_log.update_duration, session.id, elapsed)
                except RemoteWriteFailure as e:
                    self._report_failure(e)

    async def run_ticker(self, interval_seconds: float = 1.0) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(interval_seconds)
