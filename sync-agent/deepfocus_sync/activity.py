from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

ACTIVITY_EVENTS = frozenset({"mousedown", "mousemove", "keypress", "scroll", "touchstart", "click"})


@dataclass(frozen=True)
class Transition:
    ts: float  # epoch seconds
    state: str  # "ACTIVE" | "IDLE"


class ActivityMonitor:
    """
    Input-idleness detector.

    - Reports IDLE once per idle period after inactivity_threshold_seconds without qualifying input.
    - Reports ACTIVE on the next qualifying input, window focus, or the page becoming visible.

    It never touches the session itself; the callbacks decide what pausing means.
    """

    def __init__(
        self,
        on_inactive: Callable[[float], Awaitable[None]],
        on_active: Callable[[], Awaitable[None]],
        inactivity_threshold_seconds: float = 300.0,
        heartbeat_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.on_inactive = on_inactive
        self.on_active = on_active
        self.inactivity_threshold_seconds = inactivity_threshold_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.clock = clock

        self.last_activity: float = clock()
        self.is_visible = True
        self.state = "ACTIVE"
        self.transitions: list[Transition] = [Transition(ts=self.last_activity, state=self.state)]
        self._stop = asyncio.Event()

    def idle_seconds(self, now: float | None = None) -> float:
        ts = now if now is not None else self.clock()
        return max(0.0, ts - self.last_activity)

    async def notify(self, event: str, now: float | None = None) -> None:
        if event in ACTIVITY_EVENTS or event == "focus":
            await self._record_activity(now)
        elif event == "blur":
            # Losing focus alone is not inactivity; just re-check
            await self.check(now)
        else:
            logger.debug("Ignoring non-qualifying event %r", event)

    async def set_visible(self, visible: bool, now: float | None = None) -> None:
        self.is_visible = visible
        if visible:
            await self._record_activity(now)
        else:
            await self.check(now)

    async def _record_activity(self, now: float | None) -> None:
        ts = now if now is not None else self.clock()
        self.last_activity = ts
        if self.state == "IDLE":
            self.state = "ACTIVE"
            self.transitions.append(Transition(ts=ts, state=self.state))
            await self.on_active()

    async def check(self, now: float | None = None) -> None:
        ts = now if now is not None else self.clock()
        idle = self.idle_seconds(ts)
        if self.state == "ACTIVE" and idle >= self.inactivity_threshold_seconds:
            self.state = "IDLE"
            self.transitions.append(Transition(ts=ts, state=self.state))
            logger.info("No input for %.0fs; reporting inactivity", idle)
            await self.on_inactive(idle)

    async def run(self) -> None:
        self._stop.clear()
        while not self._stop.is_set():
            try:
                await self.check()
            except Exception:
                logger.exception("Inactivity check failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.heartbeat_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop.set()
