from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from .activity import ActivityMonitor
from .config import Config
from .events import DeepFocusChanged, ExtensionFocusHandled, FocusStateError, OverrideSessionRecorded
from .messages import MessageBusAdapter, MessageHandler
from .models import FocusStateSnapshot
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

# Event name on the wire for each bus event (same names the web app listens for)
EVENT_NAMES: dict[type, str] = {
    DeepFocusChanged: "deepFocusChanged",
    ExtensionFocusHandled: "extensionFocusHandled",
    OverrideSessionRecorded: "overrideSessionRecorded",
    FocusStateError: "focusStateError",
}


class WebSocketTransport:
    """Extension/runtime channel: every connected socket is a peer."""

    def __init__(self) -> None:
        self.sockets: set[WebSocket] = set()
        self.handlers: list[MessageHandler] = []

    def on_message(self, handler: MessageHandler) -> None:
        self.handlers.append(handler)

    async def send(self, payload: dict[str, Any]) -> None:
        for ws in list(self.sockets):
            try:
                await ws.send_json(payload)
            except Exception as e:
                logger.debug("Dropping dead socket: %s", e)
                self.sockets.discard(ws)

    async def deliver(self, payload: Any) -> None:
        for handler in list(self.handlers):
            await handler(payload)


class FocusRequest(BaseModel):
    source: str | None = None


class ActivityRequest(BaseModel):
    event: str | None = None
    visible: bool | None = None


class StateResponse(BaseModel):
    phase: str
    elapsedSeconds: int
    snapshot: FocusStateSnapshot


def _event_detail(event: Any) -> dict[str, Any]:
    if isinstance(event, DeepFocusChanged):
        return {"isActive": event.is_active, "fromExtension": event.from_extension}
    if isinstance(event, ExtensionFocusHandled):
        return {
            "extensionId": event.extension_id,
            "isActive": event.is_active,
            "blockedSites": list(event.blocked_sites),
        }
    if isinstance(event, OverrideSessionRecorded):
        return {
            "domain": event.domain,
            "duration": event.duration,
            "userId": event.user_id,
            "timestamp": event.timestamp,
        }
    return {"error": event.error, "operation": event.operation, "timestamp": event.timestamp}


def _event_frame(event: Any) -> dict[str, Any]:
    return {"type": EVENT_NAMES[type(event)], "detail": _event_detail(event)}


def create_app(
    reconciler: Reconciler,
    bus: MessageBusAdapter,
    transport: WebSocketTransport,
    monitor: ActivityMonitor | None = None,
    ticker_interval_seconds: float = 1.0,
) -> FastAPI:
    background: set[asyncio.Task[Any]] = set()

    def _spawn(coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        background.add(task)
        task.add_done_callback(background.discard)

    def _forward(event: Any) -> None:
        _spawn(transport.send(_event_frame(event)))

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        unsubscribers = [reconciler.events.subscribe(event_type, _forward) for event_type in EVENT_NAMES]
        await reconciler.initialize()
        _spawn(reconciler.run_ticker(ticker_interval_seconds))
        if monitor is not None:
            _spawn(monitor.run())
        logger.info("Deep focus bridge ready (phase=%s, active=%s)", reconciler.phase.value, reconciler.is_deep_focus_active)
        try:
            yield
        finally:
            if monitor is not None:
                monitor.stop()
            for unsubscribe in unsubscribers:
                unsubscribe()
            for task in list(background):
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)

    app = FastAPI(title="Deep Focus Sync Bridge", version="0.1.0", lifespan=lifespan)

    def _state() -> StateResponse:
        return StateResponse(
            phase=reconciler.phase.value,
            elapsedSeconds=reconciler.store.elapsed_at(),
            snapshot=reconciler.store.snapshot(),
        )

    @app.get("/state", response_model=StateResponse)
    async def get_state() -> StateResponse:
        return _state()

    @app.post("/focus/enable", response_model=StateResponse)
    async def enable(req: FocusRequest | None = None) -> StateResponse:
        await reconciler.enable_deep_focus(req.source if req is not None else None)
        return _state()

    @app.post("/focus/disable", response_model=StateResponse)
    async def disable() -> StateResponse:
        await reconciler.disable_deep_focus()
        return _state()

    @app.post("/focus/toggle", response_model=StateResponse)
    async def toggle() -> StateResponse:
        await reconciler.toggle_deep_focus()
        return _state()

    @app.post("/messages")
    async def post_message(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except json.JSONDecodeError as e:
            raise HTTPException(status_code=400, detail=f"Invalid JSON: {e}") from e
        accepted = await bus.receive(payload)
        return {"accepted": accepted}

    @app.post("/activity")
    async def post_activity(req: ActivityRequest) -> dict[str, Any]:
        if monitor is None:
            raise HTTPException(status_code=404, detail="Activity monitoring is disabled")
        if req.visible is not None:
            await monitor.set_visible(req.visible)
        if req.event:
            await monitor.notify(req.event)
        return {"state": monitor.state, "idleSeconds": round(monitor.idle_seconds(), 1)}

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        transport.sockets.add(websocket)
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    payload = json.loads(text)
                except json.JSONDecodeError:
                    logger.warning("Dropping non-JSON frame from extension channel")
                    continue
                await transport.deliver(payload)
        except WebSocketDisconnect:
            pass
        finally:
            transport.sockets.discard(websocket)

    return app


def build_app(config: Config, *, with_activity_monitor: bool = True) -> FastAPI:
    transport = WebSocketTransport()
    bus = MessageBusAdapter([transport], trusted_sources=config.trusted_sources)
    reconciler = Reconciler.from_config(config, bus=bus)
    monitor = None
    if with_activity_monitor:
        monitor = ActivityMonitor(
            on_inactive=reconciler.pause_on_inactivity,
            on_active=reconciler.resume_on_activity,
            inactivity_threshold_seconds=config.inactivity_threshold_seconds,
            heartbeat_seconds=config.heartbeat_seconds,
        )
    return create_app(reconciler, bus, transport, monitor)
