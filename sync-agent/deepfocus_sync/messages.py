from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Protocol, Union

from pydantic import ValidationError

from .models import ExtensionFocusStateChanged, RecordOverrideSession, inbound_message_adapter

logger = logging.getLogger(__name__)

# Commands this agent sends to the extension; peers on a shared channel see them too
ENABLE_FOCUS_MODE = "ENABLE_FOCUS_MODE"
DISABLE_FOCUS_MODE = "DISABLE_FOCUS_MODE"
OUTBOUND_TYPES = frozenset({ENABLE_FOCUS_MODE, DISABLE_FOCUS_MODE})

KnownMessage = Union[ExtensionFocusStateChanged, RecordOverrideSession]
MessageHandler = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True)
class MalformedMessage:
    reason: str
    raw: Any = None


Decoded = Union[ExtensionFocusStateChanged, RecordOverrideSession, MalformedMessage]


def decode_message(raw: Any) -> Decoded:
    if not isinstance(raw, dict):
        return MalformedMessage(reason=f"expected an object, got {type(raw).__name__}", raw=raw)
    try:
        return inbound_message_adapter.validate_python(raw)
    except ValidationError as e:
        errors = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        return MalformedMessage(reason=errors or str(e), raw=raw)


def focus_command(is_active: bool) -> dict[str, Any]:
    return {"type": ENABLE_FOCUS_MODE if is_active else DISABLE_FOCUS_MODE}


class MessageTransport(Protocol):
    async def send(self, payload: dict[str, Any]) -> None: ...

    def on_message(self, handler: MessageHandler) -> None: ...


class LocalHub:
    """In-process fan-out shared by several transports (window.postMessage analogue)."""

    def __init__(self) -> None:
        self.members: list[LocalTransport] = []

    def join(self, name: str = "tab") -> "LocalTransport":
        transport = LocalTransport(self, name)
        self.members.append(transport)
        return transport

    async def deliver(self, sender: "LocalTransport", payload: dict[str, Any]) -> None:
        for member in list(self.members):
            if member is sender:
                continue
            for handler in list(member.handlers):
                await handler(payload)


class LocalTransport:
    def __init__(self, hub: LocalHub, name: str):
        self.hub = hub
        self.name = name
        self.handlers: list[MessageHandler] = []

    async def send(self, payload: dict[str, Any]) -> None:
        await self.hub.deliver(self, payload)

    def on_message(self, handler: MessageHandler) -> None:
        self.handlers.append(handler)


class MessageBusAdapter:
    """
    Validates inbound cross-context messages and forwards the known ones.

    No acks and no ordering; the same logical event may arrive once per channel,
    so the receiver is expected to dedupe.
    """

    def __init__(
        self,
        transports: Iterable[MessageTransport] = (),
        trusted_sources: Iterable[str] = ("make10000hours", "extension"),
    ):
        self.transports: list[MessageTransport] = []
        self.trusted_sources = tuple(trusted_sources)
        self._handler: Callable[[KnownMessage], Awaitable[None]] | None = None
        for transport in transports:
            self.attach(transport)

    def attach(self, transport: MessageTransport) -> None:
        self.transports.append(transport)
        transport.on_message(self.receive)

    def detach(self, transport: MessageTransport) -> None:
        if transport in self.transports:
            self.transports.remove(transport)

    def set_handler(self, handler: Callable[[KnownMessage], Awaitable[None]]) -> None:
        self._handler = handler

    def _is_trusted(self, message: RecordOverrideSession) -> bool:
        return any(marker in message.source for marker in self.trusted_sources)

    async def receive(self, raw: Any) -> bool:
        """Returns True if the message was forwarded."""
        if isinstance(raw, dict) and raw.get("type") in OUTBOUND_TYPES:
            return False

        decoded = decode_message(raw)
        if isinstance(decoded, MalformedMessage):
            logger.warning("Dropping malformed message: %s", decoded.reason)
            return False

        if isinstance(decoded, RecordOverrideSession) and not self._is_trusted(decoded):
            logger.warning("Dropping override message from untrusted source %r", decoded.source)
            return False

        if self._handler is None:
            logger.debug("No handler registered; dropping %s", decoded.type)
            return False

        await self._handler(decoded)
        return True

    async def broadcast(self, payload: dict[str, Any]) -> None:
        for transport in list(self.transports):
            try:
                await transport.send(payload)
            except Exception as e:
                logger.warning("Failed to send %s over %r: %s", payload.get("type"), transport, e)
