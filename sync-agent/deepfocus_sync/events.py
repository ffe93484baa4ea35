from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeepFocusChanged:
    is_active: bool
    from_extension: bool = False


@dataclass(frozen=True)
class ExtensionFocusHandled:
    extension_id: str
    is_active: bool
    blocked_sites: tuple[str, ...] = ()


@dataclass(frozen=True)
class OverrideSessionRecorded:
    domain: str
    duration: float
    user_id: str
    timestamp: float


@dataclass(frozen=True)
class FocusStateError:
    error: str
    operation: str
    timestamp: float


Event = DeepFocusChanged | ExtensionFocusHandled | OverrideSessionRecorded | FocusStateError

E = TypeVar("E")


@dataclass
class EventBus:
    """
    Typed publish/subscribe for state notifications.

    Handlers are keyed by the exact event class. A failing handler is logged and
    skipped so one broken listener cannot stall the others.
    """

    _handlers: dict[type, list[Callable[[object], None]]] = field(default_factory=lambda: defaultdict(list))

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        self._handlers[event_type].append(handler)  # type: ignore[arg-type]

        def unsubscribe() -> None:
            try:
                self._handlers[event_type].remove(handler)  # type: ignore[arg-type]
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event: object) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, type(event).__name__)
