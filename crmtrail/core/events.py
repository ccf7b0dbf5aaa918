from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol


logger = logging.getLogger("crmtrail.events")


@dataclass
class DomainEvent:
    """Post-commit notification that something changed.

    ``rooms`` names the audiences allowed to receive the payload; transports
    must not deliver it anywhere else.
    """

    name: str
    payload: dict[str, Any]
    rooms: list[str] = field(default_factory=list)


EventHandler = Callable[[DomainEvent], None]


class EventPublisher(Protocol):
    def publish(self, event: DomainEvent) -> None: ...


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)
        self._wildcard: list[EventHandler] = []

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if event_name == "*":
            self._wildcard.append(handler)
            return
        self._subscribers[event_name].append(handler)

    def publish(self, event: DomainEvent) -> None:
        # Delivery is best-effort: a broken subscriber never fails the caller.
        for handler in [*self._subscribers.get(event.name, []), *self._wildcard]:
            try:
                handler(event)
            except Exception as exc:
                logger.exception("event_handler_failed", extra={"event_type": event.name, "error": str(exc)})


event_bus = InProcessEventBus()
