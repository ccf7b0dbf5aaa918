from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from crmtrail.context import get_correlation_id
from crmtrail.core.events import DomainEvent, EventPublisher, event_bus

published_events: list[DomainEvent] = []

ENTITY_CREATED = "entity:created"
ENTITY_UPDATED = "entity:updated"
ENTITY_DELETED = "entity:deleted"
NOTIFICATION_NEW = "notification:new"
ACTIVITY_CREATED = "activity:created"
ACTIVITY_UPDATED = "activity:updated"
ACTIVITY_DELETED = "activity:deleted"


def owner_rooms(owner_id: int | None, team_id: str | None = None) -> list[str]:
    """Rooms allowed to observe a record owned by ``owner_id``.

    Mirrors the visibility table: the owner, every admin and, when the owner
    belongs to a team, that team's managers.
    """
    rooms = ["role_admin"]
    if owner_id is not None:
        rooms.append(f"user_{owner_id}")
    if team_id:
        rooms.append(f"team_{team_id}")
    return rooms


class BusPublisher:
    """Default publisher: stamps the envelope and hands it to the in-process bus."""

    def publish(self, event: DomainEvent) -> None:
        payload = dict(event.payload)
        payload.setdefault("event_id", str(uuid.uuid4()))
        payload.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())
        if payload.get("correlation_id") is None:
            payload["correlation_id"] = get_correlation_id()
        stamped = DomainEvent(name=event.name, payload=payload, rooms=list(event.rooms))
        published_events.append(stamped)
        event_bus.publish(stamped)


default_publisher: EventPublisher = BusPublisher()


def publish(name: str, payload: dict[str, Any], rooms: list[str], publisher: EventPublisher | None = None) -> None:
    (publisher or default_publisher).publish(DomainEvent(name=name, payload=payload, rooms=rooms))
