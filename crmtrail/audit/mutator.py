from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crmtrail import events
from crmtrail.audit.diff import FieldChange, compute_diff, snapshot
from crmtrail.audit.store import (
    HistoryStore,
    SystemEventStore,
    build_change_records,
    build_system_event,
    history_store,
    system_event_store,
)
from crmtrail.core.errors import ForbiddenError, NotFoundError, StorageError, ValidationError
from crmtrail.core.events import EventPublisher
from crmtrail.crm.models import Activity, User
from crmtrail.metrics import observe_audited_mutation, observe_visibility_denied
from crmtrail.otel import get_tracer
from crmtrail.security.context import Actor, Role
from crmtrail.security.visibility import can_view


logger = logging.getLogger("crmtrail.audit")
tracer = get_tracer("crmtrail.audit")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EntitySpec:
    """Describes how one entity kind participates in audited mutations."""

    kind: str
    model: type
    writable_fields: tuple[str, ...]
    required_fields: tuple[str, ...] = ()
    display: Callable[[Any], str] = lambda entity: str(entity.id)
    serialize: Callable[[Any], dict[str, Any]] = lambda entity: {"id": entity.id}
    log_activity: bool = False
    record_creation: bool = False
    # (field, entity kind) pairs whose target must exist and be visible to the actor.
    references: tuple[tuple[str, str], ...] = ()


@dataclass
class MutationResult:
    entity: Any
    changes: list[FieldChange] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def _is_nullable(model: type, field_name: str) -> bool:
    column = model.__table__.columns.get(field_name)  # type: ignore[attr-defined]
    return column is None or bool(column.nullable)


def owner_team_id(session: Session, owner_id: int | None) -> str | None:
    if owner_id is None:
        return None
    owner = session.get(User, owner_id)
    return owner.team_id if owner is not None else None


class AuditedMutator:
    """Create/update/delete for one entity kind with history written in the same transaction.

    Events are published only after the transaction commits. A mutation either
    commits the entity together with its history rows or leaves nothing behind.
    """

    def __init__(
        self,
        spec: EntitySpec,
        *,
        history: HistoryStore = history_store,
        system_events: SystemEventStore = system_event_store,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.spec = spec
        self.history = history
        self.system_events = system_events
        self.publisher = publisher

    def load_visible(self, session: Session, actor: Actor, entity_id: int) -> Any:
        entity = session.get(self.spec.model, entity_id)
        if entity is None:
            raise NotFoundError(f"{self.spec.kind} not found", details={"id": entity_id})
        team = owner_team_id(session, entity.owner_id) if actor.role is Role.MANAGER else None
        if not can_view(actor, entity.owner_id, team):
            observe_visibility_denied(self.spec.kind, actor.role.value)
            raise ForbiddenError(f"not allowed to access this {self.spec.kind}", details={"id": entity_id})
        return entity

    def create(self, session: Session, actor: Actor, data: Mapping[str, Any]) -> Any:
        values = self._validate(data, creating=True)
        entity = self.spec.model(**values, owner_id=actor.id)

        with tracer.start_as_current_span("crmtrail.audited_mutation") as span:
            span.set_attribute("entity_kind", self.spec.kind)
            span.set_attribute("action", "create")
            try:
                session.add(entity)
                session.flush()
                display = self.spec.display(entity)
                self.system_events.append(
                    session,
                    build_system_event(
                        actor_id=actor.id,
                        action="CREATE",
                        entity_type=self.spec.kind,
                        entity_id=entity.id,
                        description=f"Created {self.spec.kind}: {display}",
                    ),
                )
                if self.spec.record_creation:
                    created_by = actor.name or f"user {actor.id}"
                    self.history.append(
                        session,
                        build_change_records(
                            [FieldChange("Created", None, f"{self.spec.kind.capitalize()} created by {created_by}")],
                            entity_kind=self.spec.kind,
                            entity_id=entity.id,
                            changed_by=actor.id,
                        ),
                    )
                activity = self._add_activity(session, actor, entity, "CREATE", f"Created new {self.spec.kind}: {display}")
                session.commit()
            except (SQLAlchemyError, StorageError) as exc:
                self._abort(session, "create", None, exc)

        session.refresh(entity)
        self._after_commit(session, events.ENTITY_CREATED, entity, activity)
        return entity

    def update(self, session: Session, actor: Actor, entity_id: int, payload: Mapping[str, Any]) -> MutationResult:
        entity = self.load_visible(session, actor, entity_id)
        values = self._validate(payload, creating=False)
        changes = compute_diff(snapshot(entity, values.keys()), values)
        if not changes:
            observe_audited_mutation(self.spec.kind, "update", "unchanged")
            return MutationResult(entity=entity)

        with tracer.start_as_current_span("crmtrail.audited_mutation") as span:
            span.set_attribute("entity_kind", self.spec.kind)
            span.set_attribute("action", "update")
            span.set_attribute("changed_fields", len(changes))
            try:
                for change in changes:
                    setattr(entity, change.field, values[change.field])
                entity.updated_at = utcnow()
                self.history.append(
                    session,
                    build_change_records(changes, entity_kind=self.spec.kind, entity_id=entity.id, changed_by=actor.id),
                )
                activity = self._add_activity(
                    session, actor, entity, "UPDATE", f"Updated {self.spec.kind}: {self.spec.display(entity)}"
                )
                session.commit()
            except (SQLAlchemyError, StorageError) as exc:
                self._abort(session, "update", entity_id, exc)

        session.refresh(entity)
        logger.info(
            "audited_update",
            extra={
                "entity_kind": self.spec.kind,
                "entity_id": entity.id,
                "changed_fields": [change.field for change in changes],
            },
        )
        self._after_commit(session, events.ENTITY_UPDATED, entity, activity)
        return MutationResult(entity=entity, changes=changes)

    def delete(self, session: Session, actor: Actor, entity_id: int) -> int:
        entity = self.load_visible(session, actor, entity_id)
        owner_id = entity.owner_id
        team = owner_team_id(session, owner_id)
        display = self.spec.display(entity)

        with tracer.start_as_current_span("crmtrail.audited_mutation") as span:
            span.set_attribute("entity_kind", self.spec.kind)
            span.set_attribute("action", "delete")
            try:
                # History outlives the entity; the terminal row marks the deletion.
                self.history.append(
                    session,
                    build_change_records(
                        [FieldChange("Deleted", display, None)],
                        entity_kind=self.spec.kind,
                        entity_id=entity_id,
                        changed_by=actor.id,
                    ),
                )
                self.system_events.append(
                    session,
                    build_system_event(
                        actor_id=actor.id,
                        action="DELETE",
                        entity_type=self.spec.kind,
                        entity_id=entity_id,
                        description=f"Deleted {self.spec.kind}: {display}",
                    ),
                )
                activity = self._add_activity(session, actor, entity, "DELETE", f"Deleted {self.spec.kind}: {display}")
                session.delete(entity)
                session.commit()
            except (SQLAlchemyError, StorageError) as exc:
                self._abort(session, "delete", entity_id, exc)

        observe_audited_mutation(self.spec.kind, "delete", "committed")
        rooms = events.owner_rooms(owner_id, team)
        events.publish(events.ENTITY_DELETED, {"kind": self.spec.kind, "id": entity_id}, rooms, self.publisher)
        if activity is not None:
            self._publish_activity(activity, rooms)
        return entity_id

    def _validate(self, data: Mapping[str, Any], *, creating: bool) -> dict[str, Any]:
        unknown = [name for name in data if name not in self.spec.writable_fields]
        if unknown:
            raise ValidationError(f"fields not writable on {self.spec.kind}", details={"fields": unknown})
        values = dict(data)
        if creating:
            for name in self.spec.required_fields:
                if name not in values:
                    raise ValidationError(f"{name} is required", details={"field": name})
        for name, value in values.items():
            blank = value is None or (isinstance(value, str) and not value.strip())
            if blank and (name in self.spec.required_fields or not _is_nullable(self.spec.model, name)):
                raise ValidationError(f"{name} must not be empty", details={"field": name})
        return values

    def _add_activity(self, session: Session, actor: Actor, entity: Any, activity_type: str, details: str) -> Activity | None:
        if not self.spec.log_activity:
            return None
        activity = Activity(user_id=actor.id, type=activity_type, details=details, created_at=utcnow())
        setattr(activity, f"{self.spec.kind}_id", entity.id)
        session.add(activity)
        session.flush()
        return activity

    def _abort(self, session: Session, action: str, entity_id: int | None, exc: Exception) -> None:
        session.rollback()
        observe_audited_mutation(self.spec.kind, action, "aborted")
        logger.error(
            "audited_mutation_aborted",
            extra={"entity_kind": self.spec.kind, "entity_id": entity_id, "action": action, "error": str(exc)},
        )
        if isinstance(exc, StorageError):
            raise exc
        raise StorageError(f"failed to {action} {self.spec.kind}", details={"error": str(exc)[:500]}) from exc

    def _after_commit(self, session: Session, event_name: str, entity: Any, activity: Activity | None) -> None:
        action = "create" if event_name == events.ENTITY_CREATED else "update"
        observe_audited_mutation(self.spec.kind, action, "committed")
        rooms = events.owner_rooms(entity.owner_id, owner_team_id(session, entity.owner_id))
        events.publish(event_name, {"kind": self.spec.kind, "entity": self.spec.serialize(entity)}, rooms, self.publisher)
        if activity is not None:
            self._publish_activity(activity, rooms)

    def _publish_activity(self, activity: Activity, rooms: list[str]) -> None:
        events.publish(
            events.ACTIVITY_CREATED,
            {
                "id": activity.id,
                "type": activity.type,
                "details": activity.details,
                "user_id": activity.user_id,
                "lead_id": activity.lead_id,
                "contact_id": activity.contact_id,
            },
            rooms,
            self.publisher,
        )
