from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crmtrail import events
from crmtrail.audit.mutator import AuditedMutator, EntitySpec, MutationResult, owner_team_id
from crmtrail.audit.store import build_system_event, system_event_store
from crmtrail.core.auth import hash_password
from crmtrail.core.errors import ConflictError, ForbiddenError, NotFoundError, StorageError, ValidationError
from crmtrail.core.events import EventPublisher
from crmtrail.crm.models import Activity, Contact, Deal, Lead, Notification, Task, User
from crmtrail.crm.schemas import ActivityRead, ContactRead, DealRead, LeadRead, NotificationRead, TaskRead
from crmtrail.security.context import Actor, Role
from crmtrail.security.visibility import apply_visibility_filter, can_view


logger = logging.getLogger("crmtrail.crm")


LEAD_SPEC = EntitySpec(
    kind="lead",
    model=Lead,
    writable_fields=("name", "email", "phone", "stage"),
    required_fields=("name",),
    display=lambda lead: lead.name,
    serialize=lambda lead: LeadRead.model_validate(lead).model_dump(mode="json"),
    log_activity=True,
)

CONTACT_SPEC = EntitySpec(
    kind="contact",
    model=Contact,
    writable_fields=("name", "email", "phone", "company", "position", "notes"),
    required_fields=("name",),
    display=lambda contact: contact.name,
    serialize=lambda contact: ContactRead.model_validate(contact).model_dump(mode="json"),
    record_creation=True,
)

DEAL_SPEC = EntitySpec(
    kind="deal",
    model=Deal,
    writable_fields=("title", "value", "stage", "description", "contact_id"),
    required_fields=("title", "value"),
    display=lambda deal: deal.title,
    serialize=lambda deal: DealRead.model_validate(deal).model_dump(mode="json"),
    references=(("contact_id", "contact"),),
)

TASK_SPEC = EntitySpec(
    kind="task",
    model=Task,
    writable_fields=("title", "description", "priority", "status", "due_date", "contact_id", "deal_id"),
    required_fields=("title", "priority", "status"),
    display=lambda task: task.title,
    serialize=lambda task: TaskRead.model_validate(task).model_dump(mode="json"),
    references=(("contact_id", "contact"), ("deal_id", "deal")),
)

ENTITY_SPECS: dict[str, EntitySpec] = {spec.kind: spec for spec in (LEAD_SPEC, CONTACT_SPEC, DEAL_SPEC, TASK_SPEC)}


def _normalize_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    # Pydantic hands EmailStr through as str already; blank strings clear optional fields.
    return {key: (None if isinstance(value, str) and value == "" else value) for key, value in payload.items()}


class EntityService:
    """List/get/create/update/delete for one owned entity kind."""

    def __init__(self, spec: EntitySpec, publisher: EventPublisher | None = None) -> None:
        self.spec = spec
        self.mutator = AuditedMutator(spec, publisher=publisher)

    def list(self, session: Session, actor: Actor, filters: Mapping[str, Any] | None = None) -> list[Any]:
        model = self.spec.model
        stmt: Select[Any] = apply_visibility_filter(select(model), actor, model.owner_id)
        for column_name, value in (filters or {}).items():
            if value is not None:
                stmt = stmt.where(getattr(model, column_name) == value)
        return list(session.scalars(stmt.order_by(model.created_at.desc(), model.id.desc())).all())

    def get(self, session: Session, actor: Actor, entity_id: int) -> Any:
        return self.mutator.load_visible(session, actor, entity_id)

    def create(self, session: Session, actor: Actor, data: Mapping[str, Any]) -> Any:
        values = _normalize_payload(data)
        self._check_references(session, actor, values)
        return self.mutator.create(session, actor, values)

    def update(self, session: Session, actor: Actor, entity_id: int, payload: Mapping[str, Any]) -> MutationResult:
        values = _normalize_payload(payload)
        self.get(session, actor, entity_id)
        self._check_references(session, actor, values)
        return self.mutator.update(session, actor, entity_id, values)

    def delete(self, session: Session, actor: Actor, entity_id: int) -> int:
        return self.mutator.delete(session, actor, entity_id)

    def serialize(self, entity: Any) -> dict[str, Any]:
        return self.spec.serialize(entity)

    def _check_references(self, session: Session, actor: Actor, values: Mapping[str, Any]) -> None:
        for field_name, kind in self.spec.references:
            if values.get(field_name) is not None:
                ENTITY_SERVICES[kind].get(session, actor, values[field_name])


lead_service = EntityService(LEAD_SPEC)
contact_service = EntityService(CONTACT_SPEC)
deal_service = EntityService(DEAL_SPEC)
task_service = EntityService(TASK_SPEC)

ENTITY_SERVICES: dict[str, EntityService] = {
    service.spec.kind: service for service in (lead_service, contact_service, deal_service, task_service)
}


class ActivityService:
    def list_feed(self, session: Session, actor: Actor, limit: int = 50) -> list[Activity]:
        stmt = apply_visibility_filter(select(Activity), actor, Activity.user_id)
        return list(session.scalars(stmt.order_by(Activity.created_at.desc(), Activity.id.desc()).limit(limit)).all())

    def list_for_contact(self, session: Session, actor: Actor, contact_id: int) -> list[Activity]:
        contact_service.get(session, actor, contact_id)
        return self._list(session, Activity.contact_id == contact_id)

    def list_for_lead(self, session: Session, actor: Actor, lead_id: int) -> list[Activity]:
        lead_service.get(session, actor, lead_id)
        return self._list(session, Activity.lead_id == lead_id)

    def list_for_user(self, session: Session, actor: Actor, user_id: int) -> list[Activity]:
        user_service.get_user(session, actor, user_id)
        return self._list(session, Activity.user_id == user_id)

    def create_note(
        self,
        session: Session,
        actor: Actor,
        content: str,
        activity_type: str = "Note",
        lead_id: int | None = None,
        contact_id: int | None = None,
    ) -> Activity:
        if not content.strip():
            raise ValidationError("content is required")
        if lead_id is None and contact_id is None:
            raise ValidationError("lead_id or contact_id is required")
        owner_id = self._parent_owner(session, actor, lead_id, contact_id, fallback=actor.id)

        activity = Activity(user_id=actor.id, type=activity_type, details=content, lead_id=lead_id, contact_id=contact_id)
        try:
            session.add(activity)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("failed to create activity", details={"error": str(exc)[:500]}) from exc
        session.refresh(activity)

        payload = ActivityRead.model_validate(activity).model_dump(mode="json")
        self._publish(session, actor, events.ACTIVITY_CREATED, payload, owner_id)
        return activity

    def update_details(self, session: Session, actor: Actor, activity_id: int, details: str) -> Activity:
        if not details.strip():
            raise ValidationError("details must not be empty", details={"field": "details"})
        activity, owner_id = self._editable(session, actor, activity_id)
        activity.details = details
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("failed to update activity", details={"error": str(exc)[:500]}) from exc
        session.refresh(activity)

        payload = ActivityRead.model_validate(activity).model_dump(mode="json")
        self._publish(session, actor, events.ACTIVITY_UPDATED, payload, owner_id)
        return activity

    def delete(self, session: Session, actor: Actor, activity_id: int) -> int:
        activity, owner_id = self._editable(session, actor, activity_id)
        try:
            session.delete(activity)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("failed to delete activity", details={"error": str(exc)[:500]}) from exc

        self._publish(session, actor, events.ACTIVITY_DELETED, {"id": activity_id}, owner_id)
        return activity_id

    def _list(self, session: Session, condition: Any) -> list[Activity]:
        stmt = select(Activity).where(condition)
        return list(session.scalars(stmt.order_by(Activity.created_at.desc(), Activity.id.desc())).all())

    def _editable(self, session: Session, actor: Actor, activity_id: int) -> tuple[Activity, int]:
        """Only the author or an admin may change an activity, and only while its lead or contact is visible."""
        activity = session.get(Activity, activity_id)
        if activity is None:
            raise NotFoundError("activity not found", details={"id": activity_id})
        if not actor.is_admin and activity.user_id != actor.id:
            raise ForbiddenError("only the author may change this activity", details={"id": activity_id})
        # Activities outlive their lead or contact; only a surviving parent gates access.
        lead_id = activity.lead_id if session.get(Lead, activity.lead_id or 0) is not None else None
        contact_id = activity.contact_id if session.get(Contact, activity.contact_id or 0) is not None else None
        owner_id = self._parent_owner(session, actor, lead_id, contact_id, fallback=activity.user_id)
        return activity, owner_id

    def _parent_owner(
        self, session: Session, actor: Actor, lead_id: int | None, contact_id: int | None, *, fallback: int
    ) -> int:
        # The contact wins when both are set; a detached activity falls back to its author.
        owner_id = fallback
        if lead_id is not None:
            owner_id = lead_service.get(session, actor, lead_id).owner_id
        if contact_id is not None:
            owner_id = contact_service.get(session, actor, contact_id).owner_id
        return owner_id

    def _publish(self, session: Session, actor: Actor, event_name: str, payload: dict[str, Any], owner_id: int) -> None:
        rooms = sorted(set(events.owner_rooms(owner_id, owner_team_id(session, owner_id)) + [f"user_{actor.id}"]))
        events.publish(event_name, payload, rooms)


class NotificationService:
    """Notifications belong to one recipient; only that recipient may change them."""

    def list_for_user(self, session: Session, actor: Actor) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_id == actor.id)
        return list(session.scalars(stmt.order_by(Notification.created_at.desc(), Notification.id.desc())).all())

    def create(self, session: Session, user_id: int, notification_type: str, message: str) -> Notification:
        if session.get(User, user_id) is None:
            raise NotFoundError("recipient not found", details={"user_id": user_id})
        notification = Notification(user_id=user_id, type=notification_type, message=message)
        try:
            session.add(notification)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("failed to create notification", details={"error": str(exc)[:500]}) from exc
        session.refresh(notification)
        events.publish(
            events.NOTIFICATION_NEW,
            NotificationRead.model_validate(notification).model_dump(mode="json"),
            [f"user_{user_id}"],
        )
        return notification

    def mark_read(self, session: Session, actor: Actor, notification_id: int) -> Notification:
        notification = self._own(session, actor, notification_id)
        notification.read = True
        self._commit(session, "failed to mark notification read")
        session.refresh(notification)
        return notification

    def mark_all_read(self, session: Session, actor: Actor) -> int:
        result = session.execute(
            update(Notification)
            .where(Notification.user_id == actor.id, Notification.read.is_(False))
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        self._commit(session, "failed to mark notifications read")
        return int(result.rowcount or 0)

    def delete(self, session: Session, actor: Actor, notification_id: int) -> None:
        notification = self._own(session, actor, notification_id)
        session.delete(notification)
        self._commit(session, "failed to delete notification")

    def _own(self, session: Session, actor: Actor, notification_id: int) -> Notification:
        notification = session.get(Notification, notification_id)
        if notification is None:
            raise NotFoundError("notification not found", details={"id": notification_id})
        if notification.user_id != actor.id:
            raise ForbiddenError("notification belongs to another user")
        return notification

    def _commit(self, session: Session, message: str) -> None:
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError(message, details={"error": str(exc)[:500]}) from exc


class UserService:
    def list_users(self, session: Session, actor: Actor) -> list[User]:
        if not actor.is_admin:
            raise ForbiddenError("admin only")
        return list(session.scalars(select(User).order_by(User.id.asc())).all())

    def get_user(self, session: Session, actor: Actor, user_id: int) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found", details={"id": user_id})
        if not actor.is_admin and actor.id != user_id and not can_view(actor, user.id, user.team_id):
            raise ForbiddenError("not allowed to view this user")
        return user

    def update_user(self, session: Session, actor: Actor, user_id: int, payload: Mapping[str, Any]) -> User:
        if not actor.is_admin and actor.id != user_id:
            raise ForbiddenError("only admins may update other users")
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found", details={"id": user_id})
        if not actor.is_admin and ({"role", "team_id"} & set(payload)):
            raise ForbiddenError("only admins may change roles or teams")

        for field_name in ("name", "email"):
            if field_name in payload and not (payload[field_name] or "").strip():
                raise ValidationError(f"{field_name} must not be empty", details={"field": field_name})
        email = payload["email"].strip().lower() if "email" in payload else None
        if email is not None and email != user.email and self._email_taken(session, email, user.id):
            raise ConflictError("email already in use", details={"email": email})

        previous_role = user.role
        if "name" in payload:
            user.name = payload["name"]
        if email is not None:
            user.email = email
        if "team_id" in payload:
            user.team_id = payload["team_id"] or None
        if payload.get("password"):
            user.password_hash = hash_password(payload["password"])
        if payload.get("role") is not None:
            user.role = Role.parse(payload["role"]).value

        try:
            if user.role != previous_role:
                system_event_store.append(
                    session,
                    build_system_event(
                        actor_id=actor.id,
                        action="ROLE_CHANGE",
                        entity_type="user",
                        entity_id=user.id,
                        description=f"Role of {user.email} changed from {previous_role} to {user.role}",
                    ),
                )
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            # A concurrent writer can still claim the address between the check and the commit.
            if email is not None and self._email_taken(session, email, user_id):
                raise ConflictError("email already in use", details={"email": email}) from exc
            raise StorageError("failed to update user", details={"error": str(exc)[:500]}) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("failed to update user", details={"error": str(exc)[:500]}) from exc
        session.refresh(user)
        return user

    def _email_taken(self, session: Session, email: str, user_id: int) -> bool:
        stmt = select(User.id).where(func.lower(User.email) == email, User.id != user_id).limit(1)
        return session.scalar(stmt) is not None

    def delete_user(self, session: Session, actor: Actor, user_id: int) -> None:
        if not actor.is_admin:
            raise ForbiddenError("admin only")
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found", details={"id": user_id})
        try:
            system_event_store.append(
                session,
                build_system_event(
                    actor_id=actor.id,
                    action="DELETE",
                    entity_type="user",
                    entity_id=user.id,
                    description=f"Deleted user {user.email}",
                ),
            )
            session.delete(user)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("failed to delete user", details={"error": str(exc)[:500]}) from exc

    def leads_of(self, session: Session, actor: Actor, user_id: int) -> list[Lead]:
        user = self.get_user(session, actor, user_id)
        return [lead for lead in lead_service.list(session, actor) if lead.owner_id == user.id]


activity_service = ActivityService()
notification_service = NotificationService()
user_service = UserService()
