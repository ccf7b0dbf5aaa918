from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

from sqlalchemy import Select, delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crmtrail.audit.diff import FieldChange
from crmtrail.context import get_client_info
from crmtrail.core.errors import StorageError, ValidationError
from crmtrail.metrics import observe_change_records, observe_system_events_purged
from crmtrail.models.audit import HISTORY_MODELS, ChangeRecordMixin, SystemEvent


logger = logging.getLogger("crmtrail.audit.store")

SortDirection = Literal["asc", "desc"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def history_model_for(entity_kind: str) -> type[ChangeRecordMixin]:
    model = HISTORY_MODELS.get(entity_kind)
    if model is None:
        raise ValidationError(f"unknown entity kind: {entity_kind}", details={"entity_kind": entity_kind})
    return model


def build_change_records(
    changes: Sequence[FieldChange],
    *,
    entity_kind: str,
    entity_id: int,
    changed_by: int,
    timestamp: datetime | None = None,
) -> list[ChangeRecordMixin]:
    """Turn a diff into unsaved history rows, one per field, in diff order."""
    model = history_model_for(entity_kind)
    stamp = timestamp or utcnow()
    return [
        model(
            entity_id=entity_id,
            changed_by=changed_by,
            field=change.field,
            old_value=change.old_value,
            new_value=change.new_value,
            timestamp=stamp,
        )
        for change in changes
    ]


class HistoryStore:
    """Append-only ledger of field-level change records, one table per entity kind.

    Writes happen inside the caller's transaction; the store never commits.
    """

    def append(self, session: Session, records: Sequence[ChangeRecordMixin]) -> None:
        if not records:
            return
        try:
            session.add_all(records)
            session.flush()
        except SQLAlchemyError as exc:
            raise StorageError("failed to append change records", details={"error": str(exc)[:500]}) from exc
        for kind in {record.entity_kind for record in records}:
            observe_change_records(kind, sum(1 for record in records if record.entity_kind == kind))

    def list_by_entity(self, session: Session, entity_kind: str, entity_id: int) -> list[ChangeRecordMixin]:
        model = history_model_for(entity_kind)
        stmt = (
            select(model)
            .where(model.entity_id == entity_id)
            .order_by(model.timestamp.desc(), model.id.desc())
        )
        return self._scalars(session, stmt)

    def list_recent(
        self,
        session: Session,
        entity_kind: str,
        *,
        entity_ids: Sequence[int] | None = None,
        limit: int = 50,
    ) -> list[ChangeRecordMixin]:
        model = history_model_for(entity_kind)
        stmt = select(model)
        if entity_ids is not None:
            if not entity_ids:
                return []
            stmt = stmt.where(model.entity_id.in_(list(entity_ids)))
        stmt = stmt.order_by(model.timestamp.desc(), model.id.desc()).limit(limit)
        return self._scalars(session, stmt)

    def count(self, session: Session, entity_kind: str, *, entity_ids: Sequence[int] | None = None) -> int:
        model = history_model_for(entity_kind)
        stmt = select(func.count()).select_from(model)
        if entity_ids is not None:
            if not entity_ids:
                return 0
            stmt = stmt.where(model.entity_id.in_(list(entity_ids)))
        try:
            return int(session.scalar(stmt) or 0)
        except SQLAlchemyError as exc:
            raise StorageError("failed to count change records", details={"error": str(exc)[:500]}) from exc

    def delete_by_ids(self, session: Session, entity_kind: str, ids: Sequence[int]) -> int:
        if not ids:
            return 0
        model = history_model_for(entity_kind)
        return self._delete(session, delete(model).where(model.id.in_(list(ids))))

    def delete_all(self, session: Session, entity_kind: str) -> int:
        return self._delete(session, delete(history_model_for(entity_kind)))

    def _scalars(self, session: Session, stmt: Select) -> list:
        try:
            return list(session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise StorageError("failed to read change records", details={"error": str(exc)[:500]}) from exc

    def _delete(self, session: Session, stmt) -> int:  # type: ignore[no-untyped-def]
        try:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("failed to delete change records", details={"error": str(exc)[:500]}) from exc
        return int(result.rowcount or 0)


@dataclass
class HistoryQuery:
    actor_id: int | None = None
    action: str | None = None
    entity_type: str | None = None
    search: str | None = None
    page: int = 1
    page_size: int = 20
    sort: SortDirection = "desc"


@dataclass
class HistoryPage:
    records: list[SystemEvent] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20
    total_pages: int = 0


class SystemEventStore:
    """Admin-level action log. Retention and purge are admin-only by route policy."""

    def append(self, session: Session, event: SystemEvent) -> SystemEvent:
        try:
            session.add(event)
            session.flush()
        except SQLAlchemyError as exc:
            raise StorageError("failed to append system event", details={"error": str(exc)[:500]}) from exc
        return event

    def list_all(self, session: Session, query: HistoryQuery) -> HistoryPage:
        if query.page < 1 or query.page_size < 1:
            raise ValidationError("page and page_size must be positive")

        stmt = select(SystemEvent)
        if query.actor_id is not None:
            stmt = stmt.where(SystemEvent.actor_id == query.actor_id)
        if query.action:
            stmt = stmt.where(SystemEvent.action == query.action)
        if query.entity_type:
            stmt = stmt.where(SystemEvent.entity_type == query.entity_type)
        if query.search:
            pattern = f"%{query.search}%"
            stmt = stmt.where(
                or_(
                    SystemEvent.description.ilike(pattern),
                    SystemEvent.action.ilike(pattern),
                    SystemEvent.entity_type.ilike(pattern),
                )
            )

        if query.sort == "asc":
            ordering = (SystemEvent.timestamp.asc(), SystemEvent.id.asc())
        else:
            ordering = (SystemEvent.timestamp.desc(), SystemEvent.id.desc())

        try:
            total = int(session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
            records = list(
                session.scalars(
                    stmt.order_by(*ordering).offset((query.page - 1) * query.page_size).limit(query.page_size)
                ).all()
            )
        except SQLAlchemyError as exc:
            raise StorageError("failed to query system events", details={"error": str(exc)[:500]}) from exc

        return HistoryPage(
            records=records,
            total=total,
            page=query.page,
            page_size=query.page_size,
            total_pages=math.ceil(total / query.page_size) if total else 0,
        )

    def delete_by_ids(self, session: Session, ids: Sequence[int]) -> int:
        if not ids:
            return 0
        count = self._delete(session, delete(SystemEvent).where(SystemEvent.id.in_(list(ids))))
        observe_system_events_purged("ids", count)
        return count

    def delete_all(self, session: Session) -> int:
        count = self._delete(session, delete(SystemEvent))
        observe_system_events_purged("all", count)
        return count

    def delete_older_than(self, session: Session, retention_days: int, *, now: datetime | None = None) -> int:
        if retention_days < 0:
            raise ValidationError("retention_days must not be negative")
        cutoff = (now or utcnow()) - timedelta(days=retention_days)
        count = self._delete(session, delete(SystemEvent).where(SystemEvent.timestamp < cutoff))
        observe_system_events_purged("retention", count)
        logger.info("system_events_purged", extra={"count": count, "action": "retention"})
        return count

    def _delete(self, session: Session, stmt) -> int:  # type: ignore[no-untyped-def]
        try:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("failed to delete system events", details={"error": str(exc)[:500]}) from exc
        return int(result.rowcount or 0)


history_store = HistoryStore()
system_event_store = SystemEventStore()


def build_system_event(
    *,
    actor_id: int | None,
    action: str,
    entity_type: str,
    entity_id: int | str | None = None,
    description: str = "",
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SystemEvent:
    """Unsaved SystemEvent; client address and agent default to the current request's."""
    request_ip, request_agent = get_client_info()
    return SystemEvent(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        description=description,
        ip_address=ip_address if ip_address is not None else request_ip,
        user_agent=(user_agent if user_agent is not None else request_agent or "")[:512] or None,
        timestamp=utcnow(),
    )
