from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crmtrail.audit.store import (
    HistoryQuery,
    build_system_event,
    history_model_for,
    history_store,
    system_event_store,
)
from crmtrail.core.auth import get_current_actor, require_admin
from crmtrail.core.database import get_db
from crmtrail.core.errors import NotFoundError, StorageError
from crmtrail.crm.schemas import ChangeRecordRead
from crmtrail.crm.service import ENTITY_SPECS, EntityService
from crmtrail.history.schemas import CountResponse, IdsRequest, SortOrder, SystemEventCreate, SystemEventPage, SystemEventRead
from crmtrail.models.audit import SystemEvent
from crmtrail.security.context import Actor

router = APIRouter(prefix="/api/v1/history", tags=["history"])
system_router = APIRouter(prefix="/api/v1/system-history", tags=["history.system"])


@router.get("/{kind}/{entity_id}", response_model=list[ChangeRecordRead])
def get_entity_history(
    kind: str,
    entity_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[Any]:
    history_model_for(kind)
    spec = ENTITY_SPECS[kind]
    if db.get(spec.model, entity_id) is not None:
        EntityService(spec).get(db, actor, entity_id)
    elif not actor.is_admin:
        # Only admins may read the history of an entity that no longer exists.
        raise NotFoundError(f"{kind} not found", details={"id": entity_id})
    return history_store.list_by_entity(db, kind, entity_id)


@router.get("/{kind}", response_model=list[ChangeRecordRead])
def list_kind_history(
    kind: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[Any]:
    require_admin(actor)
    return history_store.list_recent(db, kind, limit=limit)


@router.delete("/{kind}", response_model=CountResponse)
def delete_kind_history(
    kind: str,
    dto: IdsRequest | None = None,
    purge_all: bool = Query(default=False, alias="all"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> CountResponse:
    require_admin(actor)
    if purge_all:
        return CountResponse(count=history_store.delete_all(db, kind))
    history_model_for(kind)
    return CountResponse(count=history_store.delete_by_ids(db, kind, dto.ids if dto is not None else []))


@system_router.get("", response_model=SystemEventPage)
def list_system_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    action: str | None = Query(default=None),
    entity_type: str | None = Query(default=None, alias="entityType"),
    actor_id: int | None = Query(default=None, alias="actorId"),
    search: str | None = Query(default=None),
    sort: SortOrder = Query(default="desc"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> SystemEventPage:
    require_admin(actor)
    result = system_event_store.list_all(
        db,
        HistoryQuery(
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            search=search,
            page=page,
            page_size=limit,
            sort=sort,
        ),
    )
    return SystemEventPage(
        records=[SystemEventRead.model_validate(record) for record in result.records],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
    )


@system_router.post("", response_model=SystemEventRead, status_code=status.HTTP_201_CREATED)
def create_system_event(
    dto: SystemEventCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> SystemEvent:
    require_admin(actor)
    event = build_system_event(
        actor_id=actor.id,
        action=dto.action,
        entity_type=dto.entity_type,
        entity_id=dto.entity_id,
        description=dto.description,
    )
    system_event_store.append(db, event)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError("failed to record system event", details={"error": str(exc)[:500]}) from exc
    db.refresh(event)
    return event


@system_router.delete("/cleanup", response_model=CountResponse)
def cleanup_system_history(
    days: int = Query(default=90, ge=0),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> CountResponse:
    require_admin(actor)
    return CountResponse(count=system_event_store.delete_older_than(db, days))


@system_router.delete("", response_model=CountResponse)
def delete_system_history(
    dto: IdsRequest | None = None,
    purge_all: bool = Query(default=False, alias="all"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> CountResponse:
    require_admin(actor)
    if purge_all:
        return CountResponse(count=system_event_store.delete_all(db))
    return CountResponse(count=system_event_store.delete_by_ids(db, dto.ids if dto is not None else []))
