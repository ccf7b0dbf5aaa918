from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from crmtrail.audit.mutator import MutationResult
from crmtrail.core.auth import get_current_actor
from crmtrail.core.database import get_db
from crmtrail.crm.models import Activity, Notification, User
from crmtrail.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivityUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealRead,
    DealStageUpdate,
    DealUpdate,
    DeleteResponse,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    MutationResponse,
    NotificationCreate,
    NotificationList,
    NotificationRead,
    TaskCreate,
    TaskRead,
    TaskStatusUpdate,
    TaskUpdate,
    UserRead,
    UserUpdate,
)
from crmtrail.crm.service import (
    EntityService,
    activity_service,
    contact_service,
    deal_service,
    lead_service,
    notification_service,
    task_service,
    user_service,
)
from crmtrail.security.context import Actor

users_router = APIRouter(prefix="/api/v1/users", tags=["crm.users"])
leads_router = APIRouter(prefix="/api/v1/leads", tags=["crm.leads"])
contacts_router = APIRouter(prefix="/api/v1/contacts", tags=["crm.contacts"])
deals_router = APIRouter(prefix="/api/v1/deals", tags=["crm.deals"])
tasks_router = APIRouter(prefix="/api/v1/tasks", tags=["crm.tasks"])
activities_router = APIRouter(prefix="/api/v1/activities", tags=["crm.activities"])
notifications_router = APIRouter(prefix="/api/v1/notifications", tags=["crm.notifications"])


def _mutation_response(service: EntityService, result: MutationResult) -> MutationResponse:
    return MutationResponse(
        changed=result.changed,
        changed_fields=[change.field for change in result.changes],
        entity=service.serialize(result.entity),
    )


def _deleted(service: EntityService, entity_id: int) -> DeleteResponse:
    return DeleteResponse(id=entity_id, message=f"{service.spec.kind.capitalize()} deleted")


# users


@users_router.get("", response_model=list[UserRead])
def list_users(db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> list[User]:
    return user_service.list_users(db, actor)


@users_router.get("/{user_id}", response_model=UserRead)
def get_user(user_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> User:
    return user_service.get_user(db, actor, user_id)


@users_router.patch("/{user_id}", response_model=UserRead)
def patch_user(
    user_id: int,
    dto: UserUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> User:
    return user_service.update_user(db, actor, user_id, dto.model_dump(exclude_unset=True))


@users_router.delete("/{user_id}", response_model=DeleteResponse)
def delete_user(user_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> DeleteResponse:
    user_service.delete_user(db, actor, user_id)
    return DeleteResponse(id=user_id, message="User deleted")


@users_router.get("/{user_id}/leads", response_model=list[LeadRead])
def list_user_leads(user_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> list[Any]:
    return user_service.leads_of(db, actor, user_id)


@users_router.get("/{user_id}/activities", response_model=list[ActivityRead])
def list_user_activities(
    user_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[Activity]:
    return activity_service.list_for_user(db, actor, user_id)


# leads


@leads_router.get("", response_model=list[LeadRead])
def list_leads(
    stage: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[Any]:
    return lead_service.list(db, actor, {"stage": stage})


@leads_router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(dto: LeadCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> Any:
    return lead_service.create(db, actor, dto.model_dump())


@leads_router.get("/{lead_id}", response_model=LeadRead)
def get_lead(lead_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> Any:
    return lead_service.get(db, actor, lead_id)


@leads_router.patch("/{lead_id}", response_model=MutationResponse)
def patch_lead(
    lead_id: int,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> MutationResponse:
    result = lead_service.update(db, actor, lead_id, dto.model_dump(exclude_unset=True))
    return _mutation_response(lead_service, result)


@leads_router.delete("/{lead_id}", response_model=DeleteResponse)
def delete_lead(lead_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> DeleteResponse:
    return _deleted(lead_service, lead_service.delete(db, actor, lead_id))


# contacts


@contacts_router.get("", response_model=list[ContactRead])
def list_contacts(db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> list[Any]:
    return contact_service.list(db, actor)


@contacts_router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(dto: ContactCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> Any:
    return contact_service.create(db, actor, dto.model_dump())


@contacts_router.get("/{contact_id}", response_model=ContactRead)
def get_contact(contact_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> Any:
    return contact_service.get(db, actor, contact_id)


@contacts_router.patch("/{contact_id}", response_model=MutationResponse)
def patch_contact(
    contact_id: int,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> MutationResponse:
    result = contact_service.update(db, actor, contact_id, dto.model_dump(exclude_unset=True))
    return _mutation_response(contact_service, result)


@contacts_router.delete("/{contact_id}", response_model=DeleteResponse)
def delete_contact(
    contact_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DeleteResponse:
    return _deleted(contact_service, contact_service.delete(db, actor, contact_id))


@contacts_router.get("/{contact_id}/activities", response_model=list[ActivityRead])
def list_contact_activities(
    contact_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[Activity]:
    return activity_service.list_for_contact(db, actor, contact_id)


# deals


@deals_router.get("", response_model=list[DealRead])
def list_deals(
    stage: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[Any]:
    return deal_service.list(db, actor, {"stage": stage})


@deals_router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(dto: DealCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> Any:
    return deal_service.create(db, actor, dto.model_dump())


@deals_router.get("/{deal_id}", response_model=DealRead)
def get_deal(deal_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> Any:
    return deal_service.get(db, actor, deal_id)


@deals_router.patch("/{deal_id}", response_model=MutationResponse)
def patch_deal(
    deal_id: int,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> MutationResponse:
    result = deal_service.update(db, actor, deal_id, dto.model_dump(exclude_unset=True))
    return _mutation_response(deal_service, result)


@deals_router.patch("/{deal_id}/stage", response_model=MutationResponse)
def change_deal_stage(
    deal_id: int,
    dto: DealStageUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> MutationResponse:
    result = deal_service.update(db, actor, deal_id, {"stage": dto.stage})
    return _mutation_response(deal_service, result)


@deals_router.delete("/{deal_id}", response_model=DeleteResponse)
def delete_deal(deal_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> DeleteResponse:
    return _deleted(deal_service, deal_service.delete(db, actor, deal_id))


# tasks


@tasks_router.get("", response_model=list[TaskRead])
def list_tasks(
    status_filter: str | None = Query(default=None, alias="status"),
    priority: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[Any]:
    return task_service.list(db, actor, {"status": status_filter, "priority": priority})


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(dto: TaskCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> Any:
    return task_service.create(db, actor, dto.model_dump())


@tasks_router.get("/{task_id}", response_model=TaskRead)
def get_task(task_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> Any:
    return task_service.get(db, actor, task_id)


@tasks_router.patch("/{task_id}", response_model=MutationResponse)
def patch_task(
    task_id: int,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> MutationResponse:
    result = task_service.update(db, actor, task_id, dto.model_dump(exclude_unset=True))
    return _mutation_response(task_service, result)


@tasks_router.patch("/{task_id}/status", response_model=MutationResponse)
def change_task_status(
    task_id: int,
    dto: TaskStatusUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> MutationResponse:
    result = task_service.update(db, actor, task_id, {"status": dto.status})
    return _mutation_response(task_service, result)


@tasks_router.delete("/{task_id}", response_model=DeleteResponse)
def delete_task(task_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> DeleteResponse:
    return _deleted(task_service, task_service.delete(db, actor, task_id))


# activities


@activities_router.get("", response_model=list[ActivityRead])
def list_activities(
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[Activity]:
    return activity_service.list_feed(db, actor, limit)


@activities_router.post("", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity(dto: ActivityCreate, db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> Activity:
    return activity_service.create_note(
        db,
        actor,
        dto.content,
        activity_type=dto.type,
        lead_id=dto.lead_id,
        contact_id=dto.contact_id,
    )


@activities_router.get("/lead/{lead_id}", response_model=list[ActivityRead])
def list_lead_activities(
    lead_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> list[Activity]:
    return activity_service.list_for_lead(db, actor, lead_id)


@activities_router.put("/{activity_id}", response_model=ActivityRead)
def update_activity(
    activity_id: int,
    dto: ActivityUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> Activity:
    return activity_service.update_details(db, actor, activity_id, dto.details)


@activities_router.delete("/{activity_id}", response_model=DeleteResponse)
def delete_activity(
    activity_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DeleteResponse:
    return DeleteResponse(id=activity_service.delete(db, actor, activity_id), message="Activity deleted")


# notifications


@notifications_router.get("", response_model=NotificationList)
def list_notifications(db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> NotificationList:
    notifications = notification_service.list_for_user(db, actor)
    return NotificationList(
        count=len(notifications),
        unread=sum(1 for notification in notifications if not notification.read),
        notifications=[NotificationRead.model_validate(notification) for notification in notifications],
    )


@notifications_router.post("", response_model=NotificationRead, status_code=status.HTTP_201_CREATED)
def create_notification(
    dto: NotificationCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> Notification:
    return notification_service.create(db, dto.user_id, dto.type, dto.message)


@notifications_router.patch("/read-all")
def mark_all_notifications_read(db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> dict[str, int]:
    return {"count": notification_service.mark_all_read(db, actor)}


@notifications_router.patch("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> Notification:
    return notification_service.mark_read(db, actor, notification_id)


@notifications_router.delete("/{notification_id}", response_model=DeleteResponse)
def delete_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DeleteResponse:
    notification_service.delete(db, actor, notification_id)
    return DeleteResponse(id=notification_id, message="Notification deleted")
