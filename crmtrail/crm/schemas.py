from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field


RoleName = Literal["ADMIN", "MANAGER", "SALES"]


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    role: str
    team_id: str | None


class UserUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    password: str | None = Field(default=None, min_length=6)
    role: RoleName | None = None
    team_id: str | None = None


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    stage: str = Field(default="new", min_length=1)


class LeadUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    stage: str | None = Field(default=None, min_length=1)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str | None
    phone: str | None
    stage: str
    owner_id: int
    created_at: datetime
    updated_at: datetime


class ContactCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    notes: str | None = None


class ContactUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    notes: str | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str | None
    phone: str | None
    company: str | None
    position: str | None
    notes: str | None
    owner_id: int
    created_at: datetime
    updated_at: datetime


class DealCreate(BaseModel):
    title: str = Field(min_length=1)
    value: Decimal = Field(ge=0)
    stage: str = Field(default="Lead", min_length=1)
    description: str | None = None
    contact_id: int | None = None


class DealUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    value: Decimal | None = Field(default=None, ge=0)
    stage: str | None = Field(default=None, min_length=1)
    description: str | None = None
    contact_id: int | None = None


class DealStageUpdate(BaseModel):
    stage: str = Field(min_length=1)


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    value: float
    stage: str
    description: str | None
    contact_id: int | None
    owner_id: int
    created_at: datetime
    updated_at: datetime


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    priority: str = Field(min_length=1)
    status: str = Field(min_length=1)
    due_date: datetime | None = None
    contact_id: int | None = None
    deal_id: int | None = None


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    priority: str | None = Field(default=None, min_length=1)
    status: str | None = Field(default=None, min_length=1)
    due_date: datetime | None = None
    contact_id: int | None = None
    deal_id: int | None = None


class TaskStatusUpdate(BaseModel):
    status: str = Field(min_length=1)


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str | None
    priority: str
    status: str
    due_date: datetime | None
    contact_id: int | None
    deal_id: int | None
    owner_id: int
    created_at: datetime
    updated_at: datetime


class ActivityCreate(BaseModel):
    content: str = Field(min_length=1)
    type: str = "Note"
    lead_id: int | None = None
    contact_id: int | None = None


class ActivityUpdate(BaseModel):
    details: str = Field(min_length=1)


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    lead_id: int | None
    contact_id: int | None
    type: str
    details: str
    created_at: datetime


class NotificationCreate(BaseModel):
    user_id: int
    type: str = Field(min_length=1)
    message: str = Field(min_length=1)


class NotificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    type: str
    message: str
    read: bool
    created_at: datetime


class NotificationList(BaseModel):
    """``count`` is every notification of the recipient; ``unread`` the ones not yet read."""

    count: int
    unread: int
    notifications: list[NotificationRead]


class ChangeRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_kind: str
    entity_id: int
    changed_by: int
    field: str
    old_value: str | None
    new_value: str | None
    timestamp: datetime


class MutationResponse(BaseModel):
    """Update result: ``changed`` is false when the payload matched the stored values."""

    changed: bool
    changed_fields: list[str]
    entity: dict


class DeleteResponse(BaseModel):
    id: int
    message: str
