from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class SystemEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    actor_id: int | None
    action: str
    entity_type: str
    entity_id: str | None
    description: str
    ip_address: str | None
    user_agent: str | None
    timestamp: datetime


class SystemEventCreate(BaseModel):
    action: str = Field(min_length=1, max_length=64)
    entity_type: str = Field(min_length=1, max_length=64)
    entity_id: str | None = None
    description: str = ""


class SystemEventPage(BaseModel):
    records: list[SystemEventRead]
    total: int
    page: int
    page_size: int
    total_pages: int


class IdsRequest(BaseModel):
    """Row ids to delete. Purging a whole table goes through ``?all=true`` instead."""

    ids: list[int] = Field(default_factory=list)


class CountResponse(BaseModel):
    count: int


SortOrder = Literal["asc", "desc"]
