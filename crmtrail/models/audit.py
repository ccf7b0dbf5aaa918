from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from crmtrail.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChangeRecordMixin:
    """Columns shared by every per-kind field history table.

    ``entity_id`` deliberately has no foreign key: history rows outlive the
    entity they describe.
    """

    entity_kind: str = ""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    field: Mapped[str] = mapped_column(String(128), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    @declared_attr
    def changed_by(cls) -> Mapped[int]:
        return mapped_column(Integer, ForeignKey("users.id"), nullable=False)

    @declared_attr.directive
    def __table_args__(cls) -> tuple[Index, ...]:
        return (Index(f"ix_{cls.__tablename__}_entity_ts", "entity_id", "timestamp"),)


class LeadHistory(ChangeRecordMixin, Base):
    __tablename__ = "lead_history"
    entity_kind = "lead"


class ContactHistory(ChangeRecordMixin, Base):
    __tablename__ = "contact_history"
    entity_kind = "contact"


class DealHistory(ChangeRecordMixin, Base):
    __tablename__ = "deal_history"
    entity_kind = "deal"


class TaskHistory(ChangeRecordMixin, Base):
    __tablename__ = "task_history"
    entity_kind = "task"


HISTORY_MODELS: dict[str, type[ChangeRecordMixin]] = {
    "lead": LeadHistory,
    "contact": ContactHistory,
    "deal": DealHistory,
    "task": TaskHistory,
}


class SystemEvent(Base):
    __tablename__ = "system_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
