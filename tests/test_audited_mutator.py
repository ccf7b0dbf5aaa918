from __future__ import annotations

from collections.abc import Generator, Sequence

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmtrail.audit.mutator import AuditedMutator
from crmtrail.audit.store import HistoryStore, history_store
from crmtrail.core.database import Base
from crmtrail.core.errors import ForbiddenError, NotFoundError, StorageError, ValidationError
from crmtrail.core.events import DomainEvent
from crmtrail.crm.models import Activity, Lead, User
from crmtrail.crm.service import CONTACT_SPEC, LEAD_SPEC
from crmtrail.models.audit import ContactHistory, LeadHistory, SystemEvent
from crmtrail.security.context import Actor, Role


ALICE = Actor(id=1, role=Role.SALES, team_id="T1", name="alice")
BOB = Actor(id=2, role=Role.SALES, team_id="T1", name="bob")
CAROL = Actor(id=3, role=Role.MANAGER, team_id="T1", name="carol")


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def publish(self, event: DomainEvent) -> None:
        self.events.append(event)


class FailingHistoryStore(HistoryStore):
    def append(self, session: Session, records: Sequence) -> None:  # type: ignore[override]
        raise StorageError("history store unavailable")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    for actor in (ALICE, BOB, CAROL):
        session.add(
            User(
                id=actor.id,
                name=actor.name,
                email=f"{actor.name}@example.com",
                password_hash="x",
                role=actor.role.value,
                team_id=actor.team_id,
            )
        )
    session.add(Lead(id=7, name="Acme", stage="Prospecting", owner_id=ALICE.id))
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


def test_stage_change_writes_one_change_record(db_session: Session, publisher: RecordingPublisher) -> None:
    mutator = AuditedMutator(LEAD_SPEC, publisher=publisher)

    result = mutator.update(db_session, ALICE, 7, {"stage": "Qualified"})

    assert result.changed is True
    records = db_session.scalars(select(LeadHistory)).all()
    assert len(records) == 1
    record = records[0]
    assert (record.entity_id, record.field, record.old_value, record.new_value, record.changed_by) == (
        7,
        "stage",
        "Prospecting",
        "Qualified",
        1,
    )
    assert db_session.get(Lead, 7).stage == "Qualified"

    updated = [event for event in publisher.events if event.name == "entity:updated"]
    assert len(updated) == 1
    assert updated[0].payload["entity"]["stage"] == "Qualified"
    assert set(updated[0].rooms) == {"role_admin", "user_1", "team_T1"}

    activity = db_session.scalars(select(Activity)).one()
    assert activity.details == "Updated lead: Acme"
    assert activity.lead_id == 7


def test_unchanged_payload_commits_nothing(db_session: Session, publisher: RecordingPublisher) -> None:
    mutator = AuditedMutator(LEAD_SPEC, publisher=publisher)

    result = mutator.update(db_session, ALICE, 7, {"stage": "Prospecting", "name": "Acme"})

    assert result.changed is False
    assert result.changes == []
    assert db_session.scalars(select(LeadHistory)).all() == []
    assert publisher.events == []


def test_failing_history_append_leaves_entity_unchanged(db_session: Session, publisher: RecordingPublisher) -> None:
    mutator = AuditedMutator(LEAD_SPEC, history=FailingHistoryStore(), publisher=publisher)

    with pytest.raises(StorageError):
        mutator.update(db_session, ALICE, 7, {"stage": "Qualified"})

    db_session.expire_all()
    assert db_session.get(Lead, 7).stage == "Prospecting"
    assert db_session.scalars(select(LeadHistory)).all() == []
    assert db_session.scalars(select(Activity)).all() == []
    assert publisher.events == []


def test_other_sales_actor_is_forbidden(db_session: Session, publisher: RecordingPublisher) -> None:
    mutator = AuditedMutator(LEAD_SPEC, publisher=publisher)

    with pytest.raises(ForbiddenError):
        mutator.update(db_session, BOB, 7, {"stage": "Qualified"})
    assert db_session.get(Lead, 7).stage == "Prospecting"


def test_team_manager_may_update(db_session: Session, publisher: RecordingPublisher) -> None:
    mutator = AuditedMutator(LEAD_SPEC, publisher=publisher)

    result = mutator.update(db_session, CAROL, 7, {"stage": "Negotiation"})

    assert [change.field for change in result.changes] == ["stage"]
    assert db_session.scalars(select(LeadHistory)).one().changed_by == CAROL.id


def test_missing_entity_and_unknown_field(db_session: Session) -> None:
    mutator = AuditedMutator(LEAD_SPEC)

    with pytest.raises(NotFoundError):
        mutator.update(db_session, ALICE, 999, {"stage": "Qualified"})
    with pytest.raises(ValidationError):
        mutator.update(db_session, ALICE, 7, {"owner_id": 2})
    with pytest.raises(ValidationError):
        mutator.update(db_session, ALICE, 7, {"name": "  "})


def test_delete_keeps_history_and_appends_terminal_record(db_session: Session, publisher: RecordingPublisher) -> None:
    mutator = AuditedMutator(LEAD_SPEC, publisher=publisher)
    mutator.update(db_session, ALICE, 7, {"stage": "Qualified"})

    assert mutator.delete(db_session, ALICE, 7) == 7

    assert db_session.get(Lead, 7) is None
    records = history_store.list_by_entity(db_session, "lead", 7)
    assert [record.field for record in records] == ["Deleted", "stage"]
    assert (records[0].old_value, records[0].new_value) == ("Acme", None)

    deleted_events = [event for event in publisher.events if event.name == "entity:deleted"]
    assert deleted_events[0].payload == {"kind": "lead", "id": 7}
    actions = db_session.scalars(select(SystemEvent.action)).all()
    assert "DELETE" in actions


def test_create_contact_records_creation(db_session: Session, publisher: RecordingPublisher) -> None:
    mutator = AuditedMutator(CONTACT_SPEC, publisher=publisher)

    contact = mutator.create(db_session, BOB, {"name": "Jamie", "email": "jamie@acme.example.com"})

    assert contact.owner_id == BOB.id
    created = db_session.scalars(select(ContactHistory)).one()
    assert created.field == "Created"
    assert created.old_value is None
    assert created.new_value == "Contact created by bob"
    assert db_session.scalars(select(SystemEvent.action)).all() == ["CREATE"]
    assert [event.name for event in publisher.events] == ["entity:created"]


def test_create_requires_required_fields(db_session: Session) -> None:
    mutator = AuditedMutator(CONTACT_SPEC)
    with pytest.raises(ValidationError):
        mutator.create(db_session, BOB, {"email": "x@acme.example.com"})
