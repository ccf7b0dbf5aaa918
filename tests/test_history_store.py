from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmtrail.audit.store import HistoryQuery, build_system_event, history_store, system_event_store
from crmtrail.core.database import Base
from crmtrail.core.errors import StorageError, ValidationError
from crmtrail.crm.models import User
from crmtrail.models.audit import LeadHistory, SystemEvent


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


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
    session.add(User(id=1, name="root", email="root@example.com", password_hash="x", role="ADMIN"))
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _event(action: str, description: str, timestamp: datetime, entity_type: str = "lead") -> SystemEvent:
    event = build_system_event(actor_id=1, action=action, entity_type=entity_type, entity_id=1, description=description)
    event.timestamp = timestamp
    return event


def test_delete_by_ids_reports_count_and_hides_rows(db_session: Session) -> None:
    for record_id, field in ((101, "stage"), (102, "email"), (103, "phone")):
        db_session.add(
            LeadHistory(id=record_id, entity_id=7, changed_by=1, field=field, old_value="a", new_value="b", timestamp=NOW)
        )
    db_session.commit()

    assert history_store.delete_by_ids(db_session, "lead", [101, 102]) == 2
    remaining = history_store.list_by_entity(db_session, "lead", 7)
    assert [record.id for record in remaining] == [103]


def test_list_by_entity_orders_newest_first(db_session: Session) -> None:
    db_session.add_all(
        [
            LeadHistory(entity_id=7, changed_by=1, field="stage", old_value="a", new_value="b", timestamp=NOW),
            LeadHistory(entity_id=7, changed_by=1, field="name", old_value="x", new_value="y", timestamp=NOW + timedelta(hours=1)),
            LeadHistory(entity_id=8, changed_by=1, field="name", old_value="x", new_value="z", timestamp=NOW),
        ]
    )
    db_session.commit()

    records = history_store.list_by_entity(db_session, "lead", 7)
    assert [record.field for record in records] == ["name", "stage"]
    assert history_store.count(db_session, "lead") == 3
    assert history_store.count(db_session, "lead", entity_ids=[8]) == 1
    assert history_store.list_recent(db_session, "lead", entity_ids=[]) == []


def test_unknown_kind_is_rejected(db_session: Session) -> None:
    with pytest.raises(ValidationError):
        history_store.list_by_entity(db_session, "invoice", 1)


def test_append_failure_raises_storage_error(db_session: Session) -> None:
    broken = LeadHistory(entity_id=7, changed_by=1, field=None, old_value=None, new_value="x", timestamp=NOW)
    with pytest.raises(StorageError):
        history_store.append(db_session, [broken])
    db_session.rollback()


def test_retention_removes_only_records_past_cutoff(db_session: Session) -> None:
    system_event_store.append(db_session, _event("UPDATE", "old", NOW - timedelta(days=91)))
    system_event_store.append(db_session, _event("UPDATE", "recent", NOW - timedelta(days=10)))
    db_session.commit()

    assert system_event_store.delete_older_than(db_session, 90, now=NOW) == 1
    remaining = db_session.scalars(select(SystemEvent.description)).all()
    assert remaining == ["recent"]


def test_pages_partition_filtered_set(db_session: Session) -> None:
    for index in range(25):
        # Pairs of rows share a timestamp so ordering has to fall back to id.
        system_event_store.append(db_session, _event("UPDATE", f"update {index}", NOW + timedelta(minutes=index // 2)))
    for index in range(5):
        system_event_store.append(db_session, _event("LOGIN", f"login {index}", NOW, entity_type="user"))
    db_session.commit()

    seen: list[int] = []
    for page in (1, 2, 3):
        result = system_event_store.list_all(db_session, HistoryQuery(action="UPDATE", page=page, page_size=10))
        assert result.total == 25
        assert result.total_pages == 3
        seen.extend(record.id for record in result.records)

    expected = db_session.scalars(select(SystemEvent.id).where(SystemEvent.action == "UPDATE")).all()
    assert len(seen) == len(set(seen)) == 25
    assert set(seen) == set(expected)

    first_again = system_event_store.list_all(db_session, HistoryQuery(action="UPDATE", page=1, page_size=10))
    assert [record.id for record in first_again.records] == seen[:10]


def test_search_is_case_insensitive_across_columns(db_session: Session) -> None:
    system_event_store.append(db_session, _event("CREATE", "Created lead: Acme", NOW))
    system_event_store.append(db_session, _event("LOGIN", "User logged in", NOW, entity_type="user"))
    system_event_store.append(db_session, _event("DELETE", "Deleted task", NOW, entity_type="task"))
    db_session.commit()

    by_description = system_event_store.list_all(db_session, HistoryQuery(search="acme"))
    by_action = system_event_store.list_all(db_session, HistoryQuery(search="login"))
    by_type = system_event_store.list_all(db_session, HistoryQuery(search="TASK"))

    assert [record.description for record in by_description.records] == ["Created lead: Acme"]
    assert [record.action for record in by_action.records] == ["LOGIN"]
    assert by_type.total == 1


def test_sort_ascending_and_invalid_page(db_session: Session) -> None:
    system_event_store.append(db_session, _event("UPDATE", "first", NOW))
    system_event_store.append(db_session, _event("UPDATE", "second", NOW + timedelta(minutes=1)))
    db_session.commit()

    ascending = system_event_store.list_all(db_session, HistoryQuery(sort="asc"))
    assert [record.description for record in ascending.records] == ["first", "second"]

    with pytest.raises(ValidationError):
        system_event_store.list_all(db_session, HistoryQuery(page=0))


def test_delete_all_and_empty_ids(db_session: Session) -> None:
    system_event_store.append(db_session, _event("UPDATE", "one", NOW))
    system_event_store.append(db_session, _event("UPDATE", "two", NOW))
    db_session.commit()

    assert system_event_store.delete_by_ids(db_session, []) == 0
    assert system_event_store.delete_all(db_session) == 2
    assert db_session.scalar(select(func.count()).select_from(SystemEvent)) == 0
