from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmtrail import events
from crmtrail.core.auth import get_current_actor
from crmtrail.core.database import Base, get_db
from crmtrail.crm.models import User
from crmtrail.main import app
from crmtrail.models.audit import DealHistory, LeadHistory, SystemEvent, TaskHistory
from crmtrail.security.context import Actor, Role


ACTORS = {
    "sara": Actor(id=1, role=Role.SALES, team_id="T1", name="sara"),
    "tom": Actor(id=2, role=Role.SALES, team_id="T2", name="tom"),
    "maya": Actor(id=3, role=Role.MANAGER, team_id="T1", name="maya"),
    "root": Actor(id=4, role=Role.ADMIN, name="root"),
}


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
    for actor in ACTORS.values():
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
    session.commit()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "sara"}

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = lambda: ACTORS[state["current"]]
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def test_contact_lifecycle_and_creation_record(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    contact = test_client.post("/api/v1/contacts", json={"name": "Jamie", "company": "Acme"})
    assert contact.status_code == 201
    contact_id = contact.json()["id"]

    history = test_client.get(f"/api/v1/history/contact/{contact_id}").json()
    assert [(r["field"], r["new_value"]) for r in history] == [("Created", "Contact created by sara")]

    patched = test_client.patch(f"/api/v1/contacts/{contact_id}", json={"company": "Globex", "notes": ""})
    assert patched.json()["changed_fields"] == ["company"]

    set_actor("maya")
    assert test_client.get(f"/api/v1/contacts/{contact_id}").status_code == 200
    set_actor("tom")
    assert test_client.get("/api/v1/contacts").json() == []


def test_deal_stage_change_is_audited(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client
    deal = test_client.post("/api/v1/deals", json={"title": "Big Deal", "value": "2500.00"})
    assert deal.status_code == 201
    assert deal.json()["value"] == 2500.0
    assert deal.json()["stage"] == "Lead"

    same_value = test_client.patch(f"/api/v1/deals/{deal.json()['id']}", json={"value": 2500})
    assert same_value.json()["changed"] is False

    staged = test_client.patch(f"/api/v1/deals/{deal.json()['id']}/stage", json={"stage": "Negotiation"})
    assert staged.json()["changed_fields"] == ["stage"]
    record = db_session.scalars(select(DealHistory)).one()
    assert (record.old_value, record.new_value) == ("Lead", "Negotiation")

    negative = test_client.post("/api/v1/deals", json={"title": "Bad", "value": -1})
    assert negative.status_code == 422


def test_task_status_filter_and_delete(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client
    first = test_client.post("/api/v1/tasks", json={"title": "Call", "priority": "High", "status": "Pending"}).json()
    test_client.post("/api/v1/tasks", json={"title": "Email", "priority": "Low", "status": "Completed"})

    pending = test_client.get("/api/v1/tasks", params={"status": "Pending"}).json()
    assert [task["title"] for task in pending] == ["Call"]

    done = test_client.patch(f"/api/v1/tasks/{first['id']}/status", json={"status": "Completed"})
    assert done.json()["entity"]["status"] == "Completed"

    deleted = test_client.delete(f"/api/v1/tasks/{first['id']}")
    assert deleted.json() == {"id": first["id"], "message": "Task deleted"}
    fields = db_session.scalars(select(TaskHistory.field).order_by(TaskHistory.id)).all()
    assert fields == ["status", "Deleted"]
    actions = db_session.scalars(select(SystemEvent.action).where(SystemEvent.entity_type == "task")).all()
    assert actions.count("DELETE") == 1


def test_notes_require_visible_target(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    contact = test_client.post("/api/v1/contacts", json={"name": "Jamie"}).json()

    note = test_client.post("/api/v1/activities", json={"content": "Called Jamie", "contact_id": contact["id"]})
    assert note.status_code == 201
    assert note.json()["type"] == "Note"
    activities = test_client.get(f"/api/v1/contacts/{contact['id']}/activities").json()
    assert [item["details"] for item in activities] == ["Called Jamie"]
    assert any(event.name == "activity:created" for event in events.published_events)

    set_actor("tom")
    denied = test_client.post("/api/v1/activities", json={"content": "Sneaky", "contact_id": contact["id"]})
    assert denied.status_code == 403
    assert test_client.get("/api/v1/activities").json() == []

    missing_target = test_client.post("/api/v1/activities", json={"content": "Orphan"})
    assert missing_target.status_code == 422


def test_user_administration(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, set_actor = client
    assert test_client.get("/api/v1/users").status_code == 403
    assert test_client.patch("/api/v1/users/1", json={"role": "ADMIN"}).status_code == 403
    assert test_client.patch("/api/v1/users/1", json={"name": "Sara K"}).json()["name"] == "Sara K"
    assert test_client.patch("/api/v1/users/2", json={"name": "Nope"}).status_code == 403

    set_actor("root")
    assert len(test_client.get("/api/v1/users").json()) == 4
    promoted = test_client.patch("/api/v1/users/2", json={"role": "MANAGER"})
    assert promoted.json()["role"] == "MANAGER"
    event = db_session.scalars(select(SystemEvent).where(SystemEvent.action == "ROLE_CHANGE")).one()
    assert event.entity_id == "2"
    assert "SALES to MANAGER" in event.description

    duplicate = test_client.patch("/api/v1/users/2", json={"email": "sara@example.com"})
    assert duplicate.status_code == 409

    assert test_client.delete("/api/v1/users/2").status_code == 200
    assert test_client.get("/api/v1/users/2").status_code == 404


def test_leads_of_user_respect_visibility(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    test_client.post("/api/v1/leads", json={"name": "Acme"})
    set_actor("tom")
    test_client.post("/api/v1/leads", json={"name": "Initech"})

    set_actor("maya")
    assert [lead["name"] for lead in test_client.get("/api/v1/users/1/leads").json()] == ["Acme"]
    assert test_client.get("/api/v1/users/2/leads").status_code == 403


def test_required_columns_cannot_be_cleared(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client
    lead = test_client.post("/api/v1/leads", json={"name": "Acme"}).json()
    deal = test_client.post("/api/v1/deals", json={"title": "Big Deal", "value": 10}).json()

    assert test_client.patch(f"/api/v1/leads/{lead['id']}", json={"stage": None}).status_code == 422
    assert test_client.patch(f"/api/v1/leads/{lead['id']}", json={"stage": ""}).status_code == 422
    assert test_client.patch(f"/api/v1/deals/{deal['id']}", json={"stage": None}).status_code == 422
    assert test_client.patch(f"/api/v1/deals/{deal['id']}", json={"title": None}).status_code == 422

    assert db_session.scalars(select(LeadHistory)).all() == []
    assert db_session.scalars(select(DealHistory)).all() == []
    assert test_client.get(f"/api/v1/leads/{lead['id']}").json()["stage"] == "new"


def test_user_fields_cannot_be_nulled(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    assert test_client.patch("/api/v1/users/1", json={"name": None}).status_code == 422
    assert test_client.patch("/api/v1/users/1", json={"email": None}).status_code == 422
    assert test_client.get("/api/v1/users/1").json()["name"] == "sara"

    set_actor("root")
    assert test_client.patch("/api/v1/users/2", json={"email": "SARA@example.com"}).status_code == 409
    moved = test_client.patch("/api/v1/users/2", json={"email": "Tom.New@example.com"})
    assert moved.json()["email"] == "tom.new@example.com"


def test_linked_records_must_be_visible(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, set_actor = client
    contact = test_client.post("/api/v1/contacts", json={"name": "Jamie"}).json()
    deal = test_client.post("/api/v1/deals", json={"title": "Mine", "value": 5, "contact_id": contact["id"]})
    assert deal.status_code == 201

    task = test_client.post(
        "/api/v1/tasks",
        json={"title": "Follow up", "priority": "High", "status": "Pending", "deal_id": deal.json()["id"]},
    )
    assert task.status_code == 201
    missing = test_client.patch(f"/api/v1/deals/{deal.json()['id']}", json={"contact_id": 999})
    assert missing.status_code == 404
    assert db_session.scalars(select(DealHistory)).all() == []

    set_actor("tom")
    borrowed = test_client.post("/api/v1/deals", json={"title": "Theirs", "value": 5, "contact_id": contact["id"]})
    assert borrowed.status_code == 403
    assert test_client.post("/api/v1/deals", json={"title": "Ghost", "value": 5, "contact_id": 999}).status_code == 404
    foreign_deal = {"title": "Peek", "priority": "Low", "status": "Pending", "deal_id": deal.json()["id"]}
    assert test_client.post("/api/v1/tasks", json=foreign_deal).status_code == 403


def test_activity_edit_and_delete(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    lead = test_client.post("/api/v1/leads", json={"name": "Acme"}).json()
    note = test_client.post("/api/v1/activities", json={"content": "Called", "lead_id": lead["id"]}).json()

    feed = test_client.get(f"/api/v1/activities/lead/{lead['id']}").json()
    assert {item["details"] for item in feed} == {"Called", "Created new lead: Acme"}

    edited = test_client.put(f"/api/v1/activities/{note['id']}", json={"details": "Called twice"})
    assert edited.status_code == 200
    assert edited.json()["details"] == "Called twice"
    assert any(event.name == "activity:updated" for event in events.published_events)
    assert test_client.put(f"/api/v1/activities/{note['id']}", json={"details": ""}).status_code == 422
    assert test_client.put("/api/v1/activities/999", json={"details": "x"}).status_code == 404

    set_actor("tom")
    assert test_client.get(f"/api/v1/activities/lead/{lead['id']}").status_code == 403
    assert test_client.put(f"/api/v1/activities/{note['id']}", json={"details": "Mine now"}).status_code == 403
    assert test_client.delete(f"/api/v1/activities/{note['id']}").status_code == 403

    set_actor("root")
    deleted = test_client.delete(f"/api/v1/activities/{note['id']}")
    assert deleted.json() == {"id": note["id"], "message": "Activity deleted"}
    assert any(event.name == "activity:deleted" for event in events.published_events)
    assert [item["details"] for item in test_client.get(f"/api/v1/activities/lead/{lead['id']}").json()] == [
        "Created new lead: Acme"
    ]


def test_activities_of_user_respect_visibility(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    test_client.post("/api/v1/leads", json={"name": "Acme"})

    assert [item["details"] for item in test_client.get("/api/v1/users/1/activities").json()] == [
        "Created new lead: Acme"
    ]
    set_actor("maya")
    assert len(test_client.get("/api/v1/users/1/activities").json()) == 1
    set_actor("tom")
    assert test_client.get("/api/v1/users/1/activities").status_code == 403
