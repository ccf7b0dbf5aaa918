from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmtrail.core.auth import create_access_token, hash_password, verify_password
from crmtrail.core.config import get_settings
from crmtrail.core.database import Base, get_db
from crmtrail.crm.models import RefreshToken, User
from crmtrail.main import app
from crmtrail.models.audit import SystemEvent


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
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _register(client: TestClient, email: str = "dana@example.com") -> dict:
    response = client.post("/api/v1/auth/register", json={"name": "Dana", "email": email, "password": "s3cret!"})
    assert response.status_code == 201
    return response.json()


def test_password_hashing_round_trip() -> None:
    hashed = hash_password("s3cret!")
    assert hashed != "s3cret!"
    assert verify_password("s3cret!", hashed) is True
    assert verify_password("wrong", hashed) is False
    assert verify_password("s3cret!", "not-a-bcrypt-hash") is False


def test_register_defaults_to_sales_and_records_event(client: TestClient, db_session: Session) -> None:
    body = _register(client)

    assert body["user"]["role"] == "SALES"
    assert body["token_type"] == "bearer"
    claims = jwt.decode(body["access_token"], get_settings().jwt_secret, algorithms=[get_settings().jwt_algorithm])
    assert claims["sub"] == str(body["user"]["id"])
    assert claims["role"] == "SALES"
    assert db_session.scalars(select(SystemEvent.action)).all() == ["REGISTER"]
    assert db_session.scalars(select(RefreshToken)).one().user_id == body["user"]["id"]


def test_duplicate_email_conflicts(client: TestClient) -> None:
    _register(client)
    response = client.post("/api/v1/auth/register", json={"name": "Dup", "email": "DANA@example.com", "password": "s3cret!"})

    assert response.status_code == 409
    assert response.json()["code"] == "conflict"


def test_login_and_me(client: TestClient, db_session: Session) -> None:
    _register(client)

    bad = client.post("/api/v1/auth/login", json={"email": "dana@example.com", "password": "nope"})
    assert bad.status_code == 401
    assert bad.json()["code"] == "unauthorized"

    login = client.post("/api/v1/auth/login", json={"email": "dana@example.com", "password": "s3cret!"})
    assert login.status_code == 200
    token = login.json()["access_token"]
    assert "LOGIN" in db_session.scalars(select(SystemEvent.action)).all()

    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "dana@example.com"


def test_missing_or_invalid_token_is_unauthorized(client: TestClient) -> None:
    assert client.get("/api/v1/auth/me").status_code == 401
    assert client.get("/api/v1/leads", headers={"Authorization": "Bearer garbage"}).status_code == 401

    expired = create_access_token(1, "ADMIN", now=datetime.now(timezone.utc) - timedelta(hours=1))
    assert client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {expired}"}).status_code == 401


def test_role_is_read_from_database(client: TestClient, db_session: Session) -> None:
    body = _register(client)
    user = db_session.get(User, body["user"]["id"])
    user.role = "ADMIN"
    db_session.commit()

    response = client.get("/api/v1/users", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert response.status_code == 200


def test_refresh_and_logout(client: TestClient) -> None:
    body = _register(client)

    refreshed = client.post("/api/v1/auth/refresh", json={"refresh_token": body["refresh_token"]})
    assert refreshed.status_code == 200
    assert refreshed.json()["access_token"]

    assert client.post("/api/v1/auth/logout", json={"refresh_token": body["refresh_token"]}).status_code == 204
    assert client.post("/api/v1/auth/refresh", json={"refresh_token": body["refresh_token"]}).status_code == 401
