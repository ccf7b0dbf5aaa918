from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from fastapi import Depends
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from starlette.requests import Request

from crmtrail.context import set_actor_id
from crmtrail.core.config import get_settings
from crmtrail.core.database import get_db
from crmtrail.core.errors import AuthError, ForbiddenError
from crmtrail.crm.models import User
from crmtrail.security.context import Actor, Role


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user_id: int, role: str, *, now: datetime | None = None) -> str:
    settings = get_settings()
    issued_at = now or datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": str(user_id),
        "role": role,
        "type": "access",
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=settings.access_token_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_refresh_token() -> tuple[str, datetime]:
    """Opaque refresh token and its expiry; the token itself is stored server-side."""
    settings = get_settings()
    return secrets.token_urlsafe(48), datetime.now(timezone.utc) + timedelta(days=settings.refresh_token_days)


def decode_access_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise AuthError("invalid or expired token") from exc
    if payload.get("type") != "access" or not str(payload.get("sub", "")).isdigit():
        raise AuthError("invalid token")
    return payload


def actor_from_token(session: Session, token: str) -> Actor:
    payload = decode_access_token(token)
    user = session.get(User, int(payload["sub"]))
    if user is None:
        raise AuthError("user no longer exists")
    return Actor(id=user.id, role=Role.parse(user.role), team_id=user.team_id, name=user.name)


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "", 1) if auth_header.startswith("Bearer ") else ""


def get_current_actor(request: Request, db: Session = Depends(get_db)) -> Actor:
    token = _bearer_token(request)
    if not token:
        raise AuthError("authentication required")
    # Role and team are read from the database so revoked privileges apply immediately.
    actor = actor_from_token(db, token)
    set_actor_id(actor.id)
    request.state.actor = actor
    return actor


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise ForbiddenError("admin role required", details={"role": actor.role.value})
