from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crmtrail.audit.store import build_system_event, system_event_store
from crmtrail.core.auth import create_access_token, create_refresh_token, hash_password, verify_password
from crmtrail.core.errors import AuthError, ConflictError, StorageError
from crmtrail.crm.models import RefreshToken, User
from crmtrail.security.context import Role


logger = logging.getLogger("crmtrail.auth")


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class AuthService:
    def register(self, session: Session, *, name: str, email: str, password: str) -> tuple[User, str, str]:
        normalized_email = email.strip().lower()
        if session.scalar(select(User.id).where(User.email == normalized_email)) is not None:
            raise ConflictError("email already registered", details={"email": normalized_email})

        user = User(name=name.strip(), email=normalized_email, password_hash=hash_password(password), role=Role.SALES.value)
        try:
            session.add(user)
            session.flush()
            system_event_store.append(
                session,
                build_system_event(
                    actor_id=user.id,
                    action="REGISTER",
                    entity_type="user",
                    entity_id=user.id,
                    description=f"User registered: {user.email}",
                ),
            )
            refresh_token = self._issue_refresh_token(session, user)
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("email already registered", details={"email": normalized_email}) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("failed to register user", details={"error": str(exc)[:500]}) from exc

        session.refresh(user)
        logger.info("user_registered", extra={"entity_kind": "user", "entity_id": user.id})
        return user, create_access_token(user.id, user.role), refresh_token

    def login(self, session: Session, *, email: str, password: str) -> tuple[User, str, str]:
        user = session.scalar(select(User).where(User.email == email.strip().lower()))
        if user is None or not verify_password(password, user.password_hash):
            raise AuthError("invalid email or password")
        try:
            system_event_store.append(
                session,
                build_system_event(
                    actor_id=user.id,
                    action="LOGIN",
                    entity_type="user",
                    entity_id=user.id,
                    description=f"User logged in: {user.email}",
                ),
            )
            refresh_token = self._issue_refresh_token(session, user)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("failed to record login", details={"error": str(exc)[:500]}) from exc
        return user, create_access_token(user.id, user.role), refresh_token

    def refresh(self, session: Session, token: str) -> str:
        stored = session.scalar(select(RefreshToken).where(RefreshToken.token == token))
        if stored is None:
            raise AuthError("invalid refresh token")
        if _as_aware(stored.expires_at) <= datetime.now(timezone.utc):
            session.delete(stored)
            session.commit()
            raise AuthError("refresh token expired")
        user = session.get(User, stored.user_id)
        if user is None:
            raise AuthError("user no longer exists")
        return create_access_token(user.id, user.role)

    def logout(self, session: Session, token: str) -> None:
        try:
            session.execute(delete(RefreshToken).where(RefreshToken.token == token))
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("failed to revoke refresh token", details={"error": str(exc)[:500]}) from exc

    def _issue_refresh_token(self, session: Session, user: User) -> str:
        token, expires_at = create_refresh_token()
        session.add(RefreshToken(token=token, user_id=user.id, expires_at=expires_at))
        return token


auth_service = AuthService()
