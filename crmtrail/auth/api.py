from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from crmtrail.auth.schemas import LoginRequest, RefreshRequest, RegisterRequest, TokenResponse
from crmtrail.auth.service import auth_service
from crmtrail.core.auth import get_current_actor
from crmtrail.core.database import get_db
from crmtrail.core.errors import NotFoundError
from crmtrail.crm.models import User
from crmtrail.crm.schemas import UserRead
from crmtrail.security.context import Actor

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def register(dto: RegisterRequest, db: Session = Depends(get_db)) -> TokenResponse:
    user, access_token, refresh_token = auth_service.register(db, name=dto.name, email=dto.email, password=dto.password)
    return TokenResponse(access_token=access_token, refresh_token=refresh_token, user=UserRead.model_validate(user))


@router.post("/login", response_model=TokenResponse)
def login(dto: LoginRequest, db: Session = Depends(get_db)) -> TokenResponse:
    user, access_token, refresh_token = auth_service.login(db, email=dto.email, password=dto.password)
    return TokenResponse(access_token=access_token, refresh_token=refresh_token, user=UserRead.model_validate(user))


@router.post("/refresh")
def refresh(dto: RefreshRequest, db: Session = Depends(get_db)) -> dict[str, str]:
    return {"access_token": auth_service.refresh(db, dto.refresh_token), "token_type": "bearer"}


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(dto: RefreshRequest, db: Session = Depends(get_db)) -> None:
    auth_service.logout(db, dto.refresh_token)


@router.get("/me", response_model=UserRead)
def me(db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> User:
    user = db.get(User, actor.id)
    if user is None:
        raise NotFoundError("user not found", details={"id": actor.id})
    return user
