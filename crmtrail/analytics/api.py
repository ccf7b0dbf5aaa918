from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from crmtrail.analytics.service import analytics_service
from crmtrail.core.auth import get_current_actor
from crmtrail.core.database import get_db
from crmtrail.security.context import Actor

router = APIRouter(prefix="/api/v1", tags=["analytics"])


@router.get("/analytics/overview")
def analytics_overview(db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return analytics_service.overview(db, actor)


@router.get("/dashboard")
def dashboard(db: Session = Depends(get_db), actor: Actor = Depends(get_current_actor)) -> dict[str, Any]:
    return analytics_service.dashboard(db, actor)
