from fastapi import APIRouter, Depends
from fastapi.responses import Response

from crmtrail.analytics.api import router as analytics_router
from crmtrail.auth.api import router as auth_router
from crmtrail.core.auth import get_current_actor, require_admin
from crmtrail.core.config import get_settings
from crmtrail.core.errors import NotFoundError
from crmtrail.crm.api import (
    activities_router,
    contacts_router,
    deals_router,
    leads_router,
    notifications_router,
    tasks_router,
    users_router,
)
from crmtrail.history.api import router as history_router
from crmtrail.history.api import system_router as system_history_router
from crmtrail.metrics import generate_metrics_payload, metrics_content_type
from crmtrail.realtime import router as realtime_router
from crmtrail.security.context import Actor

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(leads_router)
router.include_router(contacts_router)
router.include_router(deals_router)
router.include_router(tasks_router)
router.include_router(activities_router)
router.include_router(notifications_router)
router.include_router(history_router)
router.include_router(system_history_router)
router.include_router(analytics_router)
router.include_router(realtime_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(actor: Actor = Depends(get_current_actor)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError("not found")
    require_admin(actor)
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
