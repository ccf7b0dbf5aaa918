from __future__ import annotations

import logging

from crmtrail.audit.store import system_event_store
from crmtrail.core.celery_app import celery_app
from crmtrail.core.config import get_settings
from crmtrail.core.database import SessionLocal


logger = logging.getLogger("crmtrail.tasks")


def purge_expired_system_events(session_factory=SessionLocal, retention_days: int | None = None) -> int:  # type: ignore[no-untyped-def]
    days = retention_days if retention_days is not None else get_settings().history_retention_days
    session = session_factory()
    try:
        count = system_event_store.delete_older_than(session, days)
    finally:
        session.close()
    logger.info("retention_job_finished", extra={"count": count, "action": "retention"})
    return count


@celery_app.task(name="crmtrail.tasks.purge_system_events")
def purge_system_events() -> int:
    return purge_expired_system_events()
