from celery import Celery
from celery.schedules import crontab

from crmtrail.core.config import get_settings

settings = get_settings()

celery_app = Celery("crmtrail_api", broker=settings.redis_url, backend=settings.redis_url, include=["crmtrail.tasks"])
celery_app.conf.beat_schedule = {
    "purge-system-events-daily": {
        "task": "crmtrail.tasks.purge_system_events",
        "schedule": crontab(hour=3, minute=0),
    },
}
celery_app.conf.timezone = "UTC"
