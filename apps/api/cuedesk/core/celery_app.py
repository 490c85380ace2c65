from celery import Celery

from cuedesk.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "cuedesk_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["cuedesk.authz.tasks"],
)
celery_app.conf.task_acks_late = True
