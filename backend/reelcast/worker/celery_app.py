"""
Celery application for publish jobs.

Broker/backend: Redis (REDIS_URL env).
Default queue: publish.
"""
from celery import Celery

from reelcast.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "reelcast",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,
    task_default_queue="publish",
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # visibility_timeout must exceed task_time_limit or long uploads get redelivered
    broker_transport_options={"visibility_timeout": 60 * 60},
)

celery_app.autodiscover_tasks(["reelcast.worker"])
