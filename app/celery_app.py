from celery import Celery

from app.config import settings

celery_app = Celery(
    "city_metrics",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.tasks.metrics"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.metrics_timezone,
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
)
