"""Celery application for delayed publish-webhook deliveries."""
from celery import Celery
from celery.signals import setup_logging

from app.core.config import settings
from app.core.logging import configure_logging

celery_app = Celery(
    "studio",
    broker=settings.CELERY_BROKER_URL,
    include=["app.workers.dispatch"],
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()
