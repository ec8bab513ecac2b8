"""Celery application configuration"""
from __future__ import annotations

import os

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import configure_logging, get_logger
from .beat import CELERY_BEAT_SCHEDULE


# Task modules registered on worker start
CELERY_IMPORTS = (
    "infrastructure.tasks.payment_tasks",
)

# Broker falls back to the cache Redis when no dedicated broker is configured
_broker_url = os.getenv("CELERY_BROKER_URL") or settings.redis.url
_result_backend = os.getenv("CELERY_RESULT_BACKEND") or settings.redis.url


celery_app = Celery("payment_reconciler")

celery_app.conf.update(
    broker_url=_broker_url,
    result_backend=_result_backend,
    # JSON only; no pickle payloads
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Ack after the work is done so a lost worker redelivers the refresh
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_default_retry_delay=5,
    task_queues=(
        Queue("high"),
        Queue("default"),
        Queue("low"),
    ),
    task_routes={
        "payments.refresh_status": {"queue": "high"},
        "payments.sweep_intermediate": {"queue": "low"},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
    imports=CELERY_IMPORTS,
)

if (settings.ENVIRONMENT or "production").lower() in {"test", "testing"}:
    celery_app.conf.task_always_eager = True


logger = get_logger(__name__)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    configure_logging()
    logger.info("celery_configured", queues=[q.name for q in sender.conf.task_queues])
