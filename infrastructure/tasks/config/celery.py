"""Celery application configuration"""
from __future__ import annotations

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import get_logger


# Task modules listed here are imported by workers at startup.
CELERY_IMPORTS = (
    "infrastructure.tasks.payment_tasks",
)


celery_app = Celery("payment_settlement")

celery_app.conf.update(
    broker_url=settings.celery.broker_url,
    result_backend=settings.celery.result_backend,
    # JSON keeps payloads interoperable and avoids arbitrary code execution.
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Acknowledge after the refund finished so a lost worker re-delivers it.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_default_retry_delay=30,
    task_queues=(
        Queue("payments"),
        Queue("default"),
    ),
    task_routes={
        "payments.*": {"queue": "payments"},
    },
    imports=CELERY_IMPORTS,
)

if settings.celery_always_eager:
    celery_app.conf.task_always_eager = True
    celery_app.conf.task_eager_propagates = True


logger = get_logger(__name__)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker=sender.conf.broker_url,
        result_backend=sender.conf.result_backend,
        always_eager=bool(sender.conf.task_always_eager),
    )
