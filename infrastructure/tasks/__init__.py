"""Celery task infrastructure package.

Importing this module wires the configured Celery app together with the
payment task module so ``celery -A infrastructure.tasks worker`` finds both.
"""
from .config.celery import celery_app
from . import payment_tasks  # noqa: F401  (registers tasks)

app = celery_app

__all__ = ["celery_app", "app"]
