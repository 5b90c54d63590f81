"""Common base task for Celery jobs"""
from __future__ import annotations

import structlog
from celery import Task

from core.logging_config import get_logger

logger = get_logger(__name__)


class BaseTask(Task):
    """Binds task context into structlog and logs the task lifecycle.

    Every log line emitted while the task body runs (adapters, orchestrator,
    ledger) carries ``task_id`` and, when present, ``payment_id``.
    """

    def __call__(self, *args, **kwargs):
        context = {"task_id": self.request.id, "task_name": self.name}
        payment_id = kwargs.get("payment_id") or (args[0] if args else None)
        if payment_id:
            context["payment_id"] = payment_id
        with structlog.contextvars.bound_contextvars(**context):
            return super().__call__(*args, **kwargs)

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            args=args,
            error=str(exc),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.warning(
            "celery_task_retry",
            task_id=task_id,
            task_name=self.name,
            retries=self.request.retries,
            error=str(exc),
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        outcome = retval.get("outcome") if isinstance(retval, dict) else None
        logger.info("celery_task_success", task_id=task_id, task_name=self.name, outcome=outcome)
        super().on_success(retval, task_id, args, kwargs)
