"""
Celery tasks for refunds executed outside the request cycle.

Each run gets its own event loop via ``asyncio.run``, so the task builds a
private engine and adapter registry and disposes both before returning.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from application.services.refund_service import RefundOrchestrator
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import BusinessException
from infrastructure.database import build_engine, build_session_factory
from infrastructure.external.notifications import build_notifier
from infrastructure.external.payments import build_adapter_registry
from infrastructure.tasks.config.celery import celery_app
from infrastructure.tasks.utils.base_task import BaseTask
from infrastructure.unit_of_work import make_uow_factory


logger = get_logger(__name__)


async def run_refund(payment_id: str, reason: Optional[str] = None) -> dict:
    engine = build_engine()
    uow_factory = make_uow_factory(build_session_factory(engine))
    registry = build_adapter_registry(payment_settings, uow_factory=uow_factory)
    try:
        orchestrator = RefundOrchestrator(
            uow_factory,
            registry.get,
            build_notifier(payment_settings),
            settings=payment_settings.refund,
        )
        result = await orchestrator.refund(payment_id, reason)
        return result.model_dump(mode="json")
    finally:
        await registry.aclose()
        await engine.dispose()


@celery_app.task(name="payments.process_refund", bind=True, base=BaseTask, max_retries=3, default_retry_delay=30)
def process_refund(self, payment_id: str, reason: Optional[str] = None):
    try:
        result = asyncio.run(run_refund(payment_id, reason))
    except BusinessException as exc:
        # not found / wrong state: retrying cannot change the answer
        logger.warning("refund_task_rejected", payment_id=payment_id, **exc.to_log_fields())
        return {"payment_id": payment_id, "success": False, "error": exc.message, "code": int(exc.code)}
    except Exception as exc:
        logger.error("refund_task_error", payment_id=payment_id, error=str(exc))
        raise self.retry(exc=exc)
    logger.info(
        "refund_task_finished",
        payment_id=payment_id,
        success=result["success"],
        outcome=result["outcome"],
    )
    return result
