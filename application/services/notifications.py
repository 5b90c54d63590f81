"""
Best-effort notification dispatch.
"""
from __future__ import annotations

from typing import Optional

from application.ports.notifier import Notifier
from core.logging_config import get_logger
from domain.payment.events import PaymentEvent


logger = get_logger(__name__)


async def notify_safely(notifier: Optional[Notifier], event: PaymentEvent) -> None:
    """Deliver ``event``; failures are logged and never propagate."""
    if notifier is None:
        return
    try:
        await notifier.notify(event.name, event.to_payload())
    except Exception as exc:
        logger.warning(
            "notifier_failed",
            notification_event=event.name,
            payment_id=event.payment_id,
            error=str(exc),
        )
