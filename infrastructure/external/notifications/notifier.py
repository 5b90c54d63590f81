"""
Notifier implementations.

Delivery is best effort: callers wrap ``notify`` with
``application.services.notifications.notify_safely``, so implementations are
free to raise on transport errors.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from application.ports.notifier import Notifier
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings


logger = get_logger(__name__)

# Discord embed colours per event name
EVENT_COLORS = {
    "payment.completed": 0x2ECC71,
    "payment.failed": 0xE74C3C,
    "payment.refunded": 0xF39C12,
    "payment.post_processing_failed": 0xE67E22,
    "security.amount_mismatch": 0xFF0000,
}
EVENT_TITLES = {
    "payment.completed": "Payment completed",
    "payment.failed": "Payment failed",
    "payment.refunded": "Payment refunded",
    "payment.post_processing_failed": "Post-processing failed",
    "security.amount_mismatch": "SECURITY ALERT: amount mismatch",
}


class LoggingNotifier:
    """Fallback channel used when no webhook is configured."""

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("notification", notification_event=event, payload=payload)


class DiscordNotifier:
    def __init__(
        self,
        webhook_url: str,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout
        self._transport = transport

    def _embed(self, event: str, payload: dict[str, Any]) -> dict[str, Any]:
        fields = [
            {"name": key, "value": str(value)[:1024], "inline": True}
            for key, value in payload.items()
            if value not in (None, "") and key not in {"event_id", "occurred_at"}
        ]
        return {
            "title": EVENT_TITLES.get(event, event),
            "color": EVENT_COLORS.get(event, 0x95A5A6),
            "fields": fields[:25],
            "timestamp": payload.get("occurred_at") or datetime.now(timezone.utc).isoformat(),
            "footer": {"text": event},
        }

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(self._webhook_url, json={"embeds": [self._embed(event, payload)]})
            resp.raise_for_status()


def build_notifier(settings: Optional[PaymentSettings] = None) -> Notifier:
    settings = settings or payment_settings
    if settings.notifier.discord_webhook_url:
        return DiscordNotifier(settings.notifier.discord_webhook_url, timeout=settings.notifier.timeout)
    return LoggingNotifier()
