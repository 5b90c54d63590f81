"""
Payment domain events.

Dataclass events record important payment lifecycle facts for downstream handling
(notifications, audit). Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional
import uuid


@dataclass
class PaymentEvent:
    name: ClassVar[str] = "payment.event"

    payment_id: str
    provider: str
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        payload = {}
        for key, value in asdict(self).items():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            elif value is not None and not isinstance(value, (str, int, float, bool, dict, list)):
                value = str(value)
            payload[key] = value
        return payload


@dataclass
class PaymentCompleted(PaymentEvent):
    name: ClassVar[str] = "payment.completed"

    payment_type: str = ""
    user_id: Optional[str] = None
    amount: str = ""
    currency: str = ""
    order_id: Optional[str] = None
    tx_reference: Optional[str] = None


@dataclass
class PaymentFailed(PaymentEvent):
    name: ClassVar[str] = "payment.failed"

    reason: Optional[str] = None


@dataclass
class PaymentRefunded(PaymentEvent):
    name: ClassVar[str] = "payment.refunded"

    outcome: str = ""
    status: str = ""
    reason: Optional[str] = None
    order_id: Optional[str] = None
    message: Optional[str] = None


@dataclass
class AmountMismatchDetected(PaymentEvent):
    name: ClassVar[str] = "security.amount_mismatch"

    expected: str = ""
    received: str = ""


@dataclass
class PostProcessingFailed(PaymentEvent):
    name: ClassVar[str] = "payment.post_processing_failed"

    error: str = ""
