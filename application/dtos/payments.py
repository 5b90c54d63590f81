"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.types import condecimal

from domain.payment.entity import PaymentStatus, PaymentType, ProviderKind

# Currencies accepted at checkout
SUPPORTED_CURRENCIES = {"VND", "USD", "USDT"}

# Currencies each rail can charge in
CURRENCIES_BY_PROVIDER = {
    ProviderKind.CRYPTO_USDT: {"VND", "USD", "USDT"},
    ProviderKind.PAYPAL: {"USD"},
    ProviderKind.PAYOS: {"VND"},
    ProviderKind.BALANCE: {"VND"},
}


class CreatePaymentCommand(BaseModel):
    provider: ProviderKind
    payment_type: PaymentType = PaymentType.ORDER
    user_id: str = Field(min_length=1)
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    currency: str = Field(default="VND")
    order_id: Optional[str] = None
    description: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        u = (v or "").upper()
        if u not in SUPPORTED_CURRENCIES:
            raise ValueError("unsupported currency")
        return u

    @model_validator(mode="after")
    def _check_combination(self):
        if self.currency not in CURRENCIES_BY_PROVIDER[self.provider]:
            raise ValueError(f"currency '{self.currency}' not supported by provider '{self.provider.value}'")
        if self.payment_type == PaymentType.ORDER and not self.order_id:
            raise ValueError("order_id is required for order payments")
        if self.payment_type == PaymentType.DEPOSIT and self.provider == ProviderKind.BALANCE:
            raise ValueError("balance cannot be used to fund a deposit")
        return self


class PaymentIntent(BaseModel):
    """What the provider handed back for a freshly created payment."""

    provider: ProviderKind
    external_payment_id: Optional[str] = None
    checkout_url: Optional[str] = None
    payout_address: Optional[str] = None
    qr_code: Optional[str] = None
    amount_normalized: Optional[Decimal] = None
    settlement_currency: Optional[str] = None
    expires_at: Optional[datetime] = None
    raw: Optional[dict[str, Any]] = None


class EventOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"


class NormalizedEvent(BaseModel):
    """Provider callback reduced to the fields settlement cares about."""

    provider: ProviderKind
    outcome: EventOutcome
    # platform payment id as echoed back by the provider
    external_order_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    tx_reference: Optional[str] = None
    amount: Optional[Decimal] = None
    raw_status: Optional[str] = None
    reason: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ParseError(BaseModel):
    """Returned (never raised) by parse_callback for rejected payloads."""

    reason: str
    detail: Optional[str] = None
    # 500 when the rejection is our misconfiguration and the provider should retry
    status_code: int = 400


ParsedCallback = Union[NormalizedEvent, ParseError]


class RefundOutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    MANUAL_ACTION = "manual_action"
    RETRYABLE = "retryable"
    FAILED = "failed"


class RefundOutcome(BaseModel):
    kind: RefundOutcomeKind
    message: str = ""
    provider_response: Optional[Any] = None
    status_code: Optional[int] = None


class RefundRetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=1, ge=1)
    # exhausting retries yields manual_action instead of failed
    degrade_to_manual: bool = False


class RefundCommand(BaseModel):
    payment_id: str = Field(min_length=1)
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundResult(BaseModel):
    payment_id: str
    success: bool
    outcome: RefundOutcomeKind
    status: PaymentStatus
    message: str
    attempts: int = 0
    provider_response: Optional[Any] = None


class SettlementResult(BaseModel):
    status_code: int
    message: str
    payment_id: Optional[str] = None
    outcome: Optional[EventOutcome] = None
    applied: bool = False


class PaymentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: ProviderKind
    payment_type: PaymentType
    status: PaymentStatus
    user_id: str
    order_id: Optional[str] = None
    amount_original: Decimal
    currency_original: str
    amount_normalized: Optional[Decimal] = None
    settlement_currency: Optional[str] = None
    provider_payment_id: Optional[str] = None
    tx_reference: Optional[str] = None
    checkout_url: Optional[str] = None
    failure_reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
