"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Mapping, Protocol, runtime_checkable

from application.dtos.payments import (
    NormalizedEvent,
    ParsedCallback,
    PaymentIntent,
    RefundOutcome,
    RefundRetryPolicy,
)
from domain.payment.entity import Payment, ProviderKind


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for one payment rail.

    ``parse_callback`` must be pure: no I/O and no exceptions, rejected
    payloads come back as ``ParseError``.
    """

    provider: ProviderKind
    retry_policy: RefundRetryPolicy

    async def create_payment(self, payment: Payment) -> PaymentIntent: ...

    def parse_callback(self, headers: Mapping[str, str], body: bytes) -> ParsedCallback: ...

    async def refund(self, payment: Payment, reason: str) -> RefundOutcome: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class CapturingGateway(Protocol):
    """Rails whose approved orders must be captured before money moves (PayPal)."""

    async def capture_order(self, payment: Payment) -> NormalizedEvent: ...
