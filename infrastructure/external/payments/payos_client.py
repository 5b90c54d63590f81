"""
PayOS adapter (VND bank-transfer/QR payments).

- Payment requests are signed with HMAC-SHA256 over the sorted
  ``amount&cancelUrl&description&orderCode&returnUrl`` string.
- Webhooks are verified with HMAC-SHA256 of the raw body using the checksum key.
- "Refund" is the payment-request cancel endpoint; anything short of a
  confirmed ``code == "00"`` is handed to an operator.
"""
from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import httpx

from application.dtos.payments import (
    EventOutcome,
    NormalizedEvent,
    ParsedCallback,
    ParseError,
    PaymentIntent,
    RefundOutcome,
    RefundOutcomeKind,
    RefundRetryPolicy,
)
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.payment.entity import Payment, ProviderKind
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    ProviderRejectedError,
    ProviderUnavailableError,
)


logger = get_logger(__name__)

SIGNATURE_HEADERS = ("x-payos-signature", "x-payos-sign", "signature", "x-signature")
SUCCESS_CODES = ("00", 0)
MANUAL_MESSAGE = "Refund flagged; process manually via PayOS Dashboard"


def payos_order_code(payment_id: str) -> int:
    """Derive the integer orderCode PayOS requires from a platform UUID."""
    return abs(int(payment_id.replace("-", "")[:8], 16) % 1_000_000_000)


def sign_payment_request(
    checksum_key: str,
    *,
    amount: int,
    cancel_url: str,
    description: str,
    order_code: int,
    return_url: str,
) -> str:
    data = (
        f"amount={amount}&cancelUrl={cancel_url}&description={description}"
        f"&orderCode={order_code}&returnUrl={return_url}"
    )
    return hmac.new(checksum_key.encode(), data.encode(), hashlib.sha256).hexdigest()


def _opt_str(value) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def sign_webhook_body(checksum_key: str, body: bytes) -> str:
    return hmac.new(checksum_key.encode(), body, hashlib.sha256).hexdigest()


class PayOSClient(BasePaymentClient):
    provider = ProviderKind.PAYOS

    def __init__(self, settings: Optional[PaymentSettings] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = settings or payment_settings
        super().__init__(
            timeouts=settings.timeouts.model_dump(),
            retry={"max": settings.retry.max, "base": settings.retry.base_backoff},
            transport=transport,
        )
        self._cfg = settings.payos
        self._frontend_url = settings.frontend_url.rstrip("/")
        self._webhook_url = settings.webhook_url(self.provider.value)
        self.retry_policy = RefundRetryPolicy(
            max_attempts=settings.refund.max_attempts,
            degrade_to_manual=True,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "x-client-id": self._cfg.client_id or "",
            "x-api-key": self._cfg.api_key or "",
            "Content-Type": "application/json",
        }

    async def create_payment(self, payment: Payment) -> PaymentIntent:  # type: ignore[override]
        self._require(
            client_id=self._cfg.client_id,
            api_key=self._cfg.api_key,
            checksum_key=self._cfg.checksum_key,
        )
        amount = int(payment.amount_original)
        if amount < self._cfg.min_amount or amount > self._cfg.max_amount:
            raise ProviderRejectedError(
                f"Amount must be between {self._cfg.min_amount} and {self._cfg.max_amount} VND",
                provider=self.provider.value,
                details={"amount": amount},
            )

        order_code = payos_order_code(payment.id)
        # PayOS truncates descriptions beyond 25 characters
        description = str(payment.metadata.get("description") or f"PAY{order_code}")[:25]
        return_url = payment.metadata.get("return_url") or f"{self._frontend_url}/payment/success"
        cancel_url = payment.metadata.get("cancel_url") or f"{self._frontend_url}/payment/cancel"
        body = {
            "orderCode": order_code,
            "amount": amount,
            "description": description,
            "returnUrl": return_url,
            "cancelUrl": cancel_url,
            "webhookUrl": self._webhook_url,
            "signature": sign_payment_request(
                self._cfg.checksum_key,
                amount=amount,
                cancel_url=cancel_url,
                description=description,
                order_code=order_code,
                return_url=return_url,
            ),
        }

        self._log("payos_create_request", payment_id=payment.id, order_code=order_code, amount=amount)
        try:
            async with self.client() as c:
                resp = await c.post(
                    f"{self._cfg.base_url}/v2/payment-requests", json=body, headers=self._headers()
                )
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(str(e), provider=self.provider.value) from e

        payload = self._response_body(resp)
        if resp.status_code >= 500 or resp.status_code in (401, 403):
            raise ProviderUnavailableError(
                f"PayOS returned HTTP {resp.status_code}",
                provider=self.provider.value,
                details={"response": payload},
            )
        code = payload.get("code") if isinstance(payload, dict) else None
        if not resp.is_success or code not in SUCCESS_CODES:
            raise ProviderRejectedError(
                (payload.get("desc") if isinstance(payload, dict) else None) or "PayOS rejected the payment request",
                provider=self.provider.value,
                provider_code=str(code),
                details={"response": payload},
            )

        data = payload.get("data") or {}
        expires_at = None
        if data.get("expiredAt"):
            expires_at = datetime.fromtimestamp(int(data["expiredAt"]), tz=timezone.utc)
        return PaymentIntent(
            provider=self.provider,
            external_payment_id=str(order_code),
            checkout_url=data.get("checkoutUrl"),
            qr_code=data.get("qrCode"),
            amount_normalized=Decimal(amount),
            settlement_currency="VND",
            expires_at=expires_at,
            raw=data,
        )

    def parse_callback(self, headers: Mapping[str, str], body: bytes) -> ParsedCallback:  # type: ignore[override]
        if not self._cfg.checksum_key:
            return ParseError(reason="not_configured", detail="PayOS checksum key missing", status_code=500)

        lowered = self._lower_headers(headers)
        signature = next((lowered[h] for h in SIGNATURE_HEADERS if lowered.get(h)), None)
        if not signature:
            return ParseError(reason="missing_signature")
        if signature.lower().startswith("sha256="):
            signature = signature[len("sha256="):]
        expected = sign_webhook_body(self._cfg.checksum_key, body or b"")
        if not hmac.compare_digest(expected.encode(), signature.strip().lower().encode()):
            return ParseError(reason="invalid_signature")

        payload = self._load_json(body)
        if payload is None:
            return ParseError(reason="invalid_json")

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        order_code = data.get("orderCode", payload.get("orderCode"))
        if order_code in (None, ""):
            return ParseError(reason="missing_order_code")

        amount: Optional[Decimal] = None
        if data.get("amount") is not None:
            try:
                amount = Decimal(str(data["amount"]))
            except InvalidOperation:
                return ParseError(reason="invalid_amount", detail=str(data["amount"]))

        code = payload.get("code")
        outcome = EventOutcome(self._map_status(str(code) if code is not None else None))
        if outcome == EventOutcome.PENDING:
            # anything other than "00" is a terminal failure for a payment request
            outcome = EventOutcome.FAILED
        return NormalizedEvent(
            provider=self.provider,
            outcome=outcome,
            provider_payment_id=str(order_code),
            tx_reference=_opt_str(data.get("reference") or data.get("paymentLinkId")),
            amount=amount,
            raw_status=str(code),
            reason=None if outcome == EventOutcome.COMPLETED else _opt_str(payload.get("desc") or data.get("desc")),
            raw=payload,
        )

    async def refund(self, payment: Payment, reason: str) -> RefundOutcome:  # type: ignore[override]
        if not (self._cfg.client_id and self._cfg.api_key):
            return RefundOutcome(kind=RefundOutcomeKind.FAILED, message="PayOS credentials are not configured")
        order_code = payment.provider_payment_id or str(payos_order_code(payment.id))
        url = f"{self._cfg.base_url}/v2/payment-requests/{order_code}/cancel"

        try:
            async with self.client() as c:
                resp = await c.post(
                    url,
                    json={"cancellationReason": self._cfg.cancellation_reason},
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            self._log("payos_refund_network_error", payment_id=payment.id, error=str(e))
            return RefundOutcome(kind=RefundOutcomeKind.RETRYABLE, message=f"Network error: {e}")

        payload: Any = self._response_body(resp)
        self._log("payos_refund_response", payment_id=payment.id, status_code=resp.status_code)
        if resp.status_code >= 500:
            return RefundOutcome(
                kind=RefundOutcomeKind.RETRYABLE,
                message=f"PayOS returned HTTP {resp.status_code}",
                provider_response=payload,
                status_code=resp.status_code,
            )
        code = payload.get("code") if isinstance(payload, dict) else None
        if resp.is_success and code in SUCCESS_CODES:
            return RefundOutcome(
                kind=RefundOutcomeKind.SUCCEEDED,
                message="Payment request cancelled on PayOS",
                provider_response=payload,
                status_code=resp.status_code,
            )
        # business rejection: retrying will not change it
        return RefundOutcome(
            kind=RefundOutcomeKind.MANUAL_ACTION,
            message=MANUAL_MESSAGE,
            provider_response=payload,
            status_code=resp.status_code,
        )
