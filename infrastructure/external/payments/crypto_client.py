"""
USDT (TRC20) gateway adapter for FPayment.

The gateway has no refund API: refunds always come back as manual action and
an operator sends the funds back from the merchant wallet.
Callback amounts are net of gateway fees and are not compared against the
expected amount.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional

import httpx

from application.dtos.payments import (
    EventOutcome,
    NormalizedEvent,
    ParsedCallback,
    ParseError,
    PaymentIntent,
    RefundOutcome,
    RefundOutcomeKind,
)
from core.settings import CryptoSettings, PaymentSettings, payment_settings
from domain.payment.entity import Payment, ProviderKind
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    ProviderRejectedError,
    ProviderUnavailableError,
)


def to_usdt(amount: Decimal, currency: str, cfg: CryptoSettings) -> Decimal:
    """Convert a fiat amount into USDT rounded to cents."""
    currency = currency.upper()
    if currency == "USDT":
        value = amount
    elif currency == "VND":
        value = amount / cfg.vnd_per_usdt
    elif currency == "USD":
        value = amount / cfg.usd_per_usdt
    else:
        raise ProviderRejectedError(
            f"Cannot convert {currency} to USDT", provider=ProviderKind.CRYPTO_USDT.value
        )
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class CryptoUSDTClient(BasePaymentClient):
    provider = ProviderKind.CRYPTO_USDT

    def __init__(self, settings: Optional[PaymentSettings] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = settings or payment_settings
        super().__init__(
            timeouts=settings.timeouts.model_dump(),
            retry={"max": settings.retry.max, "base": settings.retry.base_backoff},
            transport=transport,
        )
        self._cfg = settings.crypto
        self._callback_url = settings.webhook_url(self.provider.value)

    async def create_payment(self, payment: Payment) -> PaymentIntent:  # type: ignore[override]
        self._require(api_key=self._cfg.api_key, merchant_id=self._cfg.merchant_id)
        amount_usdt = to_usdt(payment.amount_original, payment.currency_original, self._cfg)
        if amount_usdt < self._cfg.min_amount_usdt:
            raise ProviderRejectedError(
                f"Minimum amount is {self._cfg.min_amount_usdt} USDT",
                provider=self.provider.value,
                details={"amount_usdt": str(amount_usdt)},
            )

        body = {
            "merchant_id": self._cfg.merchant_id,
            "order_id": payment.id,
            "amount": float(amount_usdt),
            "currency": "USDT",
            "network": self._cfg.network,
            "callback_url": self._callback_url,
            "description": str(payment.metadata.get("description") or f"Payment {payment.id}"),
            "expire_time": self._cfg.expire_seconds,
        }
        self._log("crypto_create_request", payment_id=payment.id, amount_usdt=str(amount_usdt))
        try:
            async with self.client() as c:
                resp = await c.post(
                    f"{self._cfg.base_url}/api/v1/payment/create",
                    json=body,
                    headers={"Authorization": f"Bearer {self._cfg.api_key}"},
                )
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(str(e), provider=self.provider.value) from e

        result = self._response_body(resp)
        if resp.status_code >= 500 or resp.status_code in (401, 403):
            raise ProviderUnavailableError(
                f"Gateway returned HTTP {resp.status_code}", provider=self.provider.value, details={"response": result}
            )
        if not resp.is_success or not isinstance(result, dict) or result.get("status") != 1:
            raise ProviderRejectedError(
                (result.get("message") if isinstance(result, dict) else None) or "Gateway rejected the payment",
                provider=self.provider.value,
                details={"response": result},
            )

        data = result.get("data") or {}
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self._cfg.expire_seconds)
        if data.get("expire_at"):
            try:
                expires_at = datetime.fromisoformat(str(data["expire_at"]).replace("Z", "+00:00"))
            except ValueError:
                pass
        return PaymentIntent(
            provider=self.provider,
            external_payment_id=str(data["payment_id"]) if data.get("payment_id") else None,
            payout_address=data.get("address"),
            qr_code=data.get("qr_code"),
            amount_normalized=Decimal(str(data.get("amount_usdt", amount_usdt))),
            settlement_currency="USDT",
            expires_at=expires_at,
            raw=data,
        )

    def parse_callback(self, headers: Mapping[str, str], body: bytes) -> ParsedCallback:  # type: ignore[override]
        payload = self._load_json(body)
        if payload is None:
            return ParseError(reason="invalid_json")
        order_id = payload.get("order_id")
        status = payload.get("status")
        if not order_id or not status:
            return ParseError(reason="missing_fields", detail="order_id and status are required")

        outcome = EventOutcome(self._map_status(str(status)))
        return NormalizedEvent(
            provider=self.provider,
            outcome=outcome,
            external_order_id=str(order_id),
            provider_payment_id=str(payload["payment_id"]) if payload.get("payment_id") else None,
            tx_reference=str(payload["txid"]) if payload.get("txid") else None,
            raw_status=str(status),
            reason=str(status) if outcome == EventOutcome.FAILED else None,
            raw=payload,
        )

    async def refund(self, payment: Payment, reason: str) -> RefundOutcome:  # type: ignore[override]
        self._log("crypto_refund_manual", payment_id=payment.id, tx_reference=payment.tx_reference)
        return RefundOutcome(
            kind=RefundOutcomeKind.MANUAL_ACTION,
            message="USDT payments have no refund API; send funds back from the merchant wallet",
            provider_response={"tx_reference": payment.tx_reference, "amount_usdt": str(payment.provider_amount)},
        )
