"""
PayPal Orders v2 adapter over plain httpx.

Notes:
- Every call obtains a fresh OAuth2 client-credentials token; tokens are not
  cached across requests.
- Buyer approval moves no money: ``capture_order`` captures an approved
  order and only a ``COMPLETED`` capture settles the payment. The capture id
  becomes ``tx_reference``, which refunds target.
- Refunds hit the capture-refund endpoint exactly once. A non-2xx response or
  a status other than ``COMPLETED`` is a definitive rejection.
- Webhook signature verification needs a round trip to PayPal and therefore
  cannot run inside the pure ``parse_callback``; restrict the endpoint with
  ``PAYMENT__WEBHOOK__IP_ALLOWLIST`` instead.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
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
from core.settings import PaymentSettings, payment_settings
from domain.payment.entity import Payment, ProviderKind
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    ProviderRejectedError,
    ProviderUnavailableError,
)


CAPTURE_FAILED_STATUSES = frozenset({"DECLINED", "FAILED"})


def _first_unit(resource: dict) -> Optional[dict]:
    units = resource.get("purchase_units")
    if isinstance(units, list) and units and isinstance(units[0], dict):
        return units[0]
    return None


def _first_capture(order: dict) -> Optional[dict]:
    unit = _first_unit(order) or {}
    payments = unit.get("payments")
    captures = payments.get("captures") if isinstance(payments, dict) else None
    if isinstance(captures, list) and captures and isinstance(captures[0], dict):
        return captures[0]
    return None


class PayPalClient(BasePaymentClient):
    provider = ProviderKind.PAYPAL
    retry_policy = RefundRetryPolicy(max_attempts=1)

    def __init__(self, settings: Optional[PaymentSettings] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        settings = settings or payment_settings
        super().__init__(
            timeouts=settings.timeouts.model_dump(),
            retry={"max": settings.retry.max, "base": settings.retry.base_backoff},
            transport=transport,
        )
        self._cfg = settings.paypal
        self._frontend_url = settings.frontend_url.rstrip("/")

    @property
    def base_url(self) -> str:
        return self._cfg.base_url

    async def _access_token(self) -> str:
        self._require(client_id=self._cfg.client_id, client_secret=self._cfg.client_secret)

        async def _call() -> httpx.Response:
            async with self.client() as c:
                return await c.post(
                    f"{self.base_url}/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self._cfg.client_id, self._cfg.client_secret),
                    headers={"Accept": "application/json"},
                )

        try:
            resp = await self._retry(_call)
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(f"PayPal auth failed: {e}", provider=self.provider.value) from e
        body = self._response_body(resp)
        token = body.get("access_token") if isinstance(body, dict) else None
        if not resp.is_success or not token:
            raise ProviderUnavailableError(
                f"PayPal auth failed with HTTP {resp.status_code}",
                provider=self.provider.value,
                details={"response": body},
            )
        return token

    async def create_payment(self, payment: Payment) -> PaymentIntent:  # type: ignore[override]
        amount = payment.amount_original.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        token = await self._access_token()
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": payment.id,
                    "custom_id": payment.id,
                    "description": str(payment.metadata.get("description") or f"Payment {payment.id}")[:127],
                    "amount": {"currency_code": self._cfg.currency, "value": f"{amount:.2f}"},
                }
            ],
            "application_context": {
                "return_url": payment.metadata.get("return_url") or f"{self._frontend_url}/payment/success",
                "cancel_url": payment.metadata.get("cancel_url") or f"{self._frontend_url}/payment/cancel",
                "user_action": "PAY_NOW",
            },
        }
        self._log("paypal_create_request", payment_id=payment.id, amount=str(amount))
        try:
            async with self.client() as c:
                resp = await c.post(
                    f"{self.base_url}/v2/checkout/orders",
                    json=body,
                    headers={"Authorization": f"Bearer {token}", "PayPal-Request-Id": payment.id},
                )
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(str(e), provider=self.provider.value) from e

        data = self._response_body(resp)
        if resp.status_code >= 500 or resp.status_code == 401:
            raise ProviderUnavailableError(
                f"PayPal returned HTTP {resp.status_code}", provider=self.provider.value, details={"response": data}
            )
        if not resp.is_success or not isinstance(data, dict) or not data.get("id"):
            raise ProviderRejectedError(
                (data.get("message") if isinstance(data, dict) else None) or "PayPal rejected the order",
                provider=self.provider.value,
                provider_code=(data.get("name") if isinstance(data, dict) else None),
                details={"response": data},
            )
        approve = next((link.get("href") for link in data.get("links", []) if link.get("rel") == "approve"), None)
        return PaymentIntent(
            provider=self.provider,
            external_payment_id=str(data["id"]),
            checkout_url=approve,
            amount_normalized=amount,
            settlement_currency=self._cfg.currency,
            raw=data,
        )

    def parse_callback(self, headers: Mapping[str, str], body: bytes) -> ParsedCallback:  # type: ignore[override]
        payload = self._load_json(body)
        if payload is None:
            return ParseError(reason="invalid_json")
        event_type = payload.get("event_type")
        resource = payload.get("resource")
        if not event_type or not isinstance(resource, dict):
            return ParseError(reason="missing_event", detail="event_type and resource are required")

        is_capture = str(event_type).startswith("PAYMENT.CAPTURE.")
        supplementary = resource.get("supplementary_data")
        related = supplementary.get("related_ids") if isinstance(supplementary, dict) else None
        if not isinstance(related, dict):
            related = {}
        paypal_order_id = related.get("order_id") if is_capture else resource.get("id")
        if not paypal_order_id:
            paypal_order_id = resource.get("id")

        custom_id = resource.get("custom_id")
        first_unit = _first_unit(resource)
        if not custom_id and first_unit:
            custom_id = first_unit.get("custom_id") or first_unit.get("reference_id")
        if not custom_id and not paypal_order_id:
            return ParseError(reason="missing_reference")

        outcome = EventOutcome(self._map_status(str(event_type)))
        return NormalizedEvent(
            provider=self.provider,
            outcome=outcome,
            external_order_id=str(custom_id) if custom_id else None,
            provider_payment_id=str(paypal_order_id) if paypal_order_id else None,
            tx_reference=str(resource["id"]) if is_capture and resource.get("id") else None,
            raw_status=str(event_type),
            reason=str(resource.get("status")) if outcome == EventOutcome.FAILED else None,
            raw=payload,
        )

    async def capture_order(self, payment: Payment) -> NormalizedEvent:
        """Capture an approved order; the result is settled like a webhook event.

        Raises ``ProviderRejectedError`` when PayPal refuses the capture (order
        not approved, instrument declined) and ``ProviderUnavailableError`` on
        network, auth or 5xx failures. Neither settles the payment, so the buyer
        can retry.
        """
        order_id = payment.provider_payment_id
        if not order_id:
            raise ProviderRejectedError(
                "No PayPal order id recorded", provider=self.provider.value, details={"payment_id": payment.id}
            )
        token = await self._access_token()
        self._log("paypal_capture_request", payment_id=payment.id, order_id=order_id)
        try:
            async with self.client() as c:
                resp = await c.post(
                    f"{self.base_url}/v2/checkout/orders/{order_id}/capture",
                    json={},
                    headers={"Authorization": f"Bearer {token}", "PayPal-Request-Id": f"capture-{payment.id}"},
                )
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(str(e), provider=self.provider.value) from e

        data: Any = self._response_body(resp)
        if resp.status_code >= 500 or resp.status_code == 401:
            raise ProviderUnavailableError(
                f"PayPal returned HTTP {resp.status_code}", provider=self.provider.value, details={"response": data}
            )
        if not resp.is_success or not isinstance(data, dict):
            issues = data.get("details") if isinstance(data, dict) else None
            issue = issues[0].get("issue") if isinstance(issues, list) and issues and isinstance(issues[0], dict) else None
            raise ProviderRejectedError(
                (data.get("message") if isinstance(data, dict) else None) or "PayPal refused the capture",
                provider=self.provider.value,
                provider_code=issue or (data.get("name") if isinstance(data, dict) else None),
                details={"response": data},
            )

        capture = _first_capture(data) or {}
        status = str(capture.get("status") or data.get("status") or "")
        if status == "COMPLETED":
            outcome = EventOutcome.COMPLETED
        elif status in CAPTURE_FAILED_STATUSES:
            outcome = EventOutcome.FAILED
        else:
            outcome = EventOutcome.PENDING
        self._log("paypal_capture_response", payment_id=payment.id, status=status, capture_id=capture.get("id"))
        return NormalizedEvent(
            provider=self.provider,
            outcome=outcome,
            external_order_id=payment.id,
            provider_payment_id=order_id,
            tx_reference=str(capture["id"]) if capture.get("id") else None,
            raw_status=f"CAPTURE.{status or 'UNKNOWN'}",
            reason=status if outcome == EventOutcome.FAILED else None,
            raw=data,
        )

    async def refund(self, payment: Payment, reason: str) -> RefundOutcome:  # type: ignore[override]
        capture_id = payment.tx_reference or payment.provider_payment_id
        if not capture_id:
            return RefundOutcome(kind=RefundOutcomeKind.FAILED, message="No PayPal capture id recorded")
        try:
            token = await self._access_token()
        except ProviderUnavailableError as e:
            return RefundOutcome(kind=RefundOutcomeKind.FAILED, message=e.message, provider_response=e.details)

        try:
            async with self.client() as c:
                resp = await c.post(
                    f"{self.base_url}/v2/payments/captures/{capture_id}/refund",
                    json={"note_to_payer": self._cfg.refund_note},
                    headers={"Authorization": f"Bearer {token}", "PayPal-Request-Id": f"refund-{payment.id}"},
                )
        except httpx.HTTPError as e:
            self._log("paypal_refund_network_error", payment_id=payment.id, error=str(e))
            return RefundOutcome(kind=RefundOutcomeKind.FAILED, message=f"Network error: {e}")

        data: Any = self._response_body(resp)
        status = data.get("status") if isinstance(data, dict) else None
        self._log("paypal_refund_response", payment_id=payment.id, status_code=resp.status_code, status=status)
        if resp.is_success and status == "COMPLETED":
            return RefundOutcome(
                kind=RefundOutcomeKind.SUCCEEDED,
                message="Refund completed on PayPal",
                provider_response=data,
                status_code=resp.status_code,
            )
        return RefundOutcome(
            kind=RefundOutcomeKind.FAILED,
            message=f"PayPal refund not completed (status={status or resp.status_code})",
            provider_response=data,
            status_code=resp.status_code,
        )
