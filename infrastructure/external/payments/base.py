"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers should subclass and implement provider-specific logic.
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, Callable, Mapping, Optional

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from application.dtos.payments import (
    ParsedCallback,
    ParseError,
    PaymentIntent,
    RefundOutcome,
    RefundRetryPolicy,
)
from application.ports.payment_gateway import PaymentGateway
from domain.payment.entity import Payment, ProviderKind
from infrastructure.external.payments.exceptions import ProviderNotConfiguredError
from shared.codes.payment_codes import map_provider_status


logger = get_logger(__name__)


class BasePaymentClient(PaymentGateway):
    provider: ProviderKind
    retry_policy: RefundRetryPolicy = RefundRetryPolicy()

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 3.0, "read": 10.0, "write": 10.0, "total": 15.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        """Retry an idempotent call on transport errors only."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    # Default implementations raise to force override where needed
    async def create_payment(self, payment: Payment) -> PaymentIntent:  # type: ignore[override]
        raise NotImplementedError

    def parse_callback(self, headers: Mapping[str, str], body: bytes) -> ParsedCallback:  # type: ignore[override]
        return ParseError(reason="callbacks_not_supported", detail=f"{self.provider.value} does not accept callbacks")

    async def refund(self, payment: Payment, reason: str) -> RefundOutcome:  # type: ignore[override]
        raise NotImplementedError

    # Helpers
    def _map_status(self, provider_status: Optional[str]) -> str:
        return map_provider_status(self.provider.value, provider_status)

    def _require(self, **values: Optional[str]) -> None:
        missing = [name for name, value in values.items() if not value]
        if missing:
            raise ProviderNotConfiguredError(self.provider.value, missing)

    @staticmethod
    def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
        return {str(k).lower(): str(v) for k, v in (headers or {}).items()}

    @staticmethod
    def _load_json(body: bytes) -> Optional[dict[str, Any]]:
        try:
            data = json.loads(body or b"")
        except (ValueError, UnicodeDecodeError):
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _response_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider.value,
            **kwargs,
        )
