"""
Refund orchestrator: picks the rail's strategy, retries transient failures
and records a terminal outcome.

Non-balance rails are guarded by a ``completed -> refunding`` claim taken
before the first provider call, so two concurrent requests cannot both reach
the provider. The balance rail relies on the ledger's idempotent procedure.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential

from application.dtos.payments import (
    RefundOutcome,
    RefundOutcomeKind,
    RefundResult,
)
from application.ports.notifier import Notifier
from application.ports.payment_gateway import PaymentGateway
from application.services.notifications import notify_safely
from core.logging_config import get_logger
from core.settings import RefundSettings
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import OrderStatus, Payment, PaymentStatus, ProviderKind
from domain.payment.events import PaymentRefunded, PostProcessingFailed
from domain.payment.exceptions import InvalidPaymentStateException, PaymentNotFoundException


logger = get_logger(__name__)

DEFAULT_REASON = "Requested by customer"


class RefundOrchestrator:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_for: Callable[[ProviderKind], PaymentGateway],
        notifier: Optional[Notifier] = None,
        *,
        settings: Optional[RefundSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway_for = gateway_for
        self._notifier = notifier
        self._cfg = settings or RefundSettings()
        self._sleep = sleep

    async def refund(self, payment_id: str, reason: Optional[str] = None) -> RefundResult:
        reason = (reason or "").strip() or DEFAULT_REASON
        payment = await self._load(payment_id)
        if not payment.is_refundable():
            raise InvalidPaymentStateException(payment.id, payment.status.value, expected=PaymentStatus.COMPLETED.value)

        gateway = self._gateway_for(payment.provider)
        logger.info("refund_started", payment_id=payment.id, provider=payment.provider.value, reason=reason)

        if payment.provider == ProviderKind.BALANCE:
            outcome, attempts = await self._execute(gateway, payment, reason)
            return await self._finish_balance(payment, outcome, attempts, reason)

        await self._claim(payment)
        try:
            outcome, attempts = await self._execute(gateway, payment, reason)
        except asyncio.CancelledError:
            await self._release(payment)
            raise
        return await self._finalize(payment, outcome, attempts, reason)

    async def _load(self, payment_id: str) -> Payment:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.ledger.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    async def _claim(self, payment: Payment) -> None:
        async with self._uow_factory() as uow:
            claimed = await uow.ledger.conditional_update_status(
                payment.id, PaymentStatus.COMPLETED, PaymentStatus.REFUNDING
            )
        if not claimed:
            current = await self._load(payment.id)
            logger.warning("refund_claim_lost", payment_id=payment.id, status=current.status.value)
            raise InvalidPaymentStateException(
                payment.id, current.status.value, expected=PaymentStatus.COMPLETED.value
            )

    async def _release(self, payment: Payment) -> None:
        async with self._uow_factory() as uow:
            await uow.ledger.conditional_update_status(
                payment.id, PaymentStatus.REFUNDING, PaymentStatus.COMPLETED
            )
        logger.info("refund_claim_released", payment_id=payment.id)

    async def _execute(
        self, gateway: PaymentGateway, payment: Payment, reason: str
    ) -> tuple[RefundOutcome, int]:
        policy = gateway.retry_policy
        attempts = 0

        async def _attempt() -> RefundOutcome:
            nonlocal attempts
            attempts += 1
            outcome = await gateway.refund(payment, reason)
            logger.info(
                "refund_attempt",
                payment_id=payment.id,
                provider=payment.provider.value,
                attempt=attempts,
                outcome=outcome.kind.value,
                status_code=outcome.status_code,
            )
            return outcome

        def _exhausted(retry_state) -> RefundOutcome:
            last: RefundOutcome = retry_state.outcome.result()
            if policy.degrade_to_manual:
                return RefundOutcome(
                    kind=RefundOutcomeKind.MANUAL_ACTION,
                    message=f"Refund flagged after {attempts} attempts; process manually via provider dashboard",
                    provider_response=last.provider_response,
                    status_code=last.status_code,
                )
            return RefundOutcome(
                kind=RefundOutcomeKind.FAILED,
                message=last.message or "Provider unavailable",
                provider_response=last.provider_response,
                status_code=last.status_code,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(multiplier=self._cfg.base_backoff, max=self._cfg.max_backoff),
            retry=retry_if_result(lambda o: o.kind == RefundOutcomeKind.RETRYABLE),
            retry_error_callback=_exhausted,
            sleep=self._sleep,
        )
        try:
            outcome = await asyncio.wait_for(retrying(_attempt), timeout=self._cfg.deadline_seconds)
        except asyncio.TimeoutError:
            logger.error("refund_deadline_exceeded", payment_id=payment.id, attempts=attempts)
            outcome = RefundOutcome(kind=RefundOutcomeKind.FAILED, message="Refund deadline exceeded")
        except Exception as exc:
            logger.error("refund_adapter_error", payment_id=payment.id, error=str(exc), exc_info=True)
            outcome = RefundOutcome(kind=RefundOutcomeKind.FAILED, message=str(exc))
        return outcome, attempts

    async def _finalize(
        self, payment: Payment, outcome: RefundOutcome, attempts: int, reason: str
    ) -> RefundResult:
        if outcome.kind not in (RefundOutcomeKind.SUCCEEDED, RefundOutcomeKind.MANUAL_ACTION):
            await self._release(payment)
            logger.warning(
                "refund_failed",
                payment_id=payment.id,
                provider=payment.provider.value,
                attempts=attempts,
                message=outcome.message,
            )
            return RefundResult(
                payment_id=payment.id,
                success=False,
                outcome=RefundOutcomeKind.FAILED,
                status=PaymentStatus.COMPLETED,
                message=outcome.message or "Refund failed",
                attempts=attempts,
                provider_response=outcome.provider_response,
            )

        target = PaymentStatus.REFUNDED
        if outcome.kind == RefundOutcomeKind.MANUAL_ACTION and self._cfg.manual_policy == "pending_manual":
            target = PaymentStatus.REFUND_PENDING_MANUAL
        evidence = {
            "reason": reason,
            "processed_at": datetime.now(timezone.utc).isoformat(),
            "outcome": outcome.kind.value,
            "attempts": attempts,
            "provider_response": outcome.provider_response,
        }
        try:
            async with self._uow_factory() as uow:
                finalized = await uow.ledger.conditional_update_status(
                    payment.id, PaymentStatus.REFUNDING, target, {"provider_refund_evidence": evidence}
                )
                if finalized and target == PaymentStatus.REFUNDED and payment.order_id:
                    await uow.ledger.update_order_status(payment.order_id, OrderStatus.REFUNDED)
        except Exception as exc:
            # the provider has already refunded: keep the claim, never release to completed
            logger.error(
                "refund_finalize_error",
                payment_id=payment.id,
                provider=payment.provider.value,
                target=target.value,
                evidence=evidence,
                error=str(exc),
                exc_info=True,
            )
            return await self._unrecorded(
                payment, outcome, attempts, PaymentStatus.REFUNDING, f"Refund not recorded: {exc}"
            )
        if not finalized:
            logger.error(
                "refund_finalize_conflict",
                payment_id=payment.id,
                provider=payment.provider.value,
                target=target.value,
                evidence=evidence,
            )
            current = await self._load(payment.id)
            return await self._unrecorded(
                payment, outcome, attempts, current.status, "Refund not recorded: payment status changed"
            )

        logger.info(
            "refund_finished",
            payment_id=payment.id,
            provider=payment.provider.value,
            outcome=outcome.kind.value,
            status=target.value,
            attempts=attempts,
        )
        await notify_safely(
            self._notifier,
            PaymentRefunded(
                payment_id=payment.id,
                provider=payment.provider.value,
                outcome=outcome.kind.value,
                status=target.value,
                reason=reason,
                order_id=payment.order_id,
                message=outcome.message,
            ),
        )
        return RefundResult(
            payment_id=payment.id,
            success=True,
            outcome=outcome.kind,
            status=target,
            message=outcome.message,
            attempts=attempts,
            provider_response=outcome.provider_response,
        )

    async def _unrecorded(
        self, payment: Payment, outcome: RefundOutcome, attempts: int, status: PaymentStatus, message: str
    ) -> RefundResult:
        """Provider accepted the refund but the ledger write did not land; needs reconciliation."""
        await notify_safely(
            self._notifier,
            PostProcessingFailed(payment_id=payment.id, provider=payment.provider.value, error=message),
        )
        return RefundResult(
            payment_id=payment.id,
            success=False,
            outcome=outcome.kind,
            status=status,
            message=message,
            attempts=attempts,
            provider_response=outcome.provider_response,
        )

    async def _finish_balance(
        self, payment: Payment, outcome: RefundOutcome, attempts: int, reason: str
    ) -> RefundResult:
        success = outcome.kind == RefundOutcomeKind.SUCCEEDED
        logger.info(
            "refund_finished",
            payment_id=payment.id,
            provider=payment.provider.value,
            outcome=outcome.kind.value,
            attempts=attempts,
        )
        if success:
            await notify_safely(
                self._notifier,
                PaymentRefunded(
                    payment_id=payment.id,
                    provider=payment.provider.value,
                    outcome=outcome.kind.value,
                    status=PaymentStatus.REFUNDED.value,
                    reason=reason,
                    order_id=payment.order_id,
                    message=outcome.message,
                ),
            )
        return RefundResult(
            payment_id=payment.id,
            success=success,
            outcome=outcome.kind if success else RefundOutcomeKind.FAILED,
            status=PaymentStatus.REFUNDED if success else payment.status,
            message=outcome.message,
            attempts=attempts,
            provider_response=outcome.provider_response,
        )
