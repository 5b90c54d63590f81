"""
Settlement processor: turns provider callbacks into exactly-once status transitions.

Only this module writes ``pending -> completed | failed``. Idempotency rests on
the store's conditional write: a redelivered or concurrent callback loses the
compare-and-set and is reported as already processed.
"""
from __future__ import annotations

from functools import partial
from typing import Callable, Mapping, Optional

from application.dtos.payments import (
    EventOutcome,
    NormalizedEvent,
    ParseError,
    SettlementResult,
)
from application.ports.notifier import Notifier
from application.ports.payment_gateway import PaymentGateway
from application.services.notifications import notify_safely
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    OrderStatus,
    Payment,
    PaymentStatus,
    PaymentType,
    ProviderKind,
)
from domain.payment.events import (
    AmountMismatchDetected,
    PaymentCompleted,
    PaymentEvent,
    PaymentFailed,
    PostProcessingFailed,
)
from domain.payment.exceptions import UnsupportedProviderException
from domain.payment.repository import LedgerStore


logger = get_logger(__name__)


class SettlementProcessor:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_for: Callable[[ProviderKind], PaymentGateway],
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway_for = gateway_for
        self._notifier = notifier

    async def handle_callback(
        self, provider: str, headers: Mapping[str, str], body: bytes
    ) -> SettlementResult:
        """Parse, validate and apply one webhook delivery."""
        try:
            kind = ProviderKind(provider)
            gateway = self._gateway_for(kind)
        except (ValueError, UnsupportedProviderException):
            logger.warning("settlement_unknown_provider", provider=provider)
            return SettlementResult(status_code=404, message="Unknown provider")

        parsed = gateway.parse_callback(headers, body)
        if isinstance(parsed, ParseError):
            logger.warning(
                "settlement_parse_error",
                provider=kind.value,
                reason=parsed.reason,
                detail=parsed.detail,
            )
            return SettlementResult(status_code=parsed.status_code, message=f"Invalid callback: {parsed.reason}")

        logger.info(
            "settlement_callback_parsed",
            provider=kind.value,
            outcome=parsed.outcome.value,
            external_order_id=parsed.external_order_id,
            provider_payment_id=parsed.provider_payment_id,
            raw_status=parsed.raw_status,
        )
        if parsed.outcome == EventOutcome.PENDING:
            return SettlementResult(status_code=200, message="Acknowledged", outcome=parsed.outcome)

        payment = await self._find_payment(parsed)
        if payment is None:
            logger.warning(
                "settlement_payment_not_found",
                provider=kind.value,
                external_order_id=parsed.external_order_id,
                provider_payment_id=parsed.provider_payment_id,
            )
            return SettlementResult(status_code=404, message="Payment not found", outcome=parsed.outcome)

        return await self.apply_event(payment, parsed)

    async def _find_payment(self, event: NormalizedEvent) -> Optional[Payment]:
        async with self._uow_factory(readonly=True) as uow:
            payment = None
            if event.external_order_id:
                payment = await uow.ledger.get_payment(event.external_order_id)
            if payment is None and event.provider_payment_id:
                payment = await uow.ledger.get_payment_by_provider_ref(event.provider, event.provider_payment_id)
        # a callback can only settle payments made on its own rail
        if payment is not None and payment.provider != event.provider:
            return None
        return payment

    async def apply_event(
        self,
        payment: Payment,
        event: NormalizedEvent,
        *,
        uow: Optional[AbstractUnitOfWork] = None,
    ) -> SettlementResult:
        """Apply a terminal outcome to ``payment``.

        Used by webhooks and by checkout (provider failures, balance debits).
        Passing ``uow`` runs the transition and post-processing inside the
        caller's transaction; its notifications are sent after that commits.
        """
        if not payment.is_pending():
            await self._backfill_reference(payment, event)
            if payment.status == PaymentStatus.FAILED and event.outcome == EventOutcome.COMPLETED:
                logger.warning("settlement_late_success_ignored", payment_id=payment.id, provider=payment.provider.value)
            logger.info("settlement_already_processed", payment_id=payment.id, status=payment.status.value)
            return SettlementResult(
                status_code=200, message="Already processed", payment_id=payment.id, outcome=event.outcome
            )

        if event.amount is not None and event.amount != payment.provider_amount:
            logger.error(
                "settlement_amount_mismatch",
                payment_id=payment.id,
                provider=payment.provider.value,
                expected=str(payment.provider_amount),
                received=str(event.amount),
            )
            await self._emit(
                AmountMismatchDetected(
                    payment_id=payment.id,
                    provider=payment.provider.value,
                    expected=str(payment.provider_amount),
                    received=str(event.amount),
                ),
                uow,
            )
            return SettlementResult(status_code=400, message="Amount mismatch", payment_id=payment.id)

        new_status = PaymentStatus.COMPLETED if event.outcome == EventOutcome.COMPLETED else PaymentStatus.FAILED
        fields = {}
        if event.tx_reference:
            fields["tx_reference"] = event.tx_reference
        if event.provider_payment_id and not payment.provider_payment_id:
            fields["provider_payment_id"] = event.provider_payment_id
        if new_status == PaymentStatus.FAILED:
            fields["failure_reason"] = event.reason or event.raw_status or "failed"

        if uow is not None:
            applied = await uow.ledger.conditional_update_status(payment.id, PaymentStatus.PENDING, new_status, fields)
        else:
            async with self._uow_factory() as own:
                applied = await own.ledger.conditional_update_status(
                    payment.id, PaymentStatus.PENDING, new_status, fields
                )
        if not applied:
            logger.info("settlement_lost_race", payment_id=payment.id)
            return SettlementResult(
                status_code=200, message="Already processed", payment_id=payment.id, outcome=event.outcome
            )

        logger.info("settlement_applied", payment_id=payment.id, status=new_status.value)
        if new_status == PaymentStatus.COMPLETED:
            await self._post_process(payment, event, uow)
            await self._emit(
                PaymentCompleted(
                    payment_id=payment.id,
                    provider=payment.provider.value,
                    payment_type=payment.payment_type.value,
                    user_id=payment.user_id,
                    amount=str(payment.amount_original),
                    currency=payment.currency_original,
                    order_id=payment.order_id,
                    tx_reference=event.tx_reference,
                ),
                uow,
            )
        else:
            await self._emit(
                PaymentFailed(payment_id=payment.id, provider=payment.provider.value, reason=fields["failure_reason"]),
                uow,
            )
        return SettlementResult(
            status_code=200, message="Processed", payment_id=payment.id, outcome=event.outcome, applied=True
        )

    async def mark_failed(self, payment: Payment, reason: str, *, uow: Optional[AbstractUnitOfWork] = None) -> SettlementResult:
        event = NormalizedEvent(
            provider=payment.provider,
            outcome=EventOutcome.FAILED,
            external_order_id=payment.id,
            reason=reason,
        )
        return await self.apply_event(payment, event, uow=uow)

    async def _post_process(
        self, payment: Payment, event: NormalizedEvent, uow: Optional[AbstractUnitOfWork]
    ) -> None:
        # Never reverts the settlement; failures are reconciled out of band.
        try:
            if uow is not None:
                await self._run_post_processing(uow.ledger, payment, event)
            else:
                async with self._uow_factory() as own:
                    await self._run_post_processing(own.ledger, payment, event)
        except Exception as exc:
            logger.error(
                "settlement_post_processing_failed",
                payment_id=payment.id,
                payment_type=payment.payment_type.value,
                error=str(exc),
                exc_info=True,
            )
            await self._emit(
                PostProcessingFailed(payment_id=payment.id, provider=payment.provider.value, error=str(exc)),
                uow,
            )

    @staticmethod
    async def _run_post_processing(ledger: LedgerStore, payment: Payment, event: NormalizedEvent) -> None:
        if payment.payment_type == PaymentType.DEPOSIT:
            note = f"Deposit via {payment.provider.value}"
            if event.tx_reference:
                note = f"{note} - {event.tx_reference}"
            await ledger.atomic_credit_balance(payment.user_id, payment.amount_original, note, payment.id)
        elif payment.order_id:
            if not await ledger.update_order_status(payment.order_id, OrderStatus.PAID):
                logger.warning("settlement_order_missing", payment_id=payment.id, order_id=payment.order_id)

    async def _emit(self, event: PaymentEvent, uow: Optional[AbstractUnitOfWork]) -> None:
        # inside a caller's transaction, notify only once it has committed
        if uow is not None:
            uow.after_commit(partial(notify_safely, self._notifier, event))
        else:
            await notify_safely(self._notifier, event)

    async def _backfill_reference(self, payment: Payment, event: NormalizedEvent) -> None:
        # e.g. a PayPal capture webhook for a payment settled without a capture id
        if payment.status != PaymentStatus.COMPLETED or event.outcome != EventOutcome.COMPLETED:
            return
        if not event.tx_reference or payment.tx_reference:
            return
        async with self._uow_factory() as uow:
            await uow.ledger.update_payment_fields(payment.id, {"tx_reference": event.tx_reference})
        logger.info("settlement_reference_backfilled", payment_id=payment.id)
