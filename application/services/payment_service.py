"""
Application service orchestrating checkout use-cases.

This class depends only on the application PaymentGateway port, the unit of
work and DTOs. Gateway implementations are provided by infrastructure and must
be injected from the composition root (API/tasks), keeping dependencies one-way.
"""
from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Callable

from application.dtos.payments import CreatePaymentCommand, EventOutcome, NormalizedEvent, PaymentIntent
from application.ports.payment_gateway import CapturingGateway, PaymentGateway
from application.services.settlement_service import SettlementProcessor
from domain.common.exceptions import BusinessException
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, ProviderKind, utcnow
from domain.payment.exceptions import (
    LedgerError,
    OrderNotFoundException,
    PaymentNotFoundException,
    UnsupportedProviderException,
)


logger = get_logger(__name__)

# balance payments settle synchronously; the window only bounds a crashed checkout
BALANCE_EXPIRY = timedelta(minutes=15)


class PaymentService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway_for: Callable[[ProviderKind], PaymentGateway],
        settlement: SettlementProcessor,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway_for = gateway_for
        self._settlement = settlement

    async def create_payment(self, cmd: CreatePaymentCommand) -> Payment:
        """创建支付：落库 pending 记录后调用渠道，失败则置为 failed 并抛出"""
        gateway = self._gateway_for(cmd.provider)
        metadata = dict(cmd.metadata or {})
        for key in ("description", "return_url", "cancel_url"):
            value = getattr(cmd, key)
            if value:
                metadata[key] = value
        payment = Payment(
            id=str(uuid.uuid4()),
            provider=cmd.provider,
            payment_type=cmd.payment_type,
            user_id=cmd.user_id,
            amount_original=cmd.amount,
            currency_original=cmd.currency,
            order_id=cmd.order_id,
            metadata=metadata,
        )

        async with self._uow_factory() as uow:
            if payment.order_id and await uow.ledger.get_order(payment.order_id) is None:
                raise OrderNotFoundException(payment.order_id)
            payment = await uow.ledger.add_payment(payment)

        logger.info(
            "payment_create_request",
            payment_id=payment.id,
            provider=payment.provider.value,
            payment_type=payment.payment_type.value,
            amount=str(payment.amount_original),
            currency=payment.currency_original,
        )
        try:
            intent = await gateway.create_payment(payment)
        except BusinessException as exc:
            logger.warning("payment_create_failed", payment_id=payment.id, **exc.to_log_fields())
            await self._settlement.mark_failed(payment, exc.message)
            raise

        if payment.provider == ProviderKind.BALANCE:
            return await self._settle_from_balance(payment, intent)
        return await self._attach_intent(payment, intent)

    async def _attach_intent(self, payment: Payment, intent: PaymentIntent) -> Payment:
        metadata = dict(payment.metadata)
        if intent.qr_code:
            metadata["qr_code"] = intent.qr_code
        if intent.payout_address:
            metadata["payout_address"] = intent.payout_address
        fields = {
            "provider_payment_id": intent.external_payment_id,
            "checkout_url": intent.checkout_url or intent.payout_address,
            "amount_normalized": intent.amount_normalized,
            "settlement_currency": intent.settlement_currency,
            "expires_at": intent.expires_at,
            "metadata": metadata,
        }
        async with self._uow_factory() as uow:
            await uow.ledger.update_payment_fields(payment.id, fields)
            refreshed = await uow.ledger.get_payment(payment.id)
        logger.info(
            "payment_create_response",
            payment_id=payment.id,
            provider=payment.provider.value,
            provider_payment_id=intent.external_payment_id,
        )
        return refreshed or payment

    async def _settle_from_balance(self, payment: Payment, intent: PaymentIntent) -> Payment:
        """余额支付：扣款与结算在同一事务内完成"""
        try:
            async with self._uow_factory() as uow:
                await uow.ledger.update_payment_fields(
                    payment.id,
                    {
                        "amount_normalized": intent.amount_normalized,
                        "settlement_currency": intent.settlement_currency,
                        "expires_at": utcnow() + BALANCE_EXPIRY,
                    },
                )
                entry = await uow.ledger.atomic_debit_balance(
                    payment.user_id,
                    payment.amount_original,
                    f"Payment {payment.id}",
                    payment.id,
                )
                event = NormalizedEvent(
                    provider=ProviderKind.BALANCE,
                    outcome=EventOutcome.COMPLETED,
                    external_order_id=payment.id,
                    tx_reference=f"ledger:{entry.id}",
                    amount=payment.amount_original,
                )
                await self._settlement.apply_event(payment, event, uow=uow)
        except LedgerError as exc:
            logger.warning("balance_payment_failed", payment_id=payment.id, error=exc.message)
            await self._settlement.mark_failed(payment, exc.message)
            raise
        return await self.get_payment(payment.id)

    async def capture_payment(self, payment_id: str) -> Payment:
        """买家在渠道侧批准后完成扣款（PayPal），只有扣款 COMPLETED 才结算"""
        payment = await self.get_payment(payment_id)
        gateway = self._gateway_for(payment.provider)
        if not isinstance(gateway, CapturingGateway):
            raise UnsupportedProviderException(payment.provider.value)
        if not payment.is_pending():
            logger.info("payment_capture_skipped", payment_id=payment.id, status=payment.status.value)
            return payment

        event = await gateway.capture_order(payment)
        logger.info(
            "payment_capture_result",
            payment_id=payment.id,
            outcome=event.outcome.value,
            tx_reference=event.tx_reference,
        )
        if event.outcome != EventOutcome.PENDING:
            await self._settlement.apply_event(payment, event)
        return await self.get_payment(payment.id)

    async def get_payment(self, payment_id: str) -> Payment:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.ledger.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    async def get_balance(self, user_id: str):
        async with self._uow_factory(readonly=True) as uow:
            return await uow.ledger.get_balance(user_id)
