"""
Internal balance "rail": no network, every operation is a ledger procedure.
"""
from __future__ import annotations

from typing import Callable, Optional

from application.dtos.payments import (
    PaymentIntent,
    RefundOutcome,
    RefundOutcomeKind,
    RefundRetryPolicy,
)
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, ProviderKind
from domain.payment.exceptions import InsufficientBalanceException
from infrastructure.external.payments.base import BasePaymentClient


logger = get_logger(__name__)


class BalanceClient(BasePaymentClient):
    provider = ProviderKind.BALANCE
    retry_policy = RefundRetryPolicy(max_attempts=1)

    def __init__(self, uow_factory: Optional[Callable[..., AbstractUnitOfWork]] = None):
        super().__init__()
        if uow_factory is None:
            from infrastructure.unit_of_work import make_uow_factory

            uow_factory = make_uow_factory()
        self._uow_factory = uow_factory

    async def create_payment(self, payment: Payment) -> PaymentIntent:  # type: ignore[override]
        # The debit itself runs in the checkout transaction; this only pre-checks funds.
        async with self._uow_factory(readonly=True) as uow:
            balance = await uow.ledger.get_balance(payment.user_id)
        if balance < payment.amount_original:
            raise InsufficientBalanceException(payment.user_id, balance, payment.amount_original)
        return PaymentIntent(
            provider=self.provider,
            amount_normalized=payment.amount_original,
            settlement_currency=payment.currency_original,
        )

    async def refund(self, payment: Payment, reason: str) -> RefundOutcome:  # type: ignore[override]
        try:
            async with self._uow_factory() as uow:
                result = await uow.ledger.atomic_refund_balance_payment(payment.id, reason)
        except Exception as e:
            logger.error("balance_refund_procedure_error", payment_id=payment.id, error=str(e), exc_info=True)
            return RefundOutcome(kind=RefundOutcomeKind.FAILED, message=f"Ledger error: {e}")

        response = {
            "already_refunded": result.already_refunded,
            "amount": str(result.amount) if result.amount is not None else None,
            "new_balance": str(result.new_balance) if result.new_balance is not None else None,
        }
        if not result.success:
            return RefundOutcome(
                kind=RefundOutcomeKind.FAILED,
                message=result.error or "Balance refund failed",
                provider_response=response,
            )
        message = "Already refunded" if result.already_refunded else "Refunded to balance"
        return RefundOutcome(kind=RefundOutcomeKind.SUCCEEDED, message=message, provider_response=response)
