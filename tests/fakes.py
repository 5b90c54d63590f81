"""In-memory collaborators shared by the service tests."""
from __future__ import annotations

import copy
from dataclasses import replace
from decimal import Decimal
from typing import Any, Mapping, Optional

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
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    BalanceLedgerEntry,
    BalanceRefundResult,
    LedgerEntryKind,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    PaymentType,
    ProviderKind,
    ensure_transition,
    utcnow,
)
from domain.payment.exceptions import InsufficientBalanceException, LedgerError
from domain.payment.repository import LedgerStore


class InMemoryLedgerStore(LedgerStore):
    """Dict-backed LedgerStore; entities are copied in and out."""

    def __init__(self) -> None:
        self.payments: dict[str, Payment] = {}
        self.orders: dict[str, Order] = {}
        self.balances: dict[str, Decimal] = {}
        self.entries: list[BalanceLedgerEntry] = []
        self.cas_calls: list[tuple[str, PaymentStatus, PaymentStatus, bool]] = []

    def snapshot(self) -> tuple:
        return copy.deepcopy((self.payments, self.orders, self.balances, self.entries))

    def restore(self, state: tuple) -> None:
        self.payments, self.orders, self.balances, self.entries = state

    # seeding helpers
    def seed_payment(self, payment: Payment) -> Payment:
        self.payments[payment.id] = replace(payment)
        return payment

    def seed_order(self, order_id: str, status: OrderStatus = OrderStatus.PENDING) -> Order:
        order = Order(id=order_id, status=status, total_amount=Decimal("0"))
        self.orders[order_id] = order
        return order

    def credits_for(self, payment_id: str) -> list[BalanceLedgerEntry]:
        return [e for e in self.entries if e.payment_id == payment_id and e.kind == LedgerEntryKind.CREDIT]

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        payment = self.payments.get(payment_id)
        return replace(payment) if payment else None

    async def get_payment_by_provider_ref(self, provider: ProviderKind, ref: str) -> Optional[Payment]:
        for payment in self.payments.values():
            if payment.provider == provider and payment.provider_payment_id == ref:
                return replace(payment)
        return None

    async def add_payment(self, payment: Payment) -> Payment:
        if payment.id in self.payments:
            raise LedgerError("Payment could not be stored", details={"payment_id": payment.id})
        stored = replace(payment, created_at=payment.created_at or utcnow())
        self.payments[payment.id] = stored
        return replace(stored)

    async def conditional_update_status(
        self,
        payment_id: str,
        expected: PaymentStatus,
        new: PaymentStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> bool:
        ensure_transition(expected, new)
        payment = self.payments.get(payment_id)
        hit = payment is not None and payment.status == expected
        self.cas_calls.append((payment_id, expected, new, hit))
        if not hit:
            return False
        values = dict(fields or {})
        if new == PaymentStatus.COMPLETED and expected == PaymentStatus.PENDING:
            values.setdefault("completed_at", utcnow())
        if new in (PaymentStatus.REFUNDED, PaymentStatus.REFUND_PENDING_MANUAL):
            values.setdefault("refunded_at", utcnow())
        self.payments[payment_id] = replace(payment, status=new, updated_at=utcnow(), **values)
        return True

    async def update_payment_fields(self, payment_id: str, fields: dict[str, Any]) -> None:
        payment = self.payments.get(payment_id)
        if payment is not None and fields:
            self.payments[payment_id] = replace(payment, **fields)

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self.orders.get(order_id)
        return replace(order) if order else None

    async def update_order_status(self, order_id: str, status: OrderStatus) -> bool:
        order = self.orders.get(order_id)
        if order is None:
            return False
        self.orders[order_id] = replace(order, status=OrderStatus(status))
        return True

    async def get_balance(self, user_id: str) -> Decimal:
        return self.balances.get(user_id, Decimal("0"))

    def _append(self, user_id, amount, kind, payment_id, note) -> BalanceLedgerEntry:
        entry = BalanceLedgerEntry(
            id=len(self.entries) + 1,
            user_id=user_id,
            amount=amount,
            balance_after=self.balances[user_id],
            kind=kind,
            payment_id=payment_id,
            note=note,
        )
        self.entries.append(entry)
        return entry

    async def atomic_credit_balance(self, user_id, amount, note, payment_id=None) -> BalanceLedgerEntry:
        self.balances[user_id] = self.balances.get(user_id, Decimal("0")) + amount
        return self._append(user_id, amount, LedgerEntryKind.CREDIT, payment_id, note)

    async def atomic_debit_balance(self, user_id, amount, note, payment_id=None) -> BalanceLedgerEntry:
        current = self.balances.get(user_id, Decimal("0"))
        if current < amount:
            raise InsufficientBalanceException(user_id, current, amount)
        self.balances[user_id] = current - amount
        return self._append(user_id, -amount, LedgerEntryKind.DEBIT, payment_id, note)

    async def atomic_refund_balance_payment(self, payment_id: str, reason: str) -> BalanceRefundResult:
        payment = self.payments.get(payment_id)
        if payment is None:
            return BalanceRefundResult(success=False, error="Payment not found")
        if payment.status == PaymentStatus.REFUNDED:
            return BalanceRefundResult(
                success=True,
                already_refunded=True,
                amount=payment.amount_original,
                new_balance=self.balances.get(payment.user_id, Decimal("0")),
            )
        if payment.provider != ProviderKind.BALANCE:
            return BalanceRefundResult(success=False, error="Payment was not made with balance")
        if payment.status != PaymentStatus.COMPLETED:
            return BalanceRefundResult(success=False, error=f"Payment status is {payment.status.value}")
        self.balances[payment.user_id] = self.balances.get(payment.user_id, Decimal("0")) + payment.amount_original
        self._append(payment.user_id, payment.amount_original, LedgerEntryKind.REFUND, payment_id, f"Refund: {reason}")
        self.payments[payment_id] = replace(payment, status=PaymentStatus.REFUNDED, refunded_at=utcnow())
        if payment.order_id:
            await self.update_order_status(payment.order_id, OrderStatus.REFUNDED)
        return BalanceRefundResult(
            success=True, amount=payment.amount_original, new_balance=self.balances[payment.user_id]
        )

    async def list_ledger_entries(self, user_id: str) -> list[BalanceLedgerEntry]:
        return [e for e in self.entries if e.user_id == user_id]


class InMemoryUnitOfWork(AbstractUnitOfWork):
    """Snapshot on enter, restore on rollback."""

    def __init__(self, store: InMemoryLedgerStore, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self._store = store
        self._snapshot = None
        self.commits = 0

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        self.ledger = self._store
        self._snapshot = self._store.snapshot()
        return self

    async def commit(self) -> None:
        self._committed = True
        self.commits += 1

    async def rollback(self) -> None:
        if self._snapshot is not None:
            self._store.restore(self._snapshot)


def make_fake_uow_factory(store: InMemoryLedgerStore):
    def factory(*, readonly: bool = False) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(store, readonly=readonly)

    return factory


class ScriptedGateway:
    """Gateway whose refund outcomes and parsed callbacks are scripted by the test."""

    def __init__(
        self,
        provider: ProviderKind,
        *,
        refund_outcomes: Optional[list[RefundOutcome]] = None,
        retry_policy: Optional[RefundRetryPolicy] = None,
        callback: Optional[ParsedCallback] = None,
        intent: Optional[PaymentIntent] = None,
        create_error: Optional[Exception] = None,
    ) -> None:
        self.provider = provider
        self.retry_policy = retry_policy or RefundRetryPolicy()
        self._refund_outcomes = list(refund_outcomes or [])
        self._callback = callback
        self._intent = intent
        self._create_error = create_error
        self.refund_calls: list[tuple[str, str]] = []
        self.created: list[str] = []

    async def create_payment(self, payment: Payment) -> PaymentIntent:
        self.created.append(payment.id)
        if self._create_error is not None:
            raise self._create_error
        return self._intent or PaymentIntent(
            provider=self.provider,
            external_payment_id=f"ext-{payment.id[:8]}",
            checkout_url=f"https://pay.example/{payment.id}",
            amount_normalized=payment.amount_original,
            settlement_currency=payment.currency_original,
        )

    def parse_callback(self, headers: Mapping[str, str], body: bytes) -> ParsedCallback:
        return self._callback or ParseError(reason="no_callback")

    async def refund(self, payment: Payment, reason: str) -> RefundOutcome:
        self.refund_calls.append((payment.id, reason))
        if len(self._refund_outcomes) > 1:
            return self._refund_outcomes.pop(0)
        return self._refund_outcomes[0]

    async def aclose(self) -> None:
        return None


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.events: list[tuple[str, dict]] = []
        self._fail = fail

    async def notify(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))
        if self._fail:
            raise RuntimeError("webhook down")

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_payment(
    provider: ProviderKind = ProviderKind.PAYOS,
    *,
    status: PaymentStatus = PaymentStatus.PENDING,
    payment_type: PaymentType = PaymentType.ORDER,
    amount: str = "100000",
    currency: str = "VND",
    order_id: Optional[str] = "order-1",
    payment_id: str = "11111111-2222-3333-4444-555555555555",
    **kwargs,
) -> Payment:
    return Payment(
        id=payment_id,
        provider=provider,
        payment_type=payment_type,
        user_id="user-1",
        amount_original=Decimal(amount),
        currency_original=currency,
        status=status,
        order_id=order_id,
        **kwargs,
    )


def completed_event(payment: Payment, **kwargs) -> NormalizedEvent:
    values = {"tx_reference": "tx-1"}
    values.update(kwargs)
    return NormalizedEvent(
        provider=payment.provider,
        outcome=EventOutcome.COMPLETED,
        external_order_id=payment.id,
        **values,
    )


SUCCEEDED = RefundOutcome(kind=RefundOutcomeKind.SUCCEEDED, message="ok", provider_response={"code": "00"}, status_code=200)
RETRYABLE = RefundOutcome(kind=RefundOutcomeKind.RETRYABLE, message="HTTP 500", status_code=500)
FAILED = RefundOutcome(kind=RefundOutcomeKind.FAILED, message="denied", provider_response={"status": "DENIED"}, status_code=422)
MANUAL = RefundOutcome(kind=RefundOutcomeKind.MANUAL_ACTION, message="manual", status_code=400)
