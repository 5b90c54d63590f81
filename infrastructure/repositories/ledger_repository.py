"""
账本存储实现 - 使用SQLAlchemy实现数据访问

状态写入一律走条件更新（UPDATE ... WHERE status = :expected），
余额变动在调用方事务内加行锁完成。
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.payment.entity import (
    BalanceLedgerEntry,
    BalanceRefundResult,
    LedgerEntryKind,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    ProviderKind,
    ensure_transition,
)
from domain.payment.exceptions import InsufficientBalanceException, LedgerError
from domain.payment.repository import LedgerStore
from infrastructure.models.payment import (
    BalanceLedgerEntryModel,
    OrderModel,
    PaymentModel,
    UserBalanceModel,
)


logger = get_logger(__name__)

# 领域字段名 -> 列属性名
_FIELD_TO_COLUMN = {"metadata": "extra_metadata"}
_WRITABLE_FIELDS = {
    "amount_normalized",
    "settlement_currency",
    "provider_payment_id",
    "tx_reference",
    "provider_refund_evidence",
    "checkout_url",
    "failure_reason",
    "completed_at",
    "refunded_at",
    "expires_at",
    "metadata",
}


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


class SQLAlchemyLedgerStore(LedgerStore):
    """LedgerStore 的 SQLAlchemy 实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            provider=ProviderKind(model.provider),
            payment_type=model.payment_type,
            user_id=model.user_id,
            amount_original=_to_decimal(model.amount_original),
            currency_original=model.currency_original,
            status=PaymentStatus(model.status),
            amount_normalized=_to_decimal(model.amount_normalized),
            settlement_currency=model.settlement_currency,
            order_id=model.order_id,
            provider_payment_id=model.provider_payment_id,
            tx_reference=model.tx_reference,
            provider_refund_evidence=model.provider_refund_evidence,
            checkout_url=model.checkout_url,
            failure_reason=model.failure_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
            completed_at=model.completed_at,
            refunded_at=model.refunded_at,
            expires_at=model.expires_at,
            metadata=model.extra_metadata or {},
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        now = datetime.now(timezone.utc)
        return PaymentModel(
            id=entity.id,
            provider=entity.provider.value,
            payment_type=entity.payment_type.value,
            user_id=entity.user_id,
            order_id=entity.order_id,
            amount_original=entity.amount_original,
            currency_original=entity.currency_original,
            amount_normalized=entity.amount_normalized,
            settlement_currency=entity.settlement_currency,
            status=entity.status.value,
            provider_payment_id=entity.provider_payment_id,
            tx_reference=entity.tx_reference,
            provider_refund_evidence=entity.provider_refund_evidence,
            checkout_url=entity.checkout_url,
            failure_reason=entity.failure_reason,
            created_at=entity.created_at or now,
            updated_at=entity.updated_at or now,
            completed_at=entity.completed_at,
            refunded_at=entity.refunded_at,
            expires_at=entity.expires_at,
            extra_metadata=entity.metadata,
        )

    @staticmethod
    def _order_to_entity(model: OrderModel) -> Order:
        return Order(
            id=model.id,
            status=OrderStatus(model.status),
            total_amount=_to_decimal(model.total_amount),
            order_number=model.order_number,
            user_id=model.user_id,
            customer_email=model.customer_email,
            customer_name=model.customer_name,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _entry_to_entity(model: BalanceLedgerEntryModel) -> BalanceLedgerEntry:
        return BalanceLedgerEntry(
            id=model.id,
            user_id=model.user_id,
            amount=_to_decimal(model.amount),
            balance_after=_to_decimal(model.balance_after),
            kind=LedgerEntryKind(model.kind),
            payment_id=model.payment_id,
            note=model.note,
            created_at=model.created_at,
        )

    @staticmethod
    def _column_values(fields: Optional[dict[str, Any]]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for key, value in (fields or {}).items():
            if key not in _WRITABLE_FIELDS:
                raise ValueError(f"Field {key!r} is not writable")
            values[_FIELD_TO_COLUMN.get(key, key)] = value
        return values

    # ---- payments ----

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .execution_options(populate_existing=True)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_payment_by_provider_ref(self, provider: ProviderKind, ref: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.provider == ProviderKind(provider).value,
                PaymentModel.provider_payment_id == ref,
            )
            .limit(1)
            .execution_options(populate_existing=True)
        )
        db_payment = result.scalars().first()
        return self._to_entity(db_payment) if db_payment else None

    async def add_payment(self, payment: Payment) -> Payment:
        db_payment = self._to_model(payment)
        self.session.add(db_payment)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            logger.warning("payment_create_conflict", payment_id=payment.id, error=str(exc.orig))
            raise LedgerError("Payment could not be stored", details={"payment_id": payment.id}) from exc
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            provider=db_payment.provider,
            payment_type=db_payment.payment_type,
        )
        return self._to_entity(db_payment)

    async def conditional_update_status(
        self,
        payment_id: str,
        expected: PaymentStatus,
        new: PaymentStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> bool:
        ensure_transition(expected, new)
        now = datetime.now(timezone.utc)
        values = self._column_values(fields)
        values.update(status=new.value, updated_at=now)
        if new == PaymentStatus.COMPLETED and expected == PaymentStatus.PENDING:
            values.setdefault("completed_at", now)
        if new in (PaymentStatus.REFUNDED, PaymentStatus.REFUND_PENDING_MANUAL):
            values.setdefault("refunded_at", now)

        result = await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id, PaymentModel.status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        hit = result.rowcount == 1
        logger.info(
            "payment_status_cas",
            payment_id=payment_id,
            expected=expected.value,
            new=new.value,
            applied=hit,
        )
        return hit

    async def update_payment_fields(self, payment_id: str, fields: dict[str, Any]) -> None:
        values = self._column_values(fields)
        if not values:
            return
        values["updated_at"] = datetime.now(timezone.utc)
        await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    # ---- orders ----

    async def get_order(self, order_id: str) -> Optional[Order]:
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.id == order_id)
            .execution_options(populate_existing=True)
        )
        db_order = result.scalar_one_or_none()
        return self._order_to_entity(db_order) if db_order else None

    async def update_order_status(self, order_id: str, status: OrderStatus) -> bool:
        result = await self.session.execute(
            update(OrderModel)
            .where(OrderModel.id == order_id)
            .values(status=OrderStatus(status).value, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ---- balance ledger ----

    async def _lock_balance(self, user_id: str, *, create: bool) -> Optional[UserBalanceModel]:
        result = await self.session.execute(
            select(UserBalanceModel)
            .where(UserBalanceModel.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None and create:
            row = UserBalanceModel(user_id=user_id, balance=Decimal("0"))
            self.session.add(row)
            try:
                await self.session.flush()
            except IntegrityError as exc:
                raise LedgerError("Concurrent balance initialisation", details={"user_id": user_id}) from exc
        return row

    async def _append_entry(
        self,
        user_id: str,
        amount: Decimal,
        balance_after: Decimal,
        kind: LedgerEntryKind,
        payment_id: Optional[str],
        note: Optional[str],
    ) -> BalanceLedgerEntry:
        entry = BalanceLedgerEntryModel(
            user_id=user_id,
            amount=amount,
            balance_after=balance_after,
            kind=kind.value,
            payment_id=payment_id,
            note=note,
            created_at=datetime.now(timezone.utc),
        )
        self.session.add(entry)
        await self.session.flush()
        return self._entry_to_entity(entry)

    async def get_balance(self, user_id: str) -> Decimal:
        result = await self.session.execute(
            select(UserBalanceModel.balance).where(UserBalanceModel.user_id == user_id)
        )
        value = result.scalar_one_or_none()
        return _to_decimal(value) if value is not None else Decimal("0")

    async def atomic_credit_balance(
        self, user_id: str, amount: Decimal, note: str, payment_id: Optional[str] = None
    ) -> BalanceLedgerEntry:
        if amount <= 0:
            raise LedgerError("Credit amount must be positive", details={"amount": str(amount)})
        row = await self._lock_balance(user_id, create=True)
        new_balance = _to_decimal(row.balance) + amount
        row.balance = new_balance
        entry = await self._append_entry(
            user_id, amount, new_balance, LedgerEntryKind.CREDIT, payment_id, note
        )
        logger.info("balance_credited", user_id=user_id, amount=str(amount), payment_id=payment_id)
        return entry

    async def atomic_debit_balance(
        self, user_id: str, amount: Decimal, note: str, payment_id: Optional[str] = None
    ) -> BalanceLedgerEntry:
        if amount <= 0:
            raise LedgerError("Debit amount must be positive", details={"amount": str(amount)})
        row = await self._lock_balance(user_id, create=False)
        current = _to_decimal(row.balance) if row is not None else Decimal("0")
        if row is None or current < amount:
            raise InsufficientBalanceException(user_id, current, amount)
        new_balance = current - amount
        row.balance = new_balance
        entry = await self._append_entry(
            user_id, -amount, new_balance, LedgerEntryKind.DEBIT, payment_id, note
        )
        logger.info("balance_debited", user_id=user_id, amount=str(amount), payment_id=payment_id)
        return entry

    async def atomic_refund_balance_payment(self, payment_id: str, reason: str) -> BalanceRefundResult:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            return BalanceRefundResult(success=False, error="Payment not found")
        if payment.status == PaymentStatus.REFUNDED.value:
            return BalanceRefundResult(
                success=True,
                already_refunded=True,
                amount=_to_decimal(payment.amount_original),
                new_balance=await self.get_balance(payment.user_id),
            )
        if payment.provider != ProviderKind.BALANCE.value:
            return BalanceRefundResult(success=False, error="Payment was not made with balance")
        if payment.status != PaymentStatus.COMPLETED.value:
            return BalanceRefundResult(success=False, error=f"Payment status is {payment.status}")

        amount = _to_decimal(payment.amount_original)
        row = await self._lock_balance(payment.user_id, create=True)
        new_balance = _to_decimal(row.balance) + amount
        row.balance = new_balance
        await self._append_entry(
            payment.user_id, amount, new_balance, LedgerEntryKind.REFUND, payment_id, f"Refund: {reason}"
        )

        now = datetime.now(timezone.utc)
        payment.status = PaymentStatus.REFUNDED.value
        payment.refunded_at = now
        payment.updated_at = now
        payment.provider_refund_evidence = {
            "reason": reason,
            "processed_at": now.isoformat(),
            "new_balance": str(new_balance),
        }
        if payment.order_id:
            await self.update_order_status(payment.order_id, OrderStatus.REFUNDED)
        await self.session.flush()
        logger.info(
            "balance_payment_refunded",
            payment_id=payment_id,
            user_id=payment.user_id,
            amount=str(amount),
        )
        return BalanceRefundResult(success=True, amount=amount, new_balance=new_balance)

    async def list_ledger_entries(self, user_id: str) -> list[BalanceLedgerEntry]:
        result = await self.session.execute(
            select(BalanceLedgerEntryModel)
            .where(BalanceLedgerEntryModel.user_id == user_id)
            .order_by(BalanceLedgerEntryModel.id)
        )
        return [self._entry_to_entity(m) for m in result.scalars().all()]
