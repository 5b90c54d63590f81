"""
账本存储接口 - 支付结算所需的全部数据访问抽象

一致性依赖存储本身：条件更新（WHERE status = :expected）和原子存储过程。
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Optional

from .entity import (
    BalanceLedgerEntry,
    BalanceRefundResult,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    ProviderKind,
)


class LedgerStore(ABC):
    """支付/订单/余额账本的存储抽象 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        """根据平台支付ID获取支付"""

    @abstractmethod
    async def get_payment_by_provider_ref(self, provider: ProviderKind, ref: str) -> Optional[Payment]:
        """根据渠道支付ID获取支付"""

    @abstractmethod
    async def add_payment(self, payment: Payment) -> Payment:
        """新增支付记录"""

    @abstractmethod
    async def conditional_update_status(
        self,
        payment_id: str,
        expected: PaymentStatus,
        new: PaymentStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> bool:
        """仅当当前状态等于 expected 时更新为 new，返回是否命中"""

    @abstractmethod
    async def update_payment_fields(self, payment_id: str, fields: dict[str, Any]) -> None:
        """更新非状态字段（渠道ID、收银台链接等）"""

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        """获取订单"""

    @abstractmethod
    async def update_order_status(self, order_id: str, status: OrderStatus) -> bool:
        """更新订单状态，返回订单是否存在"""

    @abstractmethod
    async def get_balance(self, user_id: str) -> Decimal:
        """查询用户余额（不存在视为 0）"""

    @abstractmethod
    async def atomic_credit_balance(
        self, user_id: str, amount: Decimal, note: str, payment_id: Optional[str] = None
    ) -> BalanceLedgerEntry:
        """原子入账并追加流水"""

    @abstractmethod
    async def atomic_debit_balance(
        self, user_id: str, amount: Decimal, note: str, payment_id: Optional[str] = None
    ) -> BalanceLedgerEntry:
        """原子扣款并追加流水，余额不足抛出 InsufficientBalanceException"""

    @abstractmethod
    async def atomic_refund_balance_payment(self, payment_id: str, reason: str) -> BalanceRefundResult:
        """
        余额支付退款存储过程（幂等）

        同一事务内：退回余额、追加流水、支付置为 refunded、关联订单置为 REFUNDED。
        重复调用返回 already_refunded=True 且不再变动余额。
        """

    @abstractmethod
    async def list_ledger_entries(self, user_id: str) -> list[BalanceLedgerEntry]:
        """按时间顺序列出用户的余额流水"""
