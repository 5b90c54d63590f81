"""
支付领域实体 - 支付聚合根、订单与余额流水
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException


class ProviderKind(str, Enum):
    """支付渠道"""
    CRYPTO_USDT = "crypto_usdt"
    PAYPAL = "paypal"
    PAYOS = "payos"
    BALANCE = "balance"


class PaymentType(str, Enum):
    """支付用途：订单付款或余额充值"""
    ORDER = "order"
    DEPOSIT = "deposit"


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"                              # 待支付
    COMPLETED = "completed"                          # 支付成功
    FAILED = "failed"                                # 支付失败
    REFUNDING = "refunding"                          # 退款中（已占用）
    REFUNDED = "refunded"                            # 已退款
    REFUND_PENDING_MANUAL = "refund_pending_manual"  # 待人工退款

    def can_transition_to(self, target: "PaymentStatus") -> bool:
        return target in _ALLOWED_TRANSITIONS.get(self, frozenset())


# refunding -> completed 仅用于退款失败时释放占用
_ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDING, PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDING: frozenset(
        {PaymentStatus.REFUNDED, PaymentStatus.REFUND_PENDING_MANUAL, PaymentStatus.COMPLETED}
    ),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.REFUND_PENDING_MANUAL: frozenset(),
}


class OrderStatus(str, Enum):
    """订单状态（由外部订单系统维护，这里只关心支付相关的流转）"""
    PENDING = "PENDING"
    PAID = "PAID"
    DELIVERED = "DELIVERED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class LedgerEntryKind(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    REFUND = "refund"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    """状态只能单调前进，否则抛出 DomainValidationException。"""
    if not PaymentStatus(current).can_transition_to(PaymentStatus(target)):
        raise DomainValidationException(
            f"Illegal payment status transition {current.value} -> {target.value}",
            field="status",
            details={"from": current.value, "to": target.value},
            message_key="payments.status.transition_invalid",
            format_params={"current": current.value, "target": target.value},
        )


@dataclass
class Payment:
    """
    支付聚合根

    业务规则：
    1. id 由平台生成，同时作为渠道侧的外部订单号
    2. 原始金额必须大于0
    3. 状态只能单调前进（见 _ALLOWED_TRANSITIONS）
    4. 只有 completed 状态的支付可以发起退款
    """

    id: str
    provider: ProviderKind
    payment_type: PaymentType
    user_id: str
    amount_original: Decimal
    currency_original: str  # ISO-4217 / USDT
    status: PaymentStatus = PaymentStatus.PENDING

    # 渠道侧实际收款金额与币种（USDT / VND / USD）
    amount_normalized: Optional[Decimal] = None
    settlement_currency: Optional[str] = None

    order_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    tx_reference: Optional[str] = None  # capture id / 链上交易哈希
    provider_refund_evidence: Optional[dict[str, Any]] = None
    checkout_url: Optional[str] = None
    failure_reason: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        self.provider = ProviderKind(self.provider)
        self.payment_type = PaymentType(self.payment_type)
        self.status = PaymentStatus(self.status)
        if self.amount_original <= 0:
            raise DomainValidationException(
                f"Payment amount must be positive: {self.amount_original}",
                field="amount_original",
            )
        if not self.currency_original or not self.currency_original.isalpha():
            raise DomainValidationException(
                f"Invalid currency code: {self.currency_original}",
                field="currency_original",
            )
        self.currency_original = self.currency_original.upper()
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.completed_at = _ensure_utc(self.completed_at)
        self.refunded_at = _ensure_utc(self.refunded_at)
        self.expires_at = _ensure_utc(self.expires_at)
        if self.metadata is None:
            self.metadata = {}

    @property
    def provider_amount(self) -> Decimal:
        """渠道侧应收金额（未换算时即原始金额）"""
        if self.amount_normalized is not None:
            return self.amount_normalized
        return self.amount_original

    def is_refundable(self) -> bool:
        return self.status == PaymentStatus.COMPLETED

    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING


@dataclass
class Order:
    """订单（弱引用，支付最多关联一个订单）"""

    id: str
    status: OrderStatus
    total_amount: Decimal
    order_number: Optional[str] = None
    user_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = OrderStatus(self.status)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)


@dataclass(frozen=True)
class BalanceLedgerEntry:
    """余额流水（只追加，不修改）"""

    user_id: str
    amount: Decimal  # 带符号：入账为正，扣款为负
    balance_after: Decimal
    kind: LedgerEntryKind
    payment_id: Optional[str] = None
    note: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class BalanceRefundResult:
    """refund_balance_payment 存储过程的结果"""

    success: bool
    already_refunded: bool = False
    amount: Optional[Decimal] = None
    new_balance: Optional[Decimal] = None
    error: Optional[str] = None
