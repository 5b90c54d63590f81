"""
支付/订单/余额数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey
)
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# USDT 需要保留 6 位小数，VND 为整数金额
MONEY = Numeric(precision=20, scale=6)


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键：平台生成的 UUID，同时作为渠道外部订单号
    id = Column(String(36), primary_key=True)

    provider = Column(String(20), nullable=False, comment="支付渠道: crypto_usdt/paypal/payos/balance")
    payment_type = Column(String(20), nullable=False, comment="order/deposit")
    user_id = Column(String(64), nullable=False, index=True, comment="用户ID")
    order_id = Column(String(64), ForeignKey("orders.id"), nullable=True, index=True, comment="关联订单ID")

    # 金额信息（使用 Numeric 存储精确金额）
    amount_original = Column(MONEY, nullable=False, comment="原始金额")
    currency_original = Column(String(8), nullable=False, comment="原始币种")
    amount_normalized = Column(MONEY, nullable=True, comment="渠道侧金额")
    settlement_currency = Column(String(8), nullable=True, comment="渠道侧币种")

    status = Column(
        String(32),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/completed/failed/refunding/refunded/refund_pending_manual"
    )

    # 渠道信息
    provider_payment_id = Column(String(200), nullable=True, comment="渠道支付ID")
    tx_reference = Column(String(200), nullable=True, comment="capture id / 链上交易哈希")
    provider_refund_evidence = Column(JSON, nullable=True, comment="渠道退款原始响应")
    checkout_url = Column(String(1000), nullable=True, comment="收银台链接/收款地址")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间")
    completed_at = Column(DateTime(timezone=True), nullable=True, comment="支付完成时间")
    refunded_at = Column(DateTime(timezone=True), nullable=True, comment="退款完成时间")
    expires_at = Column(DateTime(timezone=True), nullable=True, comment="过期时间")

    # 元数据（JSON格式，使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    __table_args__ = (
        Index("ix_payments_provider_ref", "provider", "provider_payment_id"),
        Index("ix_payments_user_status", "user_id", "status"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id='{self.id}', provider='{self.provider}', "
            f"amount={self.amount_original}, status='{self.status}')>"
        )


class OrderModel(Base):
    """订单表（订单系统拥有，结算只改状态）"""
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True)
    order_number = Column(String(64), nullable=True, unique=True, comment="订单号")
    user_id = Column(String(64), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="PENDING", index=True,
                    comment="PENDING/PAID/DELIVERED/REFUNDED/CANCELLED")
    total_amount = Column(MONEY, nullable=False, comment="订单总额")
    customer_email = Column(String(255), nullable=True)
    customer_name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return f"<OrderModel(id='{self.id}', status='{self.status}')>"


class UserBalanceModel(Base):
    """用户余额，仅由原子存储过程修改"""
    __tablename__ = "user_balances"

    user_id = Column(String(64), primary_key=True)
    balance = Column(MONEY, nullable=False, default=0, comment="当前余额")
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class BalanceLedgerEntryModel(Base):
    """余额流水（只追加）"""
    __tablename__ = "balance_ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(MONEY, nullable=False, comment="带符号金额")
    balance_after = Column(MONEY, nullable=False, comment="变动后余额")
    kind = Column(String(16), nullable=False, comment="credit/debit/refund")
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=True, index=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_ledger_payment_kind", "payment_id", "kind"),
    )
