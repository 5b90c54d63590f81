"""create_settlement_tables

Revision ID: 3f2a9c1d7e4b
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f2a9c1d7e4b'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(precision=20, scale=6)


def upgrade() -> None:
    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('order_number', sa.String(length=64), nullable=True, comment='订单号'),
        sa.Column('user_id', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING',
                  comment='PENDING/PAID/DELIVERED/REFUNDED/CANCELLED'),
        sa.Column('total_amount', MONEY, nullable=False, comment='订单总额'),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_number'),
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])

    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False, comment='支付渠道: crypto_usdt/paypal/payos/balance'),
        sa.Column('payment_type', sa.String(length=20), nullable=False, comment='order/deposit'),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='用户ID'),
        sa.Column('order_id', sa.String(length=64), nullable=True, comment='关联订单ID'),
        sa.Column('amount_original', MONEY, nullable=False, comment='原始金额'),
        sa.Column('currency_original', sa.String(length=8), nullable=False, comment='原始币种'),
        sa.Column('amount_normalized', MONEY, nullable=True, comment='渠道侧金额'),
        sa.Column('settlement_currency', sa.String(length=8), nullable=True, comment='渠道侧币种'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending', comment='支付状态'),
        sa.Column('provider_payment_id', sa.String(length=200), nullable=True, comment='渠道支付ID'),
        sa.Column('tx_reference', sa.String(length=200), nullable=True, comment='capture id / 链上交易哈希'),
        sa.Column('provider_refund_evidence', sa.JSON(), nullable=True, comment='渠道退款原始响应'),
        sa.Column('checkout_url', sa.String(length=1000), nullable=True, comment='收银台链接/收款地址'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_order_id', 'payments', ['order_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_created_at', 'payments', ['created_at'])
    op.create_index('ix_payments_provider_ref', 'payments', ['provider', 'provider_payment_id'])
    op.create_index('ix_payments_user_status', 'payments', ['user_id', 'status'])

    op.create_table(
        'user_balances',
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('balance', MONEY, nullable=False, server_default='0', comment='当前余额'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('user_id'),
    )

    op.create_table(
        'balance_ledger_entries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('amount', MONEY, nullable=False, comment='带符号金额'),
        sa.Column('balance_after', MONEY, nullable=False, comment='变动后余额'),
        sa.Column('kind', sa.String(length=16), nullable=False, comment='credit/debit/refund'),
        sa.Column('payment_id', sa.String(length=36), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_balance_ledger_entries_user_id', 'balance_ledger_entries', ['user_id'])
    op.create_index('ix_balance_ledger_entries_payment_id', 'balance_ledger_entries', ['payment_id'])
    op.create_index('ix_ledger_payment_kind', 'balance_ledger_entries', ['payment_id', 'kind'])


def downgrade() -> None:
    op.drop_index('ix_ledger_payment_kind', table_name='balance_ledger_entries')
    op.drop_index('ix_balance_ledger_entries_payment_id', table_name='balance_ledger_entries')
    op.drop_index('ix_balance_ledger_entries_user_id', table_name='balance_ledger_entries')
    op.drop_table('balance_ledger_entries')
    op.drop_table('user_balances')
    for name in (
        'ix_payments_user_status',
        'ix_payments_provider_ref',
        'ix_payments_created_at',
        'ix_payments_status',
        'ix_payments_order_id',
        'ix_payments_user_id',
    ):
        op.drop_index(name, table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_user_id', table_name='orders')
    op.drop_table('orders')
