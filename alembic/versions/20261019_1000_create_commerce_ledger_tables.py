"""Create commerce ledger tables

Revision ID: create_commerce_ledger_tables
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'create_commerce_ledger_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(precision=12, scale=2)
JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    """创建商品、购物车、优惠券、订单、支付、钱包、退款、风控表"""

    op.create_table('products',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False, comment='商品名称'),
        sa.Column('price', MONEY, nullable=False, comment='单价（含税）'),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0', comment='可售库存'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='available', comment='available/unavailable'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.CheckConstraint('price >= 0', name='ck_products_price_non_negative'),
        sa.CheckConstraint('stock >= 0', name='ck_products_stock_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('vouchers',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('code', sa.String(length=50), nullable=False, comment='优惠码'),
        sa.Column('description', sa.Text(), nullable=True, comment='描述'),
        sa.Column('allowed_role', sa.String(length=30), nullable=True, server_default='adopter', comment='可用角色'),
        sa.Column('discount_type', sa.String(length=20), nullable=False, comment='percentage/fixed'),
        sa.Column('discount_value', MONEY, nullable=False, comment='折扣值（百分比或金额）'),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=False, comment='过期时间'),
        sa.Column('usage_limit', sa.Integer(), nullable=True, comment='可用次数，空为不限'),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0', comment='已用次数'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.CheckConstraint('discount_value >= 0', name='ck_vouchers_value_non_negative'),
        sa.CheckConstraint('used_count >= 0', name='ck_vouchers_used_non_negative'),
        sa.CheckConstraint('usage_limit IS NULL OR used_count <= usage_limit', name='ck_vouchers_used_within_limit'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code')
    )
    op.create_index('ix_vouchers_expiry', 'vouchers', ['expiry_date'], unique=False)

    op.create_table('cart',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False, comment='用户ID'),
        sa.Column('product_id', sa.BigInteger(), nullable=False, comment='商品ID'),
        sa.Column('quantity', sa.Integer(), nullable=False, comment='数量'),
        sa.Column('added_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='加入时间'),
        sa.CheckConstraint('quantity > 0', name='ck_cart_quantity_positive'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'product_id', name='uq_cart_user_product')
    )
    op.create_index('ix_cart_user', 'cart', ['user_id'], unique=False)

    op.create_table('orders',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False, comment='下单用户ID'),
        sa.Column('voucher_id', sa.BigInteger(), nullable=True, comment='使用的优惠券'),
        sa.Column('order_type', sa.String(length=20), nullable=False, server_default='PURCHASE', comment='PURCHASE/TOPUP'),
        sa.Column('subtotal', MONEY, nullable=False, comment='商品小计'),
        sa.Column('discount_amount', MONEY, nullable=False, server_default='0', comment='优惠金额'),
        sa.Column('shipping_fee', MONEY, nullable=False, server_default='0', comment='运费'),
        sa.Column('tax_amount', MONEY, nullable=False, server_default='0', comment='含税价中的税额（展示用）'),
        sa.Column('total_amount', MONEY, nullable=False, comment='应付总额'),
        sa.Column('payment_status', sa.String(length=30), nullable=False, server_default='UNPAID', comment='支付状态'),
        sa.Column('delivery_status', sa.String(length=30), nullable=False, server_default='PROCESSING', comment='配送状态'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='下单时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.CheckConstraint('total_amount >= 0', name='ck_orders_total_non_negative'),
        sa.ForeignKeyConstraint(['voucher_id'], ['vouchers.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_orders_user_created', 'orders', ['user_id', 'created_at'], unique=False)

    op.create_table('order_items',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False, comment='关联订单ID'),
        sa.Column('product_id', sa.BigInteger(), nullable=False, comment='商品ID'),
        sa.Column('quantity', sa.Integer(), nullable=False, comment='数量'),
        sa.Column('price_each', MONEY, nullable=False, comment='成交单价'),
        sa.Column('item_total', MONEY, nullable=False, comment='行小计 = 单价 × 数量'),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_items_order', 'order_items', ['order_id'], unique=False)

    op.create_table('delivery_tracking',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False, comment='关联订单ID'),
        sa.Column('status', sa.String(length=30), nullable=False, server_default='PROCESSING', comment='配送状态'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id')
    )

    op.create_table('transactions',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=True, comment='关联订单ID'),
        sa.Column('gateway_reference', sa.String(length=64), nullable=True, comment='网关订单号'),
        sa.Column('txn_retrieval_ref', sa.String(length=100), nullable=True, comment='扫码支付检索号'),
        sa.Column('payer_id', sa.String(length=64), nullable=True, comment='付款人ID'),
        sa.Column('payer_email', sa.String(length=255), nullable=True, comment='付款人邮箱'),
        sa.Column('amount', MONEY, nullable=False, comment='金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='SGD', comment='币种'),
        sa.Column('status', sa.String(length=30), nullable=True, comment='网关状态'),
        sa.Column('payment_method', sa.String(length=20), nullable=False, server_default='UNKNOWN', comment='支付方式'),
        sa.Column('transaction_time', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='交易时间'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_transactions_order_time', 'transactions', ['order_id', 'transaction_time'], unique=False)
    op.create_index('ix_transactions_gateway_ref', 'transactions', ['gateway_reference'], unique=False)

    op.create_table('pending_payments',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False, comment='用户ID'),
        sa.Column('gateway_reference', sa.String(length=100), nullable=False, comment='网关订单号/扫码检索号'),
        sa.Column('purpose', sa.String(length=20), nullable=False, comment='CHECKOUT/TOPUP'),
        sa.Column('payment_method', sa.String(length=20), nullable=False, comment='支付方式'),
        sa.Column('amount', MONEY, nullable=False, comment='发起金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='SGD', comment='币种'),
        sa.Column('voucher_code', sa.String(length=50), nullable=True, comment='报价时的优惠码'),
        sa.Column('voucher_id', sa.BigInteger(), nullable=True, comment='报价时解析出的优惠券'),
        sa.Column('quote_total', MONEY, nullable=True, comment='创建网关订单时的报价总额'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING', comment='PENDING/COMPLETED/FAILED'),
        sa.Column('order_id', sa.BigInteger(), nullable=True, comment='完成后生成的订单'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True, comment='完成时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'gateway_reference', name='uq_pending_payments_user_ref')
    )

    op.create_table('wallets',
        sa.Column('id', sa.BigInteger(), nullable=False, comment='钱包ID'),
        sa.Column('user_id', sa.BigInteger(), nullable=False, comment='所属用户ID'),
        sa.Column('balance', MONEY, nullable=False, server_default='0', comment='当前余额'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.CheckConstraint('balance >= 0', name='ck_wallets_balance_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id')
    )

    op.create_table('wallet_transactions',
        sa.Column('id', sa.BigInteger(), nullable=False, comment='流水ID'),
        sa.Column('wallet_id', sa.BigInteger(), nullable=False, comment='钱包ID'),
        sa.Column('user_id', sa.BigInteger(), nullable=False, comment='用户ID'),
        sa.Column('txn_type', sa.String(length=30), nullable=False, comment='流水类型'),
        sa.Column('amount', MONEY, nullable=False, comment='金额（正数）'),
        sa.Column('balance_before', MONEY, nullable=False, comment='交易前余额'),
        sa.Column('balance_after', MONEY, nullable=False, comment='交易后余额'),
        sa.Column('reference_type', sa.String(length=30), nullable=True, comment='关联类型：ORDER/TOPUP'),
        sa.Column('reference_id', sa.String(length=100), nullable=True, comment='关联ID'),
        sa.Column('payment_method', sa.String(length=30), nullable=True, comment='支付方式'),
        sa.Column('description', sa.Text(), nullable=True, comment='描述'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.CheckConstraint('amount > 0', name='ck_wallet_txn_amount_positive'),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_wallet_tx_wallet_time', 'wallet_transactions', ['wallet_id', 'created_at'], unique=False)
    op.create_index('idx_wallet_tx_user_type_time', 'wallet_transactions', ['user_id', 'txn_type', 'created_at'], unique=False)

    op.create_table('refund_requests',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False, comment='订单ID'),
        sa.Column('user_id', sa.BigInteger(), nullable=False, comment='申请人'),
        sa.Column('refund_items', JSON_TYPE, nullable=False, comment='逐行退款明细'),
        sa.Column('amount', MONEY, nullable=False, comment='退款金额'),
        sa.Column('reason', sa.Text(), nullable=False, comment='退款原因'),
        sa.Column('details', sa.Text(), nullable=True, comment='补充说明'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING', comment='PENDING/REFUNDED/REJECTED/FAILED'),
        sa.Column('payment_method', sa.String(length=20), nullable=True, comment='原支付方式'),
        sa.Column('payment_reference', sa.String(length=100), nullable=True, comment='原支付参考号'),
        sa.Column('refund_reference', sa.String(length=100), nullable=True, comment='退款参考号'),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True, comment='退款完成时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='申请时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_refund_requests_order_status', 'refund_requests', ['order_id', 'status'], unique=False)
    op.create_index('ix_refund_requests_user', 'refund_requests', ['user_id', 'created_at'], unique=False)

    op.create_table('risk_flags',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False, comment='用户ID'),
        sa.Column('event_type', sa.String(length=50), nullable=False, comment='事件类型'),
        sa.Column('reason', sa.Text(), nullable=True, comment='原因'),
        sa.Column('details', JSON_TYPE, nullable=True, comment='详情'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='记录时间'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_risk_flags_user_time', 'risk_flags', ['user_id', 'created_at'], unique=False)
    op.create_index('ix_risk_flags_event_time', 'risk_flags', ['event_type', 'created_at'], unique=False)


def downgrade() -> None:
    """按依赖逆序删除"""
    op.drop_index('ix_risk_flags_event_time', table_name='risk_flags')
    op.drop_index('ix_risk_flags_user_time', table_name='risk_flags')
    op.drop_table('risk_flags')

    op.drop_index('ix_refund_requests_user', table_name='refund_requests')
    op.drop_index('ix_refund_requests_order_status', table_name='refund_requests')
    op.drop_table('refund_requests')

    op.drop_index('idx_wallet_tx_user_type_time', table_name='wallet_transactions')
    op.drop_index('idx_wallet_tx_wallet_time', table_name='wallet_transactions')
    op.drop_table('wallet_transactions')
    op.drop_table('wallets')

    op.drop_table('pending_payments')

    op.drop_index('ix_transactions_gateway_ref', table_name='transactions')
    op.drop_index('ix_transactions_order_time', table_name='transactions')
    op.drop_table('transactions')

    op.drop_table('delivery_tracking')
    op.drop_index('ix_order_items_order', table_name='order_items')
    op.drop_table('order_items')
    op.drop_index('ix_orders_user_created', table_name='orders')
    op.drop_table('orders')

    op.drop_index('ix_cart_user', table_name='cart')
    op.drop_table('cart')
    op.drop_index('ix_vouchers_expiry', table_name='vouchers')
    op.drop_table('vouchers')
    op.drop_table('products')
