"""
支付记录数据模型
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, Money, utcnow
from .enums import PendingPaymentStatus


class PaymentTransaction(Base):
    """支付流水表（不可变）- 同一订单可有多条，以最新一条为准"""
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True,
        comment="关联订单ID"
    )
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, comment="网关订单号")
    txn_retrieval_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="扫码支付检索号")
    payer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, comment="付款人ID")
    payer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, comment="付款人邮箱")
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="金额")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="SGD", comment="币种")
    status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True, comment="网关状态")
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="UNKNOWN", comment="支付方式")
    transaction_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="交易时间"
    )

    __table_args__ = (
        Index("ix_transactions_order_time", "order_id", "transaction_time"),
        Index("ix_transactions_gateway_ref", "gateway_reference"),
    )


class PendingPayment(Base):
    """待确认支付 - 关联网关订单/扫码请求与用户，进程重启后仍可继续确认"""
    __tablename__ = "pending_payments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="用户ID")
    gateway_reference: Mapped[str] = mapped_column(String(100), nullable=False, comment="网关订单号/扫码检索号")
    purpose: Mapped[str] = mapped_column(String(20), nullable=False, comment="CHECKOUT/TOPUP")
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, comment="支付方式")
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="发起金额")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="SGD", comment="币种")
    voucher_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, comment="报价时的优惠码")
    voucher_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, comment="报价时解析出的优惠券")
    quote_total: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True, comment="创建网关订单时的报价总额")
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PendingPaymentStatus.PENDING.value,
        comment="PENDING/COMPLETED/FAILED"
    )
    order_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, comment="完成后生成的订单")
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="失败原因")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="创建时间"
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, comment="完成时间")

    __table_args__ = (
        UniqueConstraint("user_id", "gateway_reference", name="uq_pending_payments_user_ref"),
    )
