"""
订单相关数据模型
订单与订单行由结算事务一次性写入，之后只允许支付/配送状态流转
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    BigInteger, CheckConstraint, DateTime, ForeignKey, Index, Integer,
    String, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK, Money, utcnow
from .enums import DeliveryStatus, OrderType, PaymentStatus


class Order(Base):
    """订单表

    total_amount = subtotal - discount_amount + shipping_fee；
    tax_amount 仅作展示，价格已含税。
    """
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="下单用户ID")
    voucher_id: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        ForeignKey("vouchers.id", ondelete="SET NULL"),
        nullable=True,
        comment="使用的优惠券"
    )
    order_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=OrderType.PURCHASE.value,
        comment="PURCHASE/TOPUP"
    )

    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="商品小计")
    discount_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"), comment="优惠金额")
    shipping_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"), comment="运费")
    tax_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"), comment="含税价中的税额（展示用）")
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="应付总额")

    payment_status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=PaymentStatus.UNPAID.value,
        comment="支付状态"
    )
    delivery_status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=DeliveryStatus.PROCESSING.value,
        comment="配送状态"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="下单时间"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="更新时间"
    )

    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.id"
    )

    __table_args__ = (
        Index("ix_orders_user_created", "user_id", "created_at"),
        CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, user_id={self.user_id}, total={self.total_amount})>"


class OrderItem(Base):
    """订单行 - 创建后不可修改"""
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="关联订单ID"
    )
    product_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("products.id"),
        nullable=False,
        comment="商品ID"
    )
    quantity: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        nullable=False,
        comment="数量"
    )
    price_each: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="成交单价")
    item_total: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="行小计 = 单价 × 数量")

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (
        Index("ix_order_items_order", "order_id"),
    )


class DeliveryTracking(Base):
    """配送跟踪表"""
    __tablename__ = "delivery_tracking"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        comment="关联订单ID"
    )
    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=DeliveryStatus.PROCESSING.value,
        comment="配送状态"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="更新时间"
    )
