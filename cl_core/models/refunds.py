"""
退款申请数据模型
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, JSONType, Money, utcnow
from .enums import RefundStatus


class RefundRequest(Base):
    """退款申请表

    同一订单任意时刻至多一条 PENDING 申请。
    refund_items 为提交时计算的逐行明细快照：
    [{"order_item_id", "quantity", "unit_refund", "line_refund"}]
    """
    __tablename__ = "refund_requests"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        comment="订单ID"
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="申请人")
    refund_items: Mapped[list] = mapped_column(JSONType, nullable=False, default=list, comment="逐行退款明细")
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="退款金额")
    reason: Mapped[str] = mapped_column(Text, nullable=False, comment="退款原因")
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="补充说明")
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=RefundStatus.PENDING.value,
        comment="PENDING/REFUNDED/REJECTED/FAILED"
    )
    payment_method: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, comment="原支付方式")
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="原支付参考号")
    refund_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="退款参考号")
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, comment="退款完成时间")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="申请时间"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="更新时间"
    )

    __table_args__ = (
        Index("ix_refund_requests_order_status", "order_id", "status"),
        Index("ix_refund_requests_user", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<RefundRequest(id={self.id}, order_id={self.order_id}, status={self.status})>"
