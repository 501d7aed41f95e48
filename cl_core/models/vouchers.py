"""
优惠券数据模型
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, Money, utcnow


class Voucher(Base):
    """优惠券表

    used_count 只在结算成功时 +1、退款成功时 -1；报价阶段不消耗次数。
    usage_limit 为空表示不限次数。
    """
    __tablename__ = "vouchers"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, comment="优惠码")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="描述")
    allowed_role: Mapped[Optional[str]] = mapped_column(String(30), nullable=True, default="adopter", comment="可用角色")
    discount_type: Mapped[str] = mapped_column(String(20), nullable=False, comment="percentage/fixed")
    discount_value: Mapped[Decimal] = mapped_column(
        Money,
        CheckConstraint("discount_value >= 0", name="ck_vouchers_value_non_negative"),
        nullable=False,
        comment="折扣值（百分比或金额）"
    )
    expiry_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, comment="过期时间")
    usage_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, comment="可用次数，空为不限")
    used_count: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("used_count >= 0", name="ck_vouchers_used_non_negative"),
        nullable=False,
        default=0,
        comment="已用次数"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="创建时间"
    )

    __table_args__ = (
        CheckConstraint(
            "usage_limit IS NULL OR used_count <= usage_limit",
            name="ck_vouchers_used_within_limit"
        ),
        Index("ix_vouchers_expiry", "expiry_date"),
    )

    def __repr__(self) -> str:
        return f"<Voucher(id={self.id}, code={self.code}, used={self.used_count}/{self.usage_limit})>"
