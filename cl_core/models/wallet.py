"""
钱包与账本数据模型
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger, CheckConstraint, DateTime, ForeignKey, Index, String, Text, func
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, Money, utcnow


class Wallet(Base):
    """钱包表 - 每个用户一个，懒加载创建"""
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, comment="钱包ID")
    user_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False, comment="所属用户ID")

    # 余额 = 最新一条流水的 balance_after
    balance: Mapped[Decimal] = mapped_column(
        Money,
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
        default=Decimal("0.00"),
        nullable=False,
        comment="当前余额"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        comment="创建时间"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
        comment="更新时间"
    )

    def __repr__(self) -> str:
        return f"<Wallet(id={self.id}, user_id={self.user_id}, balance={self.balance})>"


class WalletTransaction(Base):
    """钱包流水表（只追加，不更新不删除）"""
    __tablename__ = "wallet_transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, comment="流水ID")
    wallet_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("wallets.id", ondelete="CASCADE"),
        nullable=False,
        comment="钱包ID"
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="用户ID")

    # TOPUP / PURCHASE_DEBIT / REFUND_CREDIT / ADJUSTMENT
    txn_type: Mapped[str] = mapped_column(String(30), nullable=False, comment="流水类型")

    # 绝对值，方向由 balance_before / balance_after 体现
    amount: Mapped[Decimal] = mapped_column(
        Money,
        CheckConstraint("amount > 0", name="ck_wallet_txn_amount_positive"),
        nullable=False,
        comment="金额（正数）"
    )
    balance_before: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="交易前余额")
    balance_after: Mapped[Decimal] = mapped_column(Money, nullable=False, comment="交易后余额")

    reference_type: Mapped[Optional[str]] = mapped_column(String(30), nullable=True, comment="关联类型：ORDER/TOPUP")
    reference_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="关联ID")
    payment_method: Mapped[Optional[str]] = mapped_column(String(30), nullable=True, comment="支付方式")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="描述")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        comment="创建时间"
    )

    __table_args__ = (
        Index("idx_wallet_tx_wallet_time", "wallet_id", "created_at"),
        Index("idx_wallet_tx_user_type_time", "user_id", "txn_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<WalletTransaction(id={self.id}, type={self.txn_type}, amount={self.amount})>"
