"""
商品与购物车数据模型
商品 CRUD 由外部系统维护，这里只声明结算需要读取/锁定的列
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger, CheckConstraint, DateTime, ForeignKey, Index, Integer,
    String, UniqueConstraint, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK, Money, utcnow
from .enums import ProductStatus


class Product(Base):
    """商品表"""
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, comment="商品名称")
    price: Mapped[Decimal] = mapped_column(
        Money,
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
        nullable=False,
        comment="单价（含税）"
    )
    stock: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        nullable=False,
        default=0,
        comment="可售库存"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ProductStatus.AVAILABLE.value,
        comment="available/unavailable"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="更新时间"
    )

    @property
    def is_available(self) -> bool:
        return str(self.status or "").lower() != ProductStatus.UNAVAILABLE.value

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, price={self.price}, stock={self.stock})>"


class CartItem(Base):
    """购物车行 - 用户私有，结算成功后删除"""
    __tablename__ = "cart"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="用户ID")
    product_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        comment="商品ID"
    )
    quantity: Mapped[int] = mapped_column(
        Integer,
        CheckConstraint("quantity > 0", name="ck_cart_quantity_positive"),
        nullable=False,
        comment="数量"
    )
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="加入时间"
    )

    product: Mapped["Product"] = relationship("Product")

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_cart_user_product"),
        Index("ix_cart_user", "user_id"),
    )
