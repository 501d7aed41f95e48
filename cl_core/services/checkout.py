"""
结算事务

在同一个数据库事务内完成：锁定购物车与商品 → 重新校验与计价 →
写订单/配送跟踪/订单行 → 逐行条件扣减库存 → 清空购物车 → 消耗优惠券。
任一步失败整体回滚，不会出现部分扣减的库存。
"""
from typing import List, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cl_core.models.base import utcnow
from cl_core.models.catalog import CartItem, Product
from cl_core.models.enums import DeliveryStatus, OrderType
from cl_core.models.orders import DeliveryTracking, Order, OrderItem
from cl_core.models.vouchers import Voucher
from cl_core.schemas import CheckoutOptions, OrderLine, OrderSummary
from cl_core.utils.errors import ConcurrencyConflict, NotFoundError, StockConflict, VoucherError
from cl_core.utils.money import ZERO, round2

from .base import BaseService
from .pricing import PricingEngine
from .vouchers import VoucherStore


def to_order_summary(order: Order, items: Sequence[OrderItem]) -> OrderSummary:
    """订单 + 订单行 → OrderSummary（不触发关系懒加载）"""
    return OrderSummary(
        id=order.id,
        user_id=order.user_id,
        order_type=order.order_type,
        voucher_id=order.voucher_id,
        subtotal=round2(order.subtotal),
        discount_amount=round2(order.discount_amount),
        shipping_fee=round2(order.shipping_fee),
        tax_amount=round2(order.tax_amount),
        total_amount=round2(order.total_amount),
        payment_status=order.payment_status,
        delivery_status=order.delivery_status,
        created_at=order.created_at,
        items=[OrderLine.model_validate(item) for item in items]
    )


class CheckoutTransaction(BaseService):
    """购物车 → 订单"""

    def __init__(
        self,
        db_manager=None,
        settings=None,
        pricing: Optional[PricingEngine] = None,
        voucher_store: Optional[VoucherStore] = None
    ):
        super().__init__(db_manager, settings)
        self.voucher_store = voucher_store or VoucherStore(self.db_manager, self.settings)
        self.pricing = pricing or PricingEngine(self.db_manager, self.settings, self.voucher_store)

    async def checkout(
        self,
        user_id: int,
        options: Optional[CheckoutOptions] = None,
        session: Optional[AsyncSession] = None
    ) -> OrderSummary:
        """执行结算

        传入 session 时作为参与者运行，提交/回滚由调用方负责。
        """
        options = options or CheckoutOptions()
        summary = await self.execute_with_transaction(self._checkout, user_id, options, session=session)
        self.logger.info(
            "Checkout completed",
            user_id=user_id,
            order_id=summary.id,
            total=str(summary.total_amount),
            payment_status=summary.payment_status.value
        )
        return summary

    async def _lock_voucher(self, session: AsyncSession, voucher_id: int) -> Voucher:
        result = await session.execute(
            select(Voucher).where(Voucher.id == voucher_id).with_for_update()
        )
        voucher = result.scalar_one_or_none()
        if voucher is None:
            raise VoucherError(code="VOUCHER_NOT_FOUND", detail="Voucher not found")
        return voucher

    async def _decrement_stock(self, session: AsyncSession, product_id: int, quantity: int) -> None:
        """条件扣减库存（stock >= quantity），未命中即并发冲突"""
        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            raise StockConflict(
                detail="Stock changed during checkout, please try again.",
                product_id=product_id
            )

    async def _checkout(self, session: AsyncSession, user_id: int, options: CheckoutOptions) -> OrderSummary:
        # 1-2. 锁定并重新校验
        rows = await self.pricing.load_cart_rows(session, user_id, lock=True)
        lines, subtotal = self.pricing.price_lines(rows)

        # 3. 基于锁定后的数据重新计价
        shipping = self.pricing.compute_shipping(subtotal)
        tax = self.pricing.compute_tax(subtotal)

        voucher: Optional[Voucher] = None
        discount = ZERO
        if options.voucher_id is not None:
            voucher = await self._lock_voucher(session, options.voucher_id)
            self.voucher_store.check_usable(voucher)
            discount = self.voucher_store.compute_discount(voucher, round2(subtotal + shipping))

        total = round2(subtotal + shipping - discount)
        if options.expected_total is not None and total != options.expected_total:
            self.logger.warning(
                "Checkout total changed since quote",
                user_id=user_id,
                expected=str(options.expected_total),
                actual=str(total)
            )
            raise ConcurrencyConflict(
                code="QUOTE_STALE",
                detail="Cart changed during payment, please refresh and try again."
            )

        # 4. 订单与配送跟踪
        order = Order(
            user_id=user_id,
            voucher_id=voucher.id if voucher else None,
            order_type=OrderType.PURCHASE.value,
            subtotal=subtotal,
            discount_amount=discount,
            shipping_fee=shipping,
            tax_amount=tax,
            total_amount=total,
            payment_status=options.payment_status.value,
            delivery_status=DeliveryStatus.PROCESSING.value
        )
        session.add(order)
        await session.flush()
        session.add(DeliveryTracking(order_id=order.id, status=DeliveryStatus.PROCESSING.value))

        # 5. 订单行
        items: List[OrderItem] = [
            OrderItem(
                order_id=order.id,
                product_id=line.product_id,
                quantity=line.quantity,
                price_each=line.price_each,
                item_total=line.line_total
            )
            for line in lines
        ]
        session.add_all(items)
        await session.flush()

        # 6. 逐行扣减库存
        for cart_item, product in rows:
            await self._decrement_stock(session, product.id, cart_item.quantity)

        # 7. 清空购物车
        await session.execute(
            delete(CartItem)
            .where(CartItem.user_id == user_id)
            .execution_options(synchronize_session=False)
        )

        # 8. 消耗优惠券
        if voucher is not None:
            await self.voucher_store.increment_usage(voucher.id, session=session)

        return to_order_summary(order, items)

    async def get_order(self, order_id: int, user_id: Optional[int] = None) -> OrderSummary:
        """查询订单；指定 user_id 时校验归属"""
        async def _read(session: AsyncSession) -> OrderSummary:
            result = await session.execute(
                select(Order).options(selectinload(Order.items)).where(Order.id == order_id)
            )
            order = result.scalar_one_or_none()
            if order is None or (user_id is not None and order.user_id != user_id):
                raise NotFoundError(code="ORDER_NOT_FOUND", resource="Order")
            return to_order_summary(order, order.items)

        return await self.execute_with_session(_read)

    async def list_orders(self, user_id: int, limit: int = 50) -> List[OrderSummary]:
        """用户订单列表，新的在前"""
        async def _read(session: AsyncSession) -> List[OrderSummary]:
            result = await session.execute(
                select(Order)
                .options(selectinload(Order.items))
                .where(Order.user_id == user_id)
                .order_by(Order.created_at.desc(), Order.id.desc())
                .limit(limit)
            )
            return [to_order_summary(order, order.items) for order in result.scalars().all()]

        return await self.execute_with_session(_read)
