"""
报价计算服务

价格含税：tax_amount = subtotal × rate / (100 + rate)，只用于展示，不计入总额。
运费：subtotal ≥ 阈值免运费，否则收取固定运费。
"""
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cl_core.models.catalog import CartItem, Product
from cl_core.schemas import Quote, QuoteLine
from cl_core.utils.errors import CartEmpty, InsufficientStock, VoucherError
from cl_core.utils.money import ZERO, round2

from .base import BaseService
from .vouchers import VoucherStore

CartRow = Tuple[CartItem, Product]


class PricingEngine(BaseService):
    """购物车报价"""

    def __init__(self, db_manager=None, settings=None, voucher_store: Optional[VoucherStore] = None):
        super().__init__(db_manager, settings)
        self.voucher_store = voucher_store or VoucherStore(self.db_manager, self.settings)

    def compute_shipping(self, subtotal: Decimal) -> Decimal:
        if subtotal <= 0:
            return ZERO
        if subtotal >= self.settings.shipping_threshold:
            return ZERO
        return round2(self.settings.shipping_fee)

    def compute_tax(self, subtotal: Decimal) -> Decimal:
        rate = self.settings.tax_rate_percent
        return round2(subtotal * rate / (Decimal("100") + rate))

    @staticmethod
    async def load_cart_rows(session: AsyncSession, user_id: int, lock: bool = False) -> List[CartRow]:
        """读取购物车行及商品价格/库存/状态；lock=True 时对两者加行锁"""
        stmt = (
            select(CartItem, Product)
            .join(Product, CartItem.product_id == Product.id)
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.id)
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    @staticmethod
    def price_lines(rows: Sequence[CartRow]) -> Tuple[List[QuoteLine], Decimal]:
        """校验可售与库存，返回报价行和小计"""
        if not rows:
            raise CartEmpty()

        lines: List[QuoteLine] = []
        subtotal = ZERO
        for cart_item, product in rows:
            if not product.is_available:
                raise InsufficientStock(
                    detail="One or more items are unavailable.",
                    code="PRODUCT_UNAVAILABLE",
                    product_id=product.id
                )
            if cart_item.quantity > product.stock:
                raise InsufficientStock(
                    detail=f"Not enough stock for {product.name}.",
                    product_id=product.id
                )

            price = round2(product.price)
            line_total = round2(price * cart_item.quantity)
            subtotal += line_total
            lines.append(QuoteLine(
                product_id=product.id,
                name=product.name,
                quantity=cart_item.quantity,
                price_each=price,
                line_total=line_total
            ))

        return lines, round2(subtotal)

    def check_voucher_role(self, role: Optional[str]) -> None:
        if (role or "").strip().lower() != self.settings.voucher_role:
            raise VoucherError(
                code="VOUCHER_ROLE_MISMATCH",
                detail=f"Vouchers are only available to {self.settings.voucher_role}s."
            )

    async def build_quote(
        self,
        user_id: int,
        role: Optional[str] = None,
        voucher_code: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> Quote:
        """计算购物车报价，返回解析出的 voucher_id（不消耗次数）"""
        if session is None:
            return await self.execute_with_session(self._build_quote, user_id, role, voucher_code)
        return await self._build_quote(session, user_id, role, voucher_code)

    async def _build_quote(
        self,
        session: AsyncSession,
        user_id: int,
        role: Optional[str],
        voucher_code: Optional[str]
    ) -> Quote:
        rows = await self.load_cart_rows(session, user_id)
        lines, subtotal = self.price_lines(rows)

        shipping = self.compute_shipping(subtotal)
        tax = self.compute_tax(subtotal)
        base = round2(subtotal + shipping)

        discount = ZERO
        voucher_id = None
        code = (voucher_code or "").strip() or None
        if code:
            self.check_voucher_role(role)
            application = await self.voucher_store.apply(code, base, role, session=session)
            discount = max(ZERO, min(application.discount_amount, base))
            voucher_id = application.voucher_id
            code = application.code

        total = round2(subtotal + shipping - discount)

        self.logger.debug(
            "Quote built",
            user_id=user_id,
            subtotal=str(subtotal),
            discount=str(discount),
            total=str(total)
        )

        return Quote(
            user_id=user_id,
            lines=lines,
            subtotal=subtotal,
            shipping_fee=shipping,
            tax_amount=tax,
            discount_amount=discount,
            total=total,
            currency=self.settings.currency,
            voucher_id=voucher_id,
            voucher_code=code
        )
