"""
购物车服务
"""
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cl_core.models.catalog import CartItem, Product
from cl_core.utils.errors import InsufficientStock, NotFoundError

from .base import BaseService


class CartService(BaseService):
    """购物车增删改查，数量下限为 1，且不超过当前库存"""

    @staticmethod
    def _safe_quantity(quantity) -> int:
        try:
            return max(int(quantity), 1)
        except (TypeError, ValueError):
            return 1

    async def list_items(self, user_id: int) -> List[CartItem]:
        async def _read(session: AsyncSession) -> List[CartItem]:
            stmt = (
                select(CartItem)
                .where(CartItem.user_id == user_id)
                .order_by(CartItem.added_at.desc(), CartItem.id.desc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self.execute_with_session(_read)

    async def add_item(self, user_id: int, product_id: int, quantity=1) -> CartItem:
        """加入购物车；已存在时累加数量"""
        qty = self._safe_quantity(quantity)

        async def _add(session: AsyncSession) -> CartItem:
            product = await session.get(Product, product_id)
            if product is None:
                raise NotFoundError(code="PRODUCT_NOT_FOUND", resource="Product")

            result = await session.execute(
                select(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
            )
            item = result.scalar_one_or_none()

            new_qty = qty + (item.quantity if item else 0)
            if new_qty > product.stock:
                raise InsufficientStock(
                    detail="Not enough stock for requested quantity",
                    product_id=product_id
                )

            if item is None:
                item = CartItem(user_id=user_id, product_id=product_id, quantity=new_qty)
                session.add(item)
            else:
                item.quantity = new_qty
            await session.flush()
            return item

        item = await self.execute_with_transaction(_add)
        self.logger.info("Cart item saved", user_id=user_id, product_id=product_id, quantity=item.quantity)
        return item

    async def update_quantity(self, user_id: int, cart_item_id: int, quantity) -> CartItem:
        qty = self._safe_quantity(quantity)

        async def _update(session: AsyncSession) -> CartItem:
            result = await session.execute(
                select(CartItem, Product)
                .join(Product, CartItem.product_id == Product.id)
                .where(CartItem.id == cart_item_id, CartItem.user_id == user_id)
            )
            row = result.first()
            if row is None:
                raise NotFoundError(code="CART_ITEM_NOT_FOUND", resource="Cart item")

            item, product = row[0], row[1]
            if qty > product.stock:
                raise InsufficientStock(
                    detail="Not enough stock for requested quantity",
                    product_id=product.id
                )
            item.quantity = qty
            await session.flush()
            return item

        return await self.execute_with_transaction(_update)

    async def remove_item(self, user_id: int, cart_item_id: int) -> bool:
        async def _remove(session: AsyncSession) -> bool:
            result = await session.execute(
                delete(CartItem).where(CartItem.id == cart_item_id, CartItem.user_id == user_id)
            )
            return result.rowcount > 0

        return await self.execute_with_transaction(_remove)

    async def clear(self, user_id: int, session: Optional[AsyncSession] = None) -> int:
        """清空购物车，返回删除行数"""
        async def _clear(s: AsyncSession) -> int:
            result = await s.execute(delete(CartItem).where(CartItem.user_id == user_id))
            return result.rowcount

        return await self.execute_with_transaction(_clear, session=session)
