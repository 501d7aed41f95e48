"""
优惠券服务

试算（apply）只校验并计算折扣，不修改 used_count；
次数只在结算事务内 +1、在退款审批事务内 -1。
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cl_core.models.base import ensure_utc, utcnow
from cl_core.models.enums import DiscountType
from cl_core.models.vouchers import Voucher
from cl_core.schemas import VoucherApplication
from cl_core.utils.errors import ValidationError, VoucherError
from cl_core.utils.money import ZERO, round2, to_decimal

from .base import BaseService


class VoucherStore(BaseService):
    """优惠券查询、资格校验与次数计数"""

    STATUS_ACTIVE = "Active"
    STATUS_EXPIRED = "Expired"
    STATUS_USED_UP = "Used Up"

    async def get_by_code(self, code: str, session: Optional[AsyncSession] = None) -> Optional[Voucher]:
        """按优惠码查询（不区分大小写）"""
        if session is None:
            return await self.execute_with_session(self._get_by_code, code)
        return await self._get_by_code(session, code)

    async def _get_by_code(self, session: AsyncSession, code: str) -> Optional[Voucher]:
        stmt = select(Voucher).where(func.lower(Voucher.code) == code.strip().lower())
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def apply(
        self,
        code: str,
        base_amount,
        role: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> VoucherApplication:
        """校验优惠券并计算折扣（不消耗次数）"""
        try:
            base = round2(base_amount)
        except ValueError:
            raise ValidationError(code="INVALID_AMOUNT", detail="Invalid voucher base amount")
        if base < 0:
            raise ValidationError(code="INVALID_AMOUNT", detail="Voucher base amount cannot be negative")

        code = (code or "").strip()
        if not code:
            raise VoucherError(code="VOUCHER_NOT_FOUND", detail="Voucher not found")

        voucher = await self.get_by_code(code, session=session)
        if voucher is None:
            raise VoucherError(code="VOUCHER_NOT_FOUND", detail="Voucher not found")

        self.check_usable(voucher, role)
        discount = self.compute_discount(voucher, base)

        return VoucherApplication(
            voucher_id=voucher.id,
            code=voucher.code,
            discount_type=DiscountType(voucher.discount_type),
            discount_amount=discount
        )

    @staticmethod
    def check_usable(voucher: Voucher, role: Optional[str] = None, now: Optional[datetime] = None) -> None:
        """校验角色、有效期与使用次数"""
        now = now or utcnow()

        allowed = (voucher.allowed_role or "").strip().lower()
        user_role = (role or "").strip().lower()
        if allowed and user_role and allowed != user_role:
            raise VoucherError(code="VOUCHER_ROLE_MISMATCH", detail="Voucher not available for this account")

        if ensure_utc(voucher.expiry_date) < now:
            raise VoucherError(code="VOUCHER_EXPIRED", detail="Voucher expired")

        if voucher.usage_limit is not None and voucher.used_count >= voucher.usage_limit:
            raise VoucherError(code="VOUCHER_LIMIT_REACHED", detail="Voucher usage limit reached")

    @staticmethod
    def compute_discount(voucher: Voucher, base_amount: Decimal) -> Decimal:
        """按类型计算折扣，结果限制在 [0, base_amount]"""
        base = round2(base_amount)
        value = to_decimal(voucher.discount_value)

        if voucher.discount_type == DiscountType.PERCENTAGE.value:
            discount = round2(base * value / Decimal("100"))
        elif voucher.discount_type == DiscountType.FIXED.value:
            discount = round2(value)
        else:
            raise VoucherError(code="VOUCHER_UNSUPPORTED_TYPE", detail="Unsupported voucher type")

        return max(ZERO, min(discount, base))

    async def increment_usage(self, voucher_id: int, session: Optional[AsyncSession] = None) -> None:
        """原子地消耗一次（used_count < usage_limit 时才更新）"""
        await self.execute_with_transaction(self._increment_usage, voucher_id, session=session)

    async def _increment_usage(self, session: AsyncSession, voucher_id: int) -> None:
        stmt = (
            update(Voucher)
            .where(
                Voucher.id == voucher_id,
                or_(Voucher.usage_limit.is_(None), Voucher.used_count < Voucher.usage_limit)
            )
            .values(used_count=Voucher.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            self.logger.warning("Voucher usage increment rejected", voucher_id=voucher_id)
            raise VoucherError(code="VOUCHER_LIMIT_REACHED", detail="Voucher usage limit reached")

        self.logger.info("Voucher usage incremented", voucher_id=voucher_id)

    async def decrement_usage(self, voucher_id: int, session: Optional[AsyncSession] = None) -> None:
        """原子地归还一次，下限为 0"""
        await self.execute_with_transaction(self._decrement_usage, voucher_id, session=session)

    async def _decrement_usage(self, session: AsyncSession, voucher_id: int) -> None:
        stmt = (
            update(Voucher)
            .where(Voucher.id == voucher_id)
            .values(used_count=case((Voucher.used_count > 0, Voucher.used_count - 1), else_=0))
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)
        self.logger.info("Voucher usage decremented", voucher_id=voucher_id)

    @classmethod
    def voucher_status(cls, voucher: Voucher, now: Optional[datetime] = None) -> str:
        """展示状态：Active / Expired / Used Up"""
        now = now or utcnow()
        if voucher.expiry_date is not None and ensure_utc(voucher.expiry_date) < now:
            return cls.STATUS_EXPIRED
        if voucher.usage_limit is not None and voucher.used_count >= voucher.usage_limit:
            return cls.STATUS_USED_UP
        return cls.STATUS_ACTIVE

    async def list_for_role(self, role: Optional[str]) -> Dict[str, List[Voucher]]:
        """列出某角色可见的优惠券，拆分为可用与已用完/已过期"""
        grouped: Dict[str, List[Voucher]] = {"active": [], "used": []}
        role = (role or "").strip().lower()
        if role != self.settings.voucher_role:
            return grouped

        async def _load(session: AsyncSession) -> List[Voucher]:
            result = await session.execute(select(Voucher).order_by(Voucher.expiry_date.desc()))
            return list(result.scalars().all())

        now = utcnow()
        for voucher in await self.execute_with_session(_load):
            allowed = (voucher.allowed_role or "").strip().lower()
            if allowed and allowed != role:
                continue
            if self.voucher_status(voucher, now) == self.STATUS_ACTIVE:
                grouped["active"].append(voucher)
            else:
                grouped["used"].append(voucher)
        return grouped
