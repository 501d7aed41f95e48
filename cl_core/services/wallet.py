"""
钱包账本服务

余额只通过 credit/debit 变更，每次变更写入一条不可变流水：
新流水的 balance_before 等于上一条的 balance_after。
"""
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cl_core.models.base import utcnow
from cl_core.models.wallet import Wallet, WalletTransaction
from cl_core.schemas import WalletTxnMeta
from cl_core.utils.errors import InsufficientFunds, ValidationError
from cl_core.utils.money import ZERO, round2

from .base import BaseService

MetaLike = Union[WalletTxnMeta, dict]


class WalletLedger(BaseService):
    """钱包余额与流水"""

    async def ensure_wallet(self, user_id: int, session: Optional[AsyncSession] = None) -> Wallet:
        """获取或创建钱包（幂等）"""
        return await self.execute_with_transaction(self._get_or_create, user_id, session=session)

    async def _get_or_create(self, session: AsyncSession, user_id: int, lock: bool = False) -> Wallet:
        stmt = select(Wallet).where(Wallet.user_id == user_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        wallet = result.scalar_one_or_none()

        if wallet is None:
            wallet = Wallet(user_id=user_id, balance=ZERO)
            session.add(wallet)
            await session.flush()
            self.logger.info(f"创建钱包: user_id={user_id}")

        return wallet

    @staticmethod
    def _positive_amount(amount) -> Decimal:
        try:
            value = round2(amount)
        except ValueError:
            raise ValidationError(code="INVALID_AMOUNT", detail="Amount must be a number")
        if value <= 0:
            raise ValidationError(code="INVALID_AMOUNT", detail="Amount must be greater than 0")
        return value

    async def credit(
        self,
        user_id: int,
        amount,
        meta: MetaLike,
        session: Optional[AsyncSession] = None
    ) -> WalletTransaction:
        """入账"""
        value = self._positive_amount(amount)
        return await self._update_balance(user_id, value, meta, session=session)

    async def debit(
        self,
        user_id: int,
        amount,
        meta: MetaLike,
        session: Optional[AsyncSession] = None
    ) -> WalletTransaction:
        """扣款，余额不足时抛出 InsufficientFunds，余额与流水均不变"""
        value = self._positive_amount(amount)
        return await self._update_balance(user_id, -value, meta, session=session)

    async def _update_balance(
        self,
        user_id: int,
        delta: Decimal,
        meta: MetaLike,
        session: Optional[AsyncSession] = None
    ) -> WalletTransaction:
        if not isinstance(meta, WalletTxnMeta):
            meta = WalletTxnMeta.model_validate(meta)
        return await self.execute_with_transaction(self._apply_delta, user_id, delta, meta, session=session)

    async def _apply_delta(
        self,
        session: AsyncSession,
        user_id: int,
        delta: Decimal,
        meta: WalletTxnMeta
    ) -> WalletTransaction:
        wallet = await self._get_or_create(session, user_id, lock=True)

        before = round2(wallet.balance)
        after = round2(before + delta)
        if after < 0:
            self.logger.warning(
                "Wallet debit rejected",
                user_id=user_id,
                required=str(-delta),
                balance=str(before)
            )
            raise InsufficientFunds(required=round2(-delta), balance=before)

        wallet.balance = after
        wallet.updated_at = utcnow()

        entry = WalletTransaction(
            wallet_id=wallet.id,
            user_id=user_id,
            txn_type=meta.txn_type.value,
            amount=round2(abs(delta)),
            balance_before=before,
            balance_after=after,
            reference_type=meta.reference_type,
            reference_id=meta.reference_id,
            payment_method=meta.payment_method,
            description=meta.description
        )
        session.add(entry)
        await session.flush()

        self.logger.info(
            "Wallet balance updated",
            user_id=user_id,
            txn_type=entry.txn_type,
            balance_before=str(before),
            balance_after=str(after)
        )
        return entry

    async def get_balance(self, user_id: int, session: Optional[AsyncSession] = None) -> Decimal:
        """当前余额，无钱包时为 0"""
        async def _read(s: AsyncSession) -> Decimal:
            result = await s.execute(select(Wallet.balance).where(Wallet.user_id == user_id))
            balance = result.scalar_one_or_none()
            return round2(balance) if balance is not None else ZERO

        if session is not None:
            return await _read(session)
        return await self.execute_with_session(_read)

    async def list_transactions(self, user_id: int, limit: int = 50) -> List[WalletTransaction]:
        """最近的流水，新的在前"""
        async def _read(s: AsyncSession) -> List[WalletTransaction]:
            stmt = (
                select(WalletTransaction)
                .where(WalletTransaction.user_id == user_id)
                .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
                .limit(limit)
            )
            result = await s.execute(stmt)
            return list(result.scalars().all())

        return await self.execute_with_session(_read)
