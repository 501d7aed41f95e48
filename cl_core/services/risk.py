"""
风控标记服务

硬性上限（单笔充值上限、充值后余额上限）：先记录标记，再拒绝操作。
软性规则（短时间内充值次数、滚动窗口充值总额）：只记录标记，不阻断。
"""
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cl_core.models.base import utcnow
from cl_core.models.enums import RiskEventType, WalletTxnType
from cl_core.models.risk import RiskFlag
from cl_core.models.wallet import Wallet, WalletTransaction
from cl_core.utils.errors import ValidationError
from cl_core.utils.money import ZERO, round2

from .base import BaseService


class RiskFlagger(BaseService):
    """充值异常检测与风控标记记录"""

    async def record(
        self,
        user_id: int,
        event_type: RiskEventType,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        session: Optional[AsyncSession] = None
    ) -> RiskFlag:
        """追加一条风控标记；未传入 session 时在独立短事务中写入"""
        async def _insert(s: AsyncSession) -> RiskFlag:
            flag = RiskFlag(
                user_id=user_id,
                event_type=RiskEventType(event_type).value,
                reason=reason,
                details=details
            )
            s.add(flag)
            await s.flush()
            return flag

        flag = await self.execute_with_transaction(_insert, session=session)
        self.logger.warning("Risk flag recorded", user_id=user_id, event_type=flag.event_type, reason=reason)
        return flag

    async def _topup_stats(self, session: AsyncSession, user_id: int) -> Dict[str, Any]:
        now = utcnow()
        rapid_since = now - timedelta(minutes=self.settings.topup_rapid_window_minutes)
        volume_since = now - timedelta(hours=self.settings.topup_volume_window_hours)

        balance = (await session.execute(
            select(Wallet.balance).where(Wallet.user_id == user_id)
        )).scalar_one_or_none()

        rapid_count = (await session.execute(
            select(func.count(WalletTransaction.id)).where(
                WalletTransaction.user_id == user_id,
                WalletTransaction.txn_type == WalletTxnType.TOPUP.value,
                WalletTransaction.created_at >= rapid_since
            )
        )).scalar_one()

        volume = (await session.execute(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                WalletTransaction.user_id == user_id,
                WalletTransaction.txn_type == WalletTxnType.TOPUP.value,
                WalletTransaction.created_at >= volume_since
            )
        )).scalar_one()

        return {
            "balance": round2(balance) if balance is not None else ZERO,
            "rapid_count": int(rapid_count or 0),
            "volume": round2(volume),
        }

    async def evaluate_topup(self, user_id: int, amount) -> List[RiskEventType]:
        """充值前检查

        超过硬性上限时抛出 ValidationError；返回本次记录的软性标记。
        """
        try:
            value = round2(amount)
        except ValueError:
            raise ValidationError(code="INVALID_AMOUNT", detail="Top-up amount must be a number")
        if value <= 0:
            raise ValidationError(code="INVALID_AMOUNT", detail="Top-up amount must be greater than 0")

        settings = self.settings
        per_txn_cap = round2(settings.wallet_topup_max_per_txn)
        if value > per_txn_cap:
            await self.record(
                user_id,
                RiskEventType.TOPUP_TXN_CAP_EXCEEDED,
                "Top-up exceeds per-transaction cap",
                {"cap": str(per_txn_cap), "attempted": str(value)}
            )
            raise ValidationError(
                code="WALLET_TOPUP_CAP_EXCEEDED",
                detail=f"Top-up amount cannot exceed {settings.currency} {per_txn_cap}"
            )

        stats = await self.execute_with_session(self._topup_stats, user_id)

        balance_cap = round2(settings.wallet_balance_cap)
        if stats["balance"] + value > balance_cap:
            await self.record(
                user_id,
                RiskEventType.WALLET_BALANCE_CAP_EXCEEDED,
                "Wallet balance cap exceeded",
                {"cap": str(balance_cap), "balance_before": str(stats["balance"]), "attempted": str(value)}
            )
            raise ValidationError(
                code="WALLET_BALANCE_CAP_EXCEEDED",
                detail=f"Wallet balance cap of {settings.currency} {balance_cap} exceeded"
            )

        flagged: List[RiskEventType] = []

        if stats["rapid_count"] >= settings.topup_rapid_max_count:
            await self.record(
                user_id,
                RiskEventType.RAPID_TOPUPS,
                "Frequent top-ups in a short window",
                {
                    "window_minutes": settings.topup_rapid_window_minutes,
                    "count": stats["rapid_count"] + 1,
                }
            )
            flagged.append(RiskEventType.RAPID_TOPUPS)

        volume_threshold = round2(settings.topup_volume_threshold)
        if stats["volume"] + value > volume_threshold:
            await self.record(
                user_id,
                RiskEventType.HIGH_TOPUP_VOLUME,
                "High top-up volume in rolling window",
                {
                    "window_hours": settings.topup_volume_window_hours,
                    "total": str(stats["volume"] + value),
                    "threshold": str(volume_threshold),
                }
            )
            flagged.append(RiskEventType.HIGH_TOPUP_VOLUME)

        return flagged

    async def list_all(
        self,
        user_id: Optional[int] = None,
        event_type: Optional[str] = None,
        limit: int = 200
    ) -> List[RiskFlag]:
        """按条件列出标记，新的在前"""
        async def _read(s: AsyncSession) -> List[RiskFlag]:
            stmt = select(RiskFlag)
            if user_id:
                stmt = stmt.where(RiskFlag.user_id == user_id)
            if event_type:
                stmt = stmt.where(RiskFlag.event_type == event_type)
            stmt = stmt.order_by(RiskFlag.created_at.desc(), RiskFlag.id.desc()).limit(limit)
            result = await s.execute(stmt)
            return list(result.scalars().all())

        return await self.execute_with_session(_read)

    async def list_by_user(self, user_id: int, limit: int = 20) -> List[RiskFlag]:
        return await self.list_all(user_id=user_id, limit=limit)

    async def count_by_user_ids(self, user_ids: Iterable[int]) -> Dict[int, int]:
        """user_id -> 标记数量"""
        ids = list(user_ids or [])
        if not ids:
            return {}

        async def _read(s: AsyncSession) -> Dict[int, int]:
            stmt = (
                select(RiskFlag.user_id, func.count(RiskFlag.id))
                .where(RiskFlag.user_id.in_(ids))
                .group_by(RiskFlag.user_id)
            )
            result = await s.execute(stmt)
            return {row[0]: int(row[1]) for row in result.all()}

        return await self.execute_with_session(_read)
