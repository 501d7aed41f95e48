"""
风控标记数据模型
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, BigIntPK, JSONType, utcnow


class RiskFlag(Base):
    """风控标记表（只追加）"""
    __tablename__ = "risk_flags"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, comment="用户ID")
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, comment="事件类型")
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True, comment="原因")
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True, comment="详情")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="记录时间"
    )

    __table_args__ = (
        Index("ix_risk_flags_user_time", "user_id", "created_at"),
        Index("ix_risk_flags_event_time", "event_type", "created_at"),
    )
