"""
Commerce Ledger 数据库基础模型
遵循约束：UTC 时间、Decimal 金额、统一命名规范
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import JSON, BigInteger, DateTime, Integer, Numeric
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# sqlite 仅对 INTEGER PRIMARY KEY 自增
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

# PostgreSQL 使用 JSONB，其余方言退化为 JSON
JSONType = JSON().with_variant(JSONB(), "postgresql")

# 金额统一 2 位小数
Money = Numeric(12, 2)


def utcnow() -> datetime:
    """返回UTC时区的当前时间"""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """部分方言返回 naive datetime，统一视为 UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    """数据库模型基类"""

    type_annotation_map = {
        datetime: DateTime(timezone=True),  # 强制使用 timezone-aware datetime
    }

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)

            if isinstance(value, Decimal):
                result[column.key] = str(value)
            elif isinstance(value, datetime):
                result[column.key] = ensure_utc(value).isoformat()
            else:
                result[column.key] = value

        return result
