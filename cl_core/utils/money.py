"""
金额工具
所有金额在读写边界统一四舍五入到 2 位小数
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: Any) -> Decimal:
    """转换为 Decimal，无法解析时抛出 ValueError"""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        # 经 str 转换，避免二进制浮点误差
        result = Decimal(str(value))
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, AttributeError) as e:
            raise ValueError(f"Invalid amount: {value!r}") from e

    if not result.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return result


def round2(value: Any) -> Decimal:
    """四舍五入到分"""
    if value is None:
        return ZERO
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
