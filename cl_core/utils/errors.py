"""
Commerce Ledger 错误处理系统
遵循 RFC7807 Problem Details 标准

业务错误与校验错误以类型化异常返回调用层，可直接展示给用户；
事务内的意外故障统一转换为 InternalServerError，详细信息只写日志。
"""
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field


class ProblemDetail(BaseModel):
    """RFC7807 Problem Details 模型"""
    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "type": "about:blank",
                "title": "Insufficient Funds",
                "status": 402,
                "detail": "Insufficient wallet balance: required 20.00, available 5.00",
                "code": "WALLET_INSUFFICIENT_FUNDS"
            }
        }
    )

    type: str = Field(default="about:blank")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    code: Optional[str] = None  # 业务错误码


class CommerceException(Exception):
    """Commerce Ledger 基础异常类"""

    def __init__(
        self,
        status: int,
        code: str,
        title: str,
        detail: Optional[str] = None,
        **kwargs
    ):
        self.status = status
        self.code = code
        self.title = title
        self.detail = detail
        self.extra = kwargs
        super().__init__(detail or title)

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        """转换为 Problem Details 格式"""
        return ProblemDetail(
            type="about:blank",
            title=self.title,
            status=self.status,
            detail=self.detail,
            instance=instance,
            code=self.code,
            **self.extra
        )

    def to_response(self, request: Optional[Request] = None) -> JSONResponse:
        """转换为 JSON 响应"""
        instance = str(request.url) if request else None
        problem = self.to_problem_detail(instance)

        return JSONResponse(
            status_code=self.status,
            content={
                "ok": False,
                "error": problem.model_dump(mode="json", exclude_none=True)
            }
        )


class NotFoundError(CommerceException):
    """404 未找到"""
    def __init__(self, code: str, resource: str):
        super().__init__(
            status=404,
            code=code,
            title="Not Found",
            detail=f"{resource} not found"
        )


class ValidationError(CommerceException):
    """422 输入校验失败"""
    def __init__(self, code: str, detail: str, **kwargs):
        super().__init__(
            status=422,
            code=code,
            title="Validation Failed",
            detail=detail,
            **kwargs
        )


class CartEmpty(CommerceException):
    """购物车为空"""
    def __init__(self, detail: str = "Your cart is empty."):
        super().__init__(
            status=400,
            code="CART_EMPTY",
            title="Cart Empty",
            detail=detail
        )


class InsufficientStock(CommerceException):
    """库存不足或商品不可售"""
    def __init__(self, detail: str, code: str = "INSUFFICIENT_STOCK", product_id: Optional[int] = None):
        super().__init__(
            status=409,
            code=code,
            title="Insufficient Stock",
            detail=detail,
            product_id=product_id
        )


class StockConflict(CommerceException):
    """扣减库存时发现并发冲突"""
    def __init__(self, detail: str, product_id: Optional[int] = None):
        super().__init__(
            status=409,
            code="STOCK_CONFLICT",
            title="Stock Conflict",
            detail=detail,
            product_id=product_id
        )


class InsufficientFunds(CommerceException):
    """钱包余额不足"""
    def __init__(self, required, balance):
        self.required = required
        self.balance = balance
        super().__init__(
            status=402,
            code="WALLET_INSUFFICIENT_FUNDS",
            title="Insufficient Funds",
            detail=f"Insufficient wallet balance: required {required}, available {balance}"
        )


class VoucherError(CommerceException):
    """优惠券不可用：不存在/过期/角色不符/次数用尽"""
    def __init__(self, code: str, detail: str):
        super().__init__(
            status=400,
            code=code,
            title="Voucher Error",
            detail=detail
        )


class ConcurrencyConflict(CommerceException):
    """报价过期或购物车在支付期间发生变化"""
    def __init__(self, code: str = "CONCURRENCY_CONFLICT", detail: str = "Cart changed, please refresh and try again."):
        super().__init__(
            status=409,
            code=code,
            title="Conflict",
            detail=detail
        )


class PaymentGatewayError(CommerceException):
    """上游支付网关故障"""
    def __init__(self, code: str, detail: str, gateway: Optional[str] = None):
        super().__init__(
            status=502,
            code=code,
            title="Payment Gateway Error",
            detail=detail,
            gateway=gateway
        )


class StateError(CommerceException):
    """状态不允许当前操作（退款已处理、订单不匹配等）"""
    def __init__(self, code: str, detail: str):
        super().__init__(
            status=409,
            code=code,
            title="Invalid State",
            detail=detail
        )


class InternalServerError(CommerceException):
    """500 内部错误"""
    def __init__(self, code: str = "INTERNAL_ERROR", detail: str = "An internal error occurred"):
        super().__init__(
            status=500,
            code=code,
            title="Internal Server Error",
            detail=detail
        )
