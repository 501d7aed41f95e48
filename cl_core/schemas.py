"""
服务层输入/输出数据模型
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cl_core.models.enums import (
    DeliveryStatus,
    DiscountType,
    PaymentMethod,
    PaymentStatus,
    WalletTxnType,
)
from cl_core.utils.money import ZERO, round2


class QuoteLine(BaseModel):
    """报价行"""

    product_id: int
    name: str
    quantity: int = Field(..., gt=0)
    price_each: Decimal
    line_total: Decimal


class Quote(BaseModel):
    """购物车报价（未消耗优惠券，未锁定库存）"""

    user_id: int
    lines: List[QuoteLine] = Field(default_factory=list)
    subtotal: Decimal = ZERO
    shipping_fee: Decimal = ZERO
    tax_amount: Decimal = ZERO  # 含税价中的税额，仅展示
    discount_amount: Decimal = ZERO
    total: Decimal = ZERO
    currency: str = "SGD"
    voucher_id: Optional[int] = None
    voucher_code: Optional[str] = None

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)


class VoucherApplication(BaseModel):
    """优惠券试算结果"""

    voucher_id: int
    code: str
    discount_type: DiscountType
    discount_amount: Decimal


class CheckoutOptions(BaseModel):
    """结算选项"""

    model_config = ConfigDict(frozen=True)

    voucher_id: Optional[int] = None
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    # 报价时的总额；与锁定后重算结果不一致时拒绝结算
    expected_total: Optional[Decimal] = None

    @field_validator("payment_status")
    @classmethod
    def validate_payment_status(cls, v: PaymentStatus) -> PaymentStatus:
        if v not in (PaymentStatus.UNPAID, PaymentStatus.PAID, PaymentStatus.PENDING):
            raise ValueError("new orders can only be UNPAID, PAID or PENDING")
        return v

    @field_validator("expected_total")
    @classmethod
    def validate_expected_total(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return None if v is None else round2(v)


class OrderLine(BaseModel):
    """订单行快照"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    quantity: int
    price_each: Decimal
    item_total: Decimal


class OrderSummary(BaseModel):
    """订单摘要"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    order_type: str
    voucher_id: Optional[int] = None
    subtotal: Decimal
    discount_amount: Decimal
    shipping_fee: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    payment_status: PaymentStatus
    delivery_status: DeliveryStatus
    created_at: Optional[datetime] = None
    items: List[OrderLine] = Field(default_factory=list)


class WalletTxnMeta(BaseModel):
    """钱包流水元数据"""

    txn_type: WalletTxnType
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    payment_method: Optional[str] = None
    description: Optional[str] = None


class RefundItemRequest(BaseModel):
    """退款申请行"""

    order_item_id: int
    quantity: Annotated[int, Field(gt=0)]


class RefundLine(BaseModel):
    """退款行分摊结果"""

    order_item_id: int
    quantity: int
    unit_refund: Decimal
    line_refund: Decimal


class RefundResult(BaseModel):
    """退款审批结果"""

    refund_id: int
    order_id: int
    status: str
    amount: Decimal
    payment_method: PaymentMethod
    refund_reference: Optional[str] = None
    order_payment_status: Optional[PaymentStatus] = None
    error: Optional[str] = None


class PaymentStart(BaseModel):
    """发起网关支付/扫码支付的返回"""

    pending_id: int
    gateway_reference: str
    amount: Decimal
    currency: str
    qr_payload: Optional[str] = None


class TopupResult(BaseModel):
    """充值结果"""

    order_id: int
    amount: Decimal
    balance: Decimal
