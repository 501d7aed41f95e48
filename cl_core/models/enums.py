"""
枚举类型定义
"""
from enum import Enum
from typing import Any, Dict, Optional


class PaymentStatus(str, Enum):
    """订单支付状态"""

    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class DeliveryStatus(str, Enum):
    """订单配送状态"""

    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"


class OrderType(str, Enum):
    """订单类型"""

    PURCHASE = "PURCHASE"
    TOPUP = "TOPUP"  # 钱包充值生成的记账订单，无订单行


class ProductStatus(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class DiscountType(str, Enum):
    """优惠券折扣类型"""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


class RefundStatus(str, Enum):
    """退款申请状态

    PENDING → REFUNDED / REJECTED；审批时下游出错 → FAILED。
    APPROVED 为历史数据中与 REFUNDED 等价的成功终态。
    """

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REFUNDED = "REFUNDED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not RefundStatus.PENDING

    @property
    def is_success(self) -> bool:
        return self in (RefundStatus.APPROVED, RefundStatus.REFUNDED)


class WalletTxnType(str, Enum):
    """钱包流水类型"""

    TOPUP = "TOPUP"
    PURCHASE_DEBIT = "PURCHASE_DEBIT"
    REFUND_CREDIT = "REFUND_CREDIT"
    ADJUSTMENT = "ADJUSTMENT"


class PaymentPurpose(str, Enum):
    """待确认支付的用途"""

    CHECKOUT = "CHECKOUT"
    TOPUP = "TOPUP"


class PendingPaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RiskEventType(str, Enum):
    """风控事件类型"""

    TOPUP_TXN_CAP_EXCEEDED = "TOPUP_TXN_CAP_EXCEEDED"
    WALLET_BALANCE_CAP_EXCEEDED = "WALLET_BALANCE_CAP_EXCEEDED"
    RAPID_TOPUPS = "RAPID_TOPUPS"
    HIGH_TOPUP_VOLUME = "HIGH_TOPUP_VOLUME"


class PaymentMethod(str, Enum):
    """支付方式

    PAYPAL 走网关原路退款；NETS（扫码）与 WALLET 退回钱包余额。
    """

    PAYPAL = "PAYPAL"
    NETS = "NETS"
    WALLET = "WALLET"
    UNKNOWN = "UNKNOWN"

    @property
    def refunds_to_wallet(self) -> bool:
        return self in (PaymentMethod.NETS, PaymentMethod.WALLET)

    @classmethod
    def normalize(cls, raw: Any) -> "PaymentMethod":
        """归一化支付方式，兼容历史数字代码与组合写法（如 WALLET_TOPUP_PP）"""
        if isinstance(raw, cls):
            return raw
        if raw is None:
            return cls.UNKNOWN

        text = str(raw).strip().upper()
        if not text:
            return cls.UNKNOWN

        if text in LEGACY_PAYMENT_METHOD_CODES:
            return LEGACY_PAYMENT_METHOD_CODES[text]

        # 子串匹配顺序与历史数据一致：PAYPAL 优先
        for method in (cls.PAYPAL, cls.NETS, cls.WALLET):
            if method.value in text:
                return method
        return cls.UNKNOWN

    @classmethod
    def guess_from_transaction(
        cls,
        payment_method: Optional[str],
        gateway_reference: Optional[str] = None,
        payer_id: Optional[str] = None
    ) -> "PaymentMethod":
        """支付方式缺失时，根据参考号与付款人前缀推断"""
        method = cls.normalize(payment_method)
        if method is not cls.UNKNOWN:
            return method

        ref = str(gateway_reference or "").upper()
        payer = str(payer_id or "").upper()
        if ref.startswith("NETS-") or payer.startswith("NETS_"):
            return cls.NETS
        if ref.startswith("WALLET-") or payer.startswith("WALLET_"):
            return cls.WALLET
        if ref:
            return cls.PAYPAL
        return cls.UNKNOWN


# 历史数据中以裸数字存储的支付方式代码
LEGACY_PAYMENT_METHOD_CODES: Dict[str, PaymentMethod] = {
    "0": PaymentMethod.UNKNOWN,
    "1": PaymentMethod.PAYPAL,
    "2": PaymentMethod.NETS,
    "3": PaymentMethod.WALLET,
    "PP": PaymentMethod.PAYPAL,
    "NETSQR": PaymentMethod.NETS,
}
