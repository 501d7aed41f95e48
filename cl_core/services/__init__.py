"""
Commerce Ledger 服务层
"""
from .base import BaseService, ServiceResult
from .cart import CartService
from .checkout import CheckoutTransaction, to_order_summary
from .payments import PaymentService
from .pricing import PricingEngine
from .refunds import RefundEngine, allocate_refund
from .risk import RiskFlagger
from .vouchers import VoucherStore
from .wallet import WalletLedger

__all__ = [
    "BaseService",
    "ServiceResult",
    "CartService",
    "CheckoutTransaction",
    "to_order_summary",
    "PaymentService",
    "PricingEngine",
    "RefundEngine",
    "allocate_refund",
    "RiskFlagger",
    "VoucherStore",
    "WalletLedger",
]
