"""
Commerce Ledger 数据模型包
"""
from .base import Base
from .catalog import Product, CartItem
from .vouchers import Voucher
from .orders import Order, OrderItem, DeliveryTracking
from .payments import PaymentTransaction, PendingPayment
from .wallet import Wallet, WalletTransaction
from .refunds import RefundRequest
from .risk import RiskFlag

__all__ = [
    "Base",
    "Product",
    "CartItem",
    "Voucher",
    "Order",
    "OrderItem",
    "DeliveryTracking",
    "PaymentTransaction",
    "PendingPayment",
    "Wallet",
    "WalletTransaction",
    "RefundRequest",
    "RiskFlag",
]
