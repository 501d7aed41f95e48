"""
支付网关客户端
"""
from .base import (
    GatewayCapture,
    GatewayOrder,
    GatewayRefund,
    PaymentGateway,
    QrPaymentGateway,
    QrRequest,
    QrStatus,
)
from .nets import NetsQrClient
from .paypal import PayPalClient

__all__ = [
    "GatewayCapture",
    "GatewayOrder",
    "GatewayRefund",
    "PaymentGateway",
    "QrPaymentGateway",
    "QrRequest",
    "QrStatus",
    "NetsQrClient",
    "PayPalClient",
]
