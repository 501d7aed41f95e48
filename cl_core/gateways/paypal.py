"""
PayPal REST 客户端（Orders v2）
"""
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from cl_core.config import Settings, get_settings
from cl_core.utils.errors import PaymentGatewayError
from cl_core.utils.money import round2

from .base import GatewayCapture, GatewayHttpClient, GatewayOrder, GatewayRefund, PaymentGateway


class PayPalClient(GatewayHttpClient, PaymentGateway):
    """PayPal 客户端

    使用 client credentials 获取访问令牌并缓存到过期前 60 秒。
    退款时先查询订单取得 capture id，再对 capture 发起退款。
    """

    gateway_name = "PAYPAL"
    name = "PAYPAL"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.settings = settings or get_settings()
        super().__init__(
            base_url=self.settings.paypal_api_base,
            headers={"Content-Type": "application/json"},
            timeout=self.settings.gateway_timeout_seconds,
            transport=transport,
        )
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0

    async def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        result = await self._request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
            error_code="PAYPAL_AUTH_FAILED",
            log_body=False,
        )
        token = result.get("access_token")
        if not token:
            raise PaymentGatewayError(
                code="PAYPAL_AUTH_FAILED",
                detail="PayPal did not return an access token",
                gateway=self.gateway_name
            )

        expires_in = int(result.get("expires_in") or 0)
        self._access_token = token
        self._token_expires_at = time.monotonic() + max(expires_in - 60, 0)
        return token

    async def _authorized(self, method: str, endpoint: str, json_body: Optional[Dict[str, Any]] = None,
                          error_code: str = "PAYPAL_REQUEST_FAILED") -> Dict[str, Any]:
        token = await self._get_access_token()
        return await self._request(
            method,
            endpoint,
            json_body=json_body,
            headers={"Authorization": f"Bearer {token}"},
            error_code=error_code,
        )

    @staticmethod
    def _money(amount: Decimal, currency: str) -> Dict[str, str]:
        return {"currency_code": currency, "value": f"{round2(amount):.2f}"}

    async def create_order(self, amount: Decimal, currency: str) -> GatewayOrder:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [{"amount": self._money(amount, currency)}],
        }
        result = await self._authorized("POST", "/v2/checkout/orders", payload, error_code="PAYPAL_CREATE_FAILED")
        order_id = result.get("id")
        if not order_id:
            raise PaymentGatewayError(
                code="PAYPAL_CREATE_FAILED",
                detail="PayPal did not return an order id",
                gateway=self.gateway_name
            )
        return GatewayOrder(id=order_id, status=result.get("status"))

    @staticmethod
    def _first_capture(result: Dict[str, Any]) -> Dict[str, Any]:
        units = result.get("purchase_units") or []
        if not units:
            return {}
        captures = ((units[0].get("payments") or {}).get("captures")) or []
        return captures[0] if captures else {}

    async def capture_order(self, order_id: str) -> GatewayCapture:
        result = await self._authorized(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            {},
            error_code="PAYPAL_CAPTURE_FAILED"
        )
        capture = self._first_capture(result)
        amount = capture.get("amount") or {}
        payer = result.get("payer") or {}

        return GatewayCapture(
            order_id=order_id,
            status=capture.get("status") or result.get("status") or "",
            amount=round2(amount["value"]) if amount.get("value") is not None else None,
            currency=amount.get("currency_code"),
            capture_id=capture.get("id"),
            payer_id=payer.get("payer_id"),
            payer_email=payer.get("email_address"),
        )

    async def refund_order(self, reference: str, amount: Decimal, currency: str) -> GatewayRefund:
        order = await self._authorized("GET", f"/v2/checkout/orders/{reference}", error_code="PAYPAL_REFUND_FAILED")
        capture_id = self._first_capture(order).get("id")
        if not capture_id:
            raise PaymentGatewayError(
                code="PAYPAL_REFUND_FAILED",
                detail="No capture found for PayPal order",
                gateway=self.gateway_name
            )

        result = await self._authorized(
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            {"amount": self._money(amount, currency)},
            error_code="PAYPAL_REFUND_FAILED"
        )
        return GatewayRefund(id=result.get("id"), status=result.get("status"), raw=result)
