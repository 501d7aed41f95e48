"""
NETS QR 扫码支付客户端
"""
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from cl_core.config import Settings, get_settings
from cl_core.utils.errors import PaymentGatewayError
from cl_core.utils.money import round2

from .base import GatewayHttpClient, QrPaymentGateway, QrRequest, QrStatus


class NetsQrClient(GatewayHttpClient, QrPaymentGateway):
    """NETS QR 客户端

    request: POST /api/v1/common/payments/nets-qr/request
    query:   POST /api/v1/common/payments/nets-qr/query
    """

    gateway_name = "NETS"
    name = "NETS"

    REQUEST_ENDPOINT = "/api/v1/common/payments/nets-qr/request"
    QUERY_ENDPOINT = "/api/v1/common/payments/nets-qr/query"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.settings = settings or get_settings()
        super().__init__(
            base_url=self.settings.nets_api_base,
            headers={
                "api-key": self.settings.nets_api_key,
                "project-id": self.settings.nets_project_id,
                "Content-Type": "application/json",
            },
            timeout=self.settings.gateway_timeout_seconds,
            transport=transport,
        )

    @staticmethod
    def _data(result: Dict[str, Any]) -> Dict[str, Any]:
        return ((result or {}).get("result") or {}).get("data") or {}

    async def request_qr(self, amount: Decimal) -> QrRequest:
        payload = {
            "txn_id": self.settings.nets_txn_id,
            "amt_in_dollars": float(round2(amount)),
            "notify_mobile": 0,
        }
        result = await self._request("POST", self.REQUEST_ENDPOINT, json_body=payload, error_code="NETS_REQUEST_FAILED")
        data = self._data(result)

        ref = data.get("txn_retrieval_ref")
        if not ref:
            raise PaymentGatewayError(
                code="NETS_REQUEST_FAILED",
                detail="NETS did not return a transaction reference",
                gateway=self.gateway_name
            )
        return QrRequest(txn_retrieval_ref=ref, qr_payload=data.get("qr_code"))

    async def query_status(self, txn_retrieval_ref: str, frontend_timeout: bool = False) -> QrStatus:
        payload = {
            "txn_retrieval_ref": txn_retrieval_ref,
            "frontend_timeout_status": 1 if frontend_timeout else 0,
        }
        result = await self._request("POST", self.QUERY_ENDPOINT, json_body=payload, error_code="NETS_QUERY_FAILED")
        data = self._data(result)

        txn_status = data.get("txn_status")
        if txn_status is not None:
            try:
                txn_status = int(txn_status)
            except (TypeError, ValueError):
                raise PaymentGatewayError(
                    code="NETS_QUERY_FAILED",
                    detail=f"Unexpected NETS txn_status: {txn_status!r}",
                    gateway=self.gateway_name
                )
        return QrStatus(response_code=data.get("response_code"), txn_status=txn_status)
