"""
支付网关抽象与 HTTP 客户端基础类
"""
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from cl_core.utils.errors import PaymentGatewayError
from cl_core.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class GatewayOrder:
    """网关订单"""
    id: str
    status: Optional[str] = None


@dataclass
class GatewayCapture:
    """网关扣款结果"""
    order_id: str
    status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    capture_id: Optional[str] = None
    payer_id: Optional[str] = None
    payer_email: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return (self.status or "").upper() == "COMPLETED"


@dataclass
class GatewayRefund:
    """网关退款结果"""
    id: Optional[str]
    status: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_accepted(self) -> bool:
        return bool(self.id) and (self.status or "").upper() in ("COMPLETED", "PENDING")


@dataclass
class QrRequest:
    """扫码支付请求结果"""
    txn_retrieval_ref: str
    qr_payload: Optional[str] = None


@dataclass
class QrStatus:
    """扫码支付状态"""
    response_code: Optional[str]
    txn_status: Optional[int]

    @property
    def is_success(self) -> bool:
        return self.response_code == "00" and self.txn_status == 1

    @property
    def is_failed(self) -> bool:
        if self.txn_status == 2:
            return True
        return self.response_code is not None and self.response_code != "00"

    @property
    def is_terminal(self) -> bool:
        return self.is_success or self.is_failed


class PaymentGateway(ABC):
    """在线支付网关：下单 / 扣款 / 退款"""

    name = "gateway"

    @abstractmethod
    async def create_order(self, amount: Decimal, currency: str) -> GatewayOrder:
        ...

    @abstractmethod
    async def capture_order(self, order_id: str) -> GatewayCapture:
        ...

    @abstractmethod
    async def refund_order(self, reference: str, amount: Decimal, currency: str) -> GatewayRefund:
        ...


class QrPaymentGateway(ABC):
    """扫码支付网关：生成二维码 / 查询状态"""

    name = "qr"

    @abstractmethod
    async def request_qr(self, amount: Decimal) -> QrRequest:
        ...

    @abstractmethod
    async def query_status(self, txn_retrieval_ref: str, frontend_timeout: bool = False) -> QrStatus:
        ...


def truncate_for_log(obj, max_len: int = 2000) -> Optional[str]:
    """截断对象用于日志记录"""
    if obj is None:
        return None
    try:
        s = json.dumps(obj, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        s = str(obj)
    if len(s) > max_len:
        return s[:max_len] + f"... [truncated, total {len(s)} chars]"
    return s


class GatewayHttpClient:
    """基于 httpx.AsyncClient 的网关客户端基础类"""

    gateway_name = "GATEWAY"

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers or {},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """关闭客户端连接"""
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Any = None,
        error_code: str = "GATEWAY_REQUEST_FAILED",
        log_body: bool = True
    ) -> Dict[str, Any]:
        """发送请求并记录出站日志；HTTP/传输错误统一转换为 PaymentGatewayError"""
        request_id = str(uuid.uuid4())
        api_start = time.perf_counter()

        logger.info(
            f"{self.gateway_name} API request",
            direction="outbound",
            method=method,
            endpoint=endpoint,
            request_id=request_id,
            request_body=truncate_for_log(json_body),
        )

        request_kwargs: Dict[str, Any] = {"headers": headers}
        if json_body is not None:
            request_kwargs["json"] = json_body
        if data is not None:
            request_kwargs["data"] = data
        if auth is not None:
            request_kwargs["auth"] = auth

        try:
            response = await self.client.request(method, endpoint, **request_kwargs)
            latency_ms = int((time.perf_counter() - api_start) * 1000)
            response.raise_for_status()
            result = response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            latency_ms = int((time.perf_counter() - api_start) * 1000)
            logger.error(
                f"{self.gateway_name} API error response",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                status_code=e.response.status_code,
                latency_ms=latency_ms,
                request_id=request_id,
                response_body=e.response.text[:2000],
                result="error",
            )
            raise PaymentGatewayError(
                code=error_code,
                detail=f"{self.gateway_name} returned HTTP {e.response.status_code}",
                gateway=self.gateway_name
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            latency_ms = int((time.perf_counter() - api_start) * 1000)
            logger.error(
                f"{self.gateway_name} API request failed",
                direction="outbound",
                method=method,
                endpoint=endpoint,
                latency_ms=latency_ms,
                request_id=request_id,
                error=str(e),
                error_type=type(e).__name__,
                result="error",
            )
            raise PaymentGatewayError(
                code=error_code,
                detail=f"{self.gateway_name} request failed",
                gateway=self.gateway_name
            ) from e

        logger.info(
            f"{self.gateway_name} API response",
            direction="outbound",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            latency_ms=latency_ms,
            request_id=request_id,
            response_body=truncate_for_log(result) if log_body else None,
            result="success",
        )
        return result
