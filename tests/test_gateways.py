"""
网关客户端测试（httpx.MockTransport）
"""
import json
from decimal import Decimal

import httpx
import pytest

from cl_core.gateways import NetsQrClient, PayPalClient, QrStatus
from cl_core.utils.errors import PaymentGatewayError


def _paypal_handler(calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        path = request.url.path

        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "token-abc", "expires_in": 3600})
        if path == "/v2/checkout/orders" and request.method == "POST":
            return httpx.Response(201, json={"id": "5O190127TN364715T", "status": "CREATED"})
        if path == "/v2/checkout/orders/5O190127TN364715T/capture":
            return httpx.Response(201, json={
                "id": "5O190127TN364715T",
                "status": "COMPLETED",
                "payer": {"payer_id": "QYR5Z8XDVJNXQ", "email_address": "buyer@example.com"},
                "purchase_units": [{"payments": {"captures": [{
                    "id": "3C679366HH908993F",
                    "status": "COMPLETED",
                    "amount": {"currency_code": "SGD", "value": "90.00"},
                }]}}],
            })
        if path == "/v2/checkout/orders/5O190127TN364715T" and request.method == "GET":
            return httpx.Response(200, json={
                "id": "5O190127TN364715T",
                "purchase_units": [{"payments": {"captures": [{"id": "3C679366HH908993F"}]}}],
            })
        if path == "/v2/payments/captures/3C679366HH908993F/refund":
            return httpx.Response(201, json={"id": "1JU08902781691411", "status": "COMPLETED"})
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})

    return handler


@pytest.fixture
def paypal_calls():
    return []


@pytest.fixture
async def paypal(settings, paypal_calls):
    client = PayPalClient(settings, transport=httpx.MockTransport(_paypal_handler(paypal_calls)))
    yield client
    await client.close()


async def test_paypal_create_order(paypal, paypal_calls):
    order = await paypal.create_order(Decimal("12.5"), "SGD")

    assert order.id == "5O190127TN364715T"
    token_call, create_call = paypal_calls
    assert token_call.headers["Authorization"].startswith("Basic ")
    assert create_call.headers["Authorization"] == "Bearer token-abc"
    assert json.loads(create_call.content) == {
        "intent": "CAPTURE",
        "purchase_units": [{"amount": {"currency_code": "SGD", "value": "12.50"}}],
    }


async def test_paypal_token_is_cached(paypal, paypal_calls):
    await paypal.create_order(Decimal("1"), "SGD")
    await paypal.create_order(Decimal("2"), "SGD")

    token_calls = [c for c in paypal_calls if c.url.path == "/v1/oauth2/token"]
    assert len(token_calls) == 1


async def test_paypal_capture(paypal):
    capture = await paypal.capture_order("5O190127TN364715T")

    assert capture.is_completed
    assert capture.amount == Decimal("90.00")
    assert capture.capture_id == "3C679366HH908993F"
    assert capture.payer_id == "QYR5Z8XDVJNXQ"
    assert capture.payer_email == "buyer@example.com"


async def test_paypal_refund_looks_up_capture(paypal, paypal_calls):
    refund = await paypal.refund_order("5O190127TN364715T", Decimal("25"), "SGD")

    assert refund.is_accepted
    assert refund.id == "1JU08902781691411"
    assert json.loads(paypal_calls[-1].content) == {"amount": {"currency_code": "SGD", "value": "25.00"}}


async def test_paypal_http_error(settings):
    transport = httpx.MockTransport(lambda request: httpx.Response(500, json={"name": "INTERNAL_SERVER_ERROR"}))
    async with PayPalClient(settings, transport=transport) as client:
        with pytest.raises(PaymentGatewayError) as exc:
            await client.create_order(Decimal("10"), "SGD")

    assert exc.value.code == "PAYPAL_AUTH_FAILED"
    assert exc.value.status == 502


async def test_paypal_transport_error(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with PayPalClient(settings, transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(PaymentGatewayError):
            await client.capture_order("5O190127TN364715T")


async def test_nets_request_and_query(settings):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        body = json.loads(request.content)
        if request.url.path.endswith("/request"):
            return httpx.Response(200, json={"result": {"data": {
                "response_code": "00",
                "txn_retrieval_ref": "REF-001",
                "qr_code": "iVBORw0KGgo=",
            }}})
        return httpx.Response(200, json={"result": {"data": {
            "response_code": "00",
            "txn_status": 1 if body["frontend_timeout_status"] == 0 else 0,
        }}})

    async with NetsQrClient(settings, transport=httpx.MockTransport(handler)) as client:
        qr = await client.request_qr(Decimal("25.5"))
        status = await client.query_status(qr.txn_retrieval_ref)
        timed_out = await client.query_status(qr.txn_retrieval_ref, frontend_timeout=True)

    assert qr.txn_retrieval_ref == "REF-001"
    assert qr.qr_payload == "iVBORw0KGgo="
    assert json.loads(calls[0].content)["amt_in_dollars"] == 25.5
    assert calls[0].headers["api-key"] == settings.nets_api_key
    assert status.is_success
    assert not timed_out.is_terminal


async def test_nets_missing_reference(settings):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"result": {"data": {}}}))
    async with NetsQrClient(settings, transport=transport) as client:
        with pytest.raises(PaymentGatewayError) as exc:
            await client.request_qr(Decimal("10"))
    assert exc.value.code == "NETS_REQUEST_FAILED"


async def test_nets_unexpected_txn_status(settings):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"result": {"data": {
        "response_code": "00",
        "txn_status": "settled",
    }}}))
    async with NetsQrClient(settings, transport=transport) as client:
        with pytest.raises(PaymentGatewayError) as exc:
            await client.query_status("REF-001")
    assert exc.value.code == "NETS_QUERY_FAILED"


@pytest.mark.parametrize("code, txn_status, success, failed", [
    ("00", 1, True, False),
    ("00", 0, False, False),
    ("00", 2, False, True),
    ("09", None, False, True),
    (None, None, False, False),
])
def test_qr_status(code, txn_status, success, failed):
    status = QrStatus(response_code=code, txn_status=txn_status)
    assert status.is_success is success
    assert status.is_failed is failed
    assert status.is_terminal is (success or failed)
