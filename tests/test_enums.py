"""
支付方式归一化与错误响应测试
"""
import json

import pytest

from cl_core.models.enums import PaymentMethod, RefundStatus
from cl_core.utils.errors import InsufficientFunds, VoucherError


@pytest.mark.parametrize("raw, expected", [
    ("paypal", PaymentMethod.PAYPAL),
    (" PayPal ", PaymentMethod.PAYPAL),
    ("1", PaymentMethod.PAYPAL),
    ("PP", PaymentMethod.PAYPAL),
    ("2", PaymentMethod.NETS),
    ("NETSQR", PaymentMethod.NETS),
    ("nets_qr", PaymentMethod.NETS),
    ("3", PaymentMethod.WALLET),
    ("WALLET_TOPUP", PaymentMethod.WALLET),
    ("0", PaymentMethod.UNKNOWN),
    ("", PaymentMethod.UNKNOWN),
    (None, PaymentMethod.UNKNOWN),
    ("CASH", PaymentMethod.UNKNOWN),
    (PaymentMethod.NETS, PaymentMethod.NETS),
])
def test_normalize(raw, expected):
    assert PaymentMethod.normalize(raw) is expected


@pytest.mark.parametrize("method, reference, payer, expected", [
    ("NETS", "5O190127TN364715T", None, PaymentMethod.NETS),
    (None, "NETS-REF-1", None, PaymentMethod.NETS),
    ("UNKNOWN", None, "NETS_42", PaymentMethod.NETS),
    (None, "WALLET-7-1700000000000", None, PaymentMethod.WALLET),
    (None, "5O190127TN364715T", "QYR5Z8XDVJNXQ", PaymentMethod.PAYPAL),
    (None, None, None, PaymentMethod.UNKNOWN),
])
def test_guess_from_transaction(method, reference, payer, expected):
    assert PaymentMethod.guess_from_transaction(method, reference, payer) is expected


def test_refund_destinations():
    assert not PaymentMethod.PAYPAL.refunds_to_wallet
    assert PaymentMethod.NETS.refunds_to_wallet
    assert PaymentMethod.WALLET.refunds_to_wallet


def test_refund_status_flags():
    assert not RefundStatus.PENDING.is_terminal
    assert RefundStatus.FAILED.is_terminal
    assert RefundStatus.APPROVED.is_success
    assert not RefundStatus.REJECTED.is_success


def test_problem_detail_response():
    response = InsufficientFunds(required="20.00", balance="5.00").to_response()

    assert response.status_code == 402
    body = json.loads(response.body)
    assert body["ok"] is False
    assert body["error"]["code"] == "WALLET_INSUFFICIENT_FUNDS"
    assert body["error"]["detail"] == "Insufficient wallet balance: required 20.00, available 5.00"


def test_problem_detail_keeps_extra_fields():
    problem = VoucherError(code="VOUCHER_EXPIRED", detail="Voucher expired").to_problem_detail("/checkout")

    assert problem.status == 400
    assert problem.instance == "/checkout"
    assert problem.title == "Voucher Error"
