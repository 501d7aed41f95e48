"""
退款服务测试
"""
from decimal import Decimal

import pytest

from cl_core.models import (
    DeliveryTracking,
    Order,
    OrderItem,
    RefundRequest,
    RiskFlag,
    Voucher,
    WalletTransaction,
)
from cl_core.models.enums import PaymentMethod, PaymentStatus, WalletTxnType
from cl_core.schemas import RefundItemRequest
from cl_core.services import allocate_refund
from cl_core.utils.errors import NotFoundError, PaymentGatewayError, StateError, ValidationError


def _full(summary):
    return [{"order_item_id": item.id, "quantity": item.quantity} for item in summary.items]


@pytest.fixture
async def small_order(seed, place_order):
    """2 × 10.00，小计 20.00 + 运费 5.00"""
    product = await seed.product(price="10.00", stock=10)
    return await place_order(1, [(product, 2)])


class TestAllocation:

    def setup_method(self):
        self.order = Order(
            subtotal=Decimal("100.00"),
            discount_amount=Decimal("10.00"),
            shipping_fee=Decimal("0.00"),
            total_amount=Decimal("90.00"),
        )
        self.items = [
            OrderItem(id=1, quantity=2, item_total=Decimal("60.00")),
            OrderItem(id=2, quantity=1, item_total=Decimal("40.00")),
        ]

    def test_discount_shared_by_line_value(self):
        lines, amount = allocate_refund(self.order, self.items, [RefundItemRequest(order_item_id=1, quantity=1)])

        assert lines[0].unit_refund == Decimal("27.00")
        assert lines[0].line_refund == Decimal("27.00")
        assert amount == Decimal("27.00")

    def test_full_quantity_refunds_order_total(self):
        requested = [
            RefundItemRequest(order_item_id=2, quantity=1),
            RefundItemRequest(order_item_id=1, quantity=2),
        ]
        _, amount = allocate_refund(self.order, self.items, requested)
        assert amount == Decimal("90.00")

    def test_partial_when_any_line_missing(self):
        _, amount = allocate_refund(self.order, self.items, [RefundItemRequest(order_item_id=1, quantity=2)])
        assert amount == Decimal("54.00")

    def test_invalid_requests(self):
        cases = [
            ([], "REFUND_ITEMS_REQUIRED"),
            ([RefundItemRequest(order_item_id=3, quantity=1)], "ORDER_ITEM_NOT_FOUND"),
            ([RefundItemRequest(order_item_id=2, quantity=2)], "REFUND_QTY_EXCEEDED"),
            ([RefundItemRequest(order_item_id=1, quantity=1)] * 2, "REFUND_ITEM_DUPLICATED"),
        ]
        for requested, code in cases:
            with pytest.raises(ValidationError) as exc:
                allocate_refund(self.order, self.items, requested)
            assert exc.value.code == code

    def test_discount_covering_shipping_never_goes_negative(self):
        order = Order(
            subtotal=Decimal("50.00"),
            discount_amount=Decimal("55.00"),
            shipping_fee=Decimal("5.00"),
            total_amount=Decimal("0.00"),
        )
        items = [OrderItem(id=1, quantity=2, item_total=Decimal("50.00"))]

        for quantity in (1, 2):
            with pytest.raises(ValidationError) as exc:
                allocate_refund(order, items, [RefundItemRequest(order_item_id=1, quantity=quantity)])
            assert exc.value.code == "REFUND_AMOUNT_INVALID"


async def test_full_refund_includes_shipping(refunds, small_order):
    refund = await refunds.submit_request(1, small_order.id, _full(small_order), "Damaged")

    assert refund.amount == Decimal("25.00")
    assert refund.status == "PENDING"
    assert refund.payment_method == "PAYPAL"
    assert refund.payment_reference == "5O190127TN364715T"
    assert refund.refund_items[0]["quantity"] == 2


async def test_partial_refund_excludes_shipping(refunds, small_order):
    item = small_order.items[0]
    refund = await refunds.submit_request(
        1, small_order.id, [{"order_item_id": item.id, "quantity": 1}], "Changed mind", details="  "
    )

    assert refund.amount == Decimal("10.00")
    assert refund.details is None


async def test_submit_validation(refunds, small_order, seed, checkout):
    with pytest.raises(ValidationError) as exc:
        await refunds.submit_request(1, small_order.id, _full(small_order), "   ")
    assert exc.value.code == "REFUND_REASON_REQUIRED"

    with pytest.raises(NotFoundError):
        await refunds.submit_request(2, small_order.id, _full(small_order), "Not mine")

    product = await seed.product()
    await seed.add_to_cart(1, product.id, 1)
    unpaid = await checkout.checkout(1)
    with pytest.raises(StateError) as exc:
        await refunds.submit_request(1, unpaid.id, _full(unpaid), "No payment")
    assert exc.value.code == "PAYMENT_NOT_FOUND"

    assert await seed.count(RefundRequest) == 0


async def test_only_one_pending_request(refunds, small_order, seed):
    await refunds.submit_request(1, small_order.id, _full(small_order), "Damaged")

    with pytest.raises(StateError) as exc:
        await refunds.submit_request(1, small_order.id, _full(small_order), "Again")
    assert exc.value.code == "REFUND_ALREADY_PENDING"
    assert await seed.count(RefundRequest) == 1


async def test_third_rejection_closes_order(refunds, small_order, seed):
    for attempt in range(3):
        refund = await refunds.submit_request(1, small_order.id, _full(small_order), f"Attempt {attempt}")
        await refunds.reject(refund.id)

        order = await seed.get(Order, small_order.id)
        expected = "COMPLETED" if attempt == 2 else "PROCESSING"
        assert order.delivery_status == expected

    with pytest.raises(StateError) as exc:
        await refunds.submit_request(1, small_order.id, _full(small_order), "Fourth")

    assert exc.value.code == "REFUND_LIMIT_REACHED"
    assert await seed.count(RefundRequest) == 3
    tracking = await seed.all(DeliveryTracking, DeliveryTracking.order_id == small_order.id)
    assert tracking[0].status == "COMPLETED"
    assert len(await refunds.list_all(status="rejected")) == 3


async def test_approve_via_gateway_with_voucher(refunds, gateway, seed, place_order):
    product = await seed.product(price="100.00")
    voucher = await seed.voucher(code="SAVE10", value="10")
    summary = await place_order(1, [(product, 1)], voucher_id=voucher.id)
    assert (await seed.get(Voucher, voucher.id)).used_count == 1

    refund = await refunds.submit_request(1, summary.id, _full(summary), "Wrong size")
    result = await refunds.approve(refund.id)

    assert result.status == "REFUNDED"
    assert result.amount == Decimal("90.00")
    assert result.payment_method is PaymentMethod.PAYPAL
    assert result.refund_reference == "REFUND-1"
    assert result.order_payment_status is PaymentStatus.REFUNDED
    assert gateway.refunds == [("5O190127TN364715T", Decimal("90.00"), "SGD")]

    stored = await seed.get(RefundRequest, refund.id)
    assert stored.status == "REFUNDED"
    assert stored.approved_at is not None
    assert (await seed.get(Order, summary.id)).payment_status == "REFUNDED"
    assert (await seed.get(Voucher, voucher.id)).used_count == 0

    with pytest.raises(StateError) as exc:
        await refunds.approve(refund.id)
    assert exc.value.code == "REFUND_ALREADY_PROCESSED"

    with pytest.raises(StateError) as exc:
        await refunds.submit_request(1, summary.id, _full(summary), "Again")
    assert exc.value.code == "REFUND_ALREADY_COMPLETED"


async def test_partial_approval_marks_partially_refunded(refunds, small_order, seed):
    item = small_order.items[0]
    refund = await refunds.submit_request(1, small_order.id, [{"order_item_id": item.id, "quantity": 1}], "One broken")

    result = await refunds.approve(refund.id)

    assert result.order_payment_status is PaymentStatus.PARTIALLY_REFUNDED
    assert (await seed.get(Order, small_order.id)).payment_status == "PARTIALLY_REFUNDED"


async def test_approve_qr_payment_credits_wallet(refunds, gateway, wallet, seed, place_order):
    product = await seed.product(price="10.00")
    summary = await place_order(
        1, [(product, 2)], payment_method="2", gateway_reference=None, txn_retrieval_ref="NETS-REF-9"
    )

    refund = await refunds.submit_request(1, summary.id, _full(summary), "Late delivery")
    assert refund.payment_method == "NETS"
    assert refund.payment_reference == "NETS-REF-9"

    result = await refunds.approve(refund.id)

    assert result.status == "REFUNDED"
    assert result.refund_reference.startswith(f"WALLET-{refund.id}-")
    assert gateway.refunds == []
    assert await wallet.get_balance(1) == Decimal("25.00")

    entries = await seed.all(WalletTransaction, WalletTransaction.user_id == 1)
    assert [(e.txn_type, e.reference_id) for e in entries] == [("REFUND_CREDIT", str(summary.id))]


async def test_refund_credit_over_cap_is_flagged_not_blocked(refunds, wallet, seed, place_order):
    await wallet.credit(1, "990.00", {"txn_type": WalletTxnType.ADJUSTMENT})
    product = await seed.product(price="10.00")
    summary = await place_order(1, [(product, 2)], payment_method="WALLET", gateway_reference="WALLET-1-1")

    refund = await refunds.submit_request(1, summary.id, _full(summary), "Cancelled")
    result = await refunds.approve(refund.id)

    assert result.status == "REFUNDED"
    assert await wallet.get_balance(1) == Decimal("1015.00")
    flags = await seed.all(RiskFlag, RiskFlag.user_id == 1)
    assert [f.event_type for f in flags] == ["WALLET_BALANCE_CAP_EXCEEDED"]


async def test_gateway_failure_marks_failed(refunds, gateway, small_order, seed):
    gateway.refund_error = PaymentGatewayError(
        code="PAYPAL_REFUND_FAILED", detail="PAYPAL returned HTTP 500", gateway="PAYPAL"
    )
    refund = await refunds.submit_request(1, small_order.id, _full(small_order), "Damaged")

    result = await refunds.approve(refund.id)

    assert result.status == "FAILED"
    assert result.error == "PAYPAL returned HTTP 500"
    assert (await seed.get(RefundRequest, refund.id)).status == "FAILED"
    assert (await seed.get(Order, small_order.id)).payment_status == "PAID"

    with pytest.raises(StateError) as exc:
        await refunds.submit_request(1, small_order.id, _full(small_order), "Retry")
    assert exc.value.code == "REFUND_NOT_RETRYABLE"


async def test_gateway_declined_refund_marks_failed(refunds, gateway, small_order, seed):
    gateway.refund_status = "DENIED"
    refund = await refunds.submit_request(1, small_order.id, _full(small_order), "Damaged")

    result = await refunds.approve(refund.id)

    assert result.status == "FAILED"
    assert (await seed.get(RefundRequest, refund.id)).status == "FAILED"


async def test_method_mismatch_blocks_approval(refunds, small_order, seed):
    refund = await refunds.submit_request(1, small_order.id, _full(small_order), "Damaged")
    await seed.payment(
        small_order.id, small_order.total_amount,
        payment_method="NETS", gateway_reference=None, txn_retrieval_ref="NETS-REF-2"
    )

    with pytest.raises(StateError) as exc:
        await refunds.approve(refund.id)

    assert exc.value.code == "PAYMENT_METHOD_MISMATCH"
    assert (await seed.get(RefundRequest, refund.id)).status == "PENDING"


async def test_queries(refunds, small_order):
    first = await refunds.submit_request(1, small_order.id, _full(small_order), "Damaged")
    await refunds.reject(first.id)
    second = await refunds.submit_request(1, small_order.id, _full(small_order), "Still damaged")

    latest = await refunds.get_latest_for_order(small_order.id)
    assert latest.id == second.id
    assert [r.id for r in await refunds.list_by_user(1)] == [second.id, first.id]
    assert await refunds.list_by_user(2) == []
    assert [r.id for r in await refunds.list_all(status="PENDING")] == [second.id]


async def test_fully_discounted_order_is_not_refundable(refunds, seed, place_order):
    product = await seed.product(price="25.00", stock=10)
    voucher = await seed.voucher(code="FREE55", discount_type="fixed", value="55")
    summary = await place_order(1, [(product, 2)], voucher_id=voucher.id)
    assert summary.total_amount == Decimal("0.00")

    with pytest.raises(ValidationError) as exc:
        await refunds.submit_request(
            1, summary.id, [{"order_item_id": summary.items[0].id, "quantity": 1}], "Changed mind"
        )

    assert exc.value.code == "REFUND_AMOUNT_INVALID"
    assert await seed.count(RefundRequest) == 0
