"""
结算事务测试
"""
import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import update

from cl_core.models import CartItem, DeliveryTracking, Order, OrderItem, Product, Voucher
from cl_core.models.enums import PaymentStatus
from cl_core.schemas import CheckoutOptions, OrderSummary
from cl_core.utils.errors import (
    CartEmpty,
    ConcurrencyConflict,
    NotFoundError,
    StockConflict,
    VoucherError,
)


async def test_checkout_writes_order_and_consumes_cart(checkout, seed):
    food = await seed.product(name="Dog Food", price="12.50", stock=10)
    toy = await seed.product(name="Chew Toy", price="7.25", stock=3)
    await seed.add_to_cart(1, food.id, 2)
    await seed.add_to_cart(1, toy.id, 3)

    summary = await checkout.checkout(1)

    assert summary.subtotal == Decimal("46.75")
    assert summary.shipping_fee == Decimal("5.00")
    assert summary.total_amount == Decimal("51.75")
    assert summary.payment_status == PaymentStatus.UNPAID
    assert sum(item.item_total for item in summary.items) == summary.subtotal

    items = await seed.all(OrderItem, OrderItem.order_id == summary.id)
    assert sum(item.item_total for item in items) == summary.subtotal
    assert (await seed.get(Product, food.id)).stock == 8
    assert (await seed.get(Product, toy.id)).stock == 0
    assert await seed.count(CartItem, CartItem.user_id == 1) == 0

    tracking = await seed.all(DeliveryTracking, DeliveryTracking.order_id == summary.id)
    assert [t.status for t in tracking] == ["PROCESSING"]


async def test_checkout_with_voucher_increments_usage(checkout, seed):
    product = await seed.product(price="100.00")
    await seed.add_to_cart(1, product.id, 1)
    voucher = await seed.voucher(code="SAVE10", value="10")

    summary = await checkout.checkout(
        1, CheckoutOptions(voucher_id=voucher.id, payment_status=PaymentStatus.PAID)
    )

    assert summary.discount_amount == Decimal("10.00")
    assert summary.tax_amount == Decimal("8.26")
    assert summary.total_amount == Decimal("90.00")
    assert summary.voucher_id == voucher.id
    assert (await seed.get(Voucher, voucher.id)).used_count == 1


async def test_single_use_voucher_only_succeeds_once(checkout, seed):
    product = await seed.product(price="30.00", stock=10)
    voucher = await seed.voucher(code="ONCE", usage_limit=1)
    await seed.add_to_cart(1, product.id, 1)
    await seed.add_to_cart(2, product.id, 1)

    first = await checkout.checkout(1, CheckoutOptions(voucher_id=voucher.id))
    with pytest.raises(VoucherError) as exc:
        await checkout.checkout(2, CheckoutOptions(voucher_id=voucher.id))

    assert exc.value.code == "VOUCHER_LIMIT_REACHED"
    assert first.voucher_id == voucher.id
    assert (await seed.get(Voucher, voucher.id)).used_count == 1
    assert await seed.count(Order) == 1
    assert await seed.count(CartItem, CartItem.user_id == 2) == 1
    assert (await seed.get(Product, product.id)).stock == 9


async def test_concurrent_checkouts_share_single_use_voucher(checkout, seed):
    product = await seed.product(price="30.00", stock=10)
    voucher = await seed.voucher(code="RACE", usage_limit=1)
    await seed.add_to_cart(1, product.id, 1)
    await seed.add_to_cart(2, product.id, 1)

    results = await asyncio.gather(
        checkout.checkout(1, CheckoutOptions(voucher_id=voucher.id)),
        checkout.checkout(2, CheckoutOptions(voucher_id=voucher.id)),
        return_exceptions=True
    )

    orders = [r for r in results if isinstance(r, OrderSummary)]
    failures = [r for r in results if isinstance(r, VoucherError)]
    assert len(orders) == 1
    assert len(failures) == 1
    assert failures[0].code == "VOUCHER_LIMIT_REACHED"
    assert (await seed.get(Voucher, voucher.id)).used_count == 1
    assert await seed.count(Order) == 1


async def test_stock_drop_mid_checkout_leaves_nothing(checkout, seed, monkeypatch):
    first = await seed.product(name="Bowl", price="15.00", stock=5)
    second = await seed.product(name="Leash", price="20.00", stock=5)
    voucher = await seed.voucher(code="SAVE10")
    await seed.add_to_cart(1, first.id, 1)
    await seed.add_to_cart(1, second.id, 2)

    real_decrement = checkout._decrement_stock
    calls = []

    async def racing_decrement(session, product_id, quantity):
        calls.append(product_id)
        if product_id == second.id:
            # 另一笔订单在锁定后把库存扣到低于本单数量
            await session.execute(
                update(Product).where(Product.id == product_id).values(stock=quantity - 1)
            )
        await real_decrement(session, product_id, quantity)

    monkeypatch.setattr(checkout, "_decrement_stock", racing_decrement)

    with pytest.raises(StockConflict):
        await checkout.checkout(1, CheckoutOptions(voucher_id=voucher.id))

    assert calls == [first.id, second.id]
    assert await seed.count(Order) == 0
    assert await seed.count(OrderItem) == 0
    assert await seed.count(DeliveryTracking) == 0
    assert (await seed.get(Product, first.id)).stock == 5
    assert (await seed.get(Product, second.id)).stock == 5
    assert await seed.count(CartItem, CartItem.user_id == 1) == 2
    assert (await seed.get(Voucher, voucher.id)).used_count == 0


async def test_stale_expected_total_rejected(checkout, seed):
    product = await seed.product(price="25.00")
    await seed.add_to_cart(1, product.id, 1)

    with pytest.raises(ConcurrencyConflict) as exc:
        await checkout.checkout(1, CheckoutOptions(expected_total=Decimal("25.00")))

    assert exc.value.code == "QUOTE_STALE"
    assert await seed.count(Order) == 0
    assert (await seed.get(Product, product.id)).stock == 10

    summary = await checkout.checkout(1, CheckoutOptions(expected_total="30"))
    assert summary.total_amount == Decimal("30.00")


async def test_participant_mode_rolls_back_with_caller(checkout, seed, db_manager):
    product = await seed.product(price="25.00")
    await seed.add_to_cart(1, product.id, 1)

    with pytest.raises(RuntimeError):
        async with db_manager.get_transaction() as session:
            await checkout.checkout(1, session=session)
            raise RuntimeError("caller failed after checkout")

    assert await seed.count(Order) == 0
    assert await seed.count(CartItem, CartItem.user_id == 1) == 1
    assert (await seed.get(Product, product.id)).stock == 10


async def test_empty_cart_checkout(checkout):
    with pytest.raises(CartEmpty):
        await checkout.checkout(1)


async def test_get_order_checks_owner(checkout, seed):
    product = await seed.product()
    await seed.add_to_cart(1, product.id, 2)
    summary = await checkout.checkout(1)

    loaded = await checkout.get_order(summary.id, user_id=1)
    assert loaded.id == summary.id
    assert [item.quantity for item in loaded.items] == [2]

    with pytest.raises(NotFoundError):
        await checkout.get_order(summary.id, user_id=2)

    orders = await checkout.list_orders(1)
    assert [o.id for o in orders] == [summary.id]


def test_checkout_options_reject_refunded_status():
    with pytest.raises(ValueError):
        CheckoutOptions(payment_status=PaymentStatus.REFUNDED)
