"""
报价计算测试
"""
from decimal import Decimal

import pytest

from cl_core.models import Voucher
from cl_core.utils.errors import CartEmpty, InsufficientStock, VoucherError


def test_tax_is_extracted_from_inclusive_price(pricing):
    assert pricing.compute_tax(Decimal("100.00")) == Decimal("8.26")
    assert pricing.compute_tax(Decimal("0")) == Decimal("0.00")


@pytest.mark.parametrize("subtotal, expected", [
    ("0", "0.00"),
    ("20.00", "5.00"),
    ("59.99", "5.00"),
    ("60.00", "0.00"),
    ("150.00", "0.00"),
])
def test_shipping_threshold(pricing, subtotal, expected):
    assert pricing.compute_shipping(Decimal(subtotal)) == Decimal(expected)


async def test_quote_with_percentage_voucher(pricing, seed):
    product = await seed.product(price="100.00", stock=5)
    await seed.add_to_cart(1, product.id, 1)
    voucher = await seed.voucher(code="SAVE10", value="10")

    quote = await pricing.build_quote(1, role="adopter", voucher_code="save10")

    assert quote.subtotal == Decimal("100.00")
    assert quote.shipping_fee == Decimal("0.00")
    assert quote.tax_amount == Decimal("8.26")
    assert quote.discount_amount == Decimal("10.00")
    assert quote.total == Decimal("90.00")
    assert quote.voucher_id == voucher.id
    assert quote.voucher_code == "SAVE10"
    assert quote.item_count == 1


async def test_quote_does_not_consume_voucher(pricing, seed):
    product = await seed.product(price="100.00")
    await seed.add_to_cart(1, product.id, 1)
    voucher = await seed.voucher(code="ONCE", value="10", usage_limit=1)

    await pricing.build_quote(1, role="adopter", voucher_code="ONCE")
    await pricing.build_quote(1, role="adopter", voucher_code="ONCE")

    stored = await seed.get(Voucher, voucher.id)
    assert stored.used_count == 0


async def test_discount_base_includes_shipping(pricing, seed):
    product = await seed.product(price="10.00")
    await seed.add_to_cart(1, product.id, 2)
    await seed.voucher(code="SAVE10", value="10")

    quote = await pricing.build_quote(1, role="adopter", voucher_code="SAVE10")

    assert quote.subtotal == Decimal("20.00")
    assert quote.shipping_fee == Decimal("5.00")
    assert quote.discount_amount == Decimal("2.50")
    assert quote.total == Decimal("22.50")


async def test_fixed_voucher_clamped_to_base(pricing, seed):
    product = await seed.product(price="10.00")
    await seed.add_to_cart(1, product.id, 1)
    await seed.voucher(code="BIG", discount_type="fixed", value="50")

    quote = await pricing.build_quote(1, role="adopter", voucher_code="BIG")

    assert quote.discount_amount == Decimal("15.00")
    assert quote.total == Decimal("0.00")


async def test_voucher_requires_adopter_role(pricing, seed):
    product = await seed.product(price="10.00")
    await seed.add_to_cart(1, product.id, 1)
    await seed.voucher(code="SAVE10")

    with pytest.raises(VoucherError) as exc:
        await pricing.build_quote(1, role="staff", voucher_code="SAVE10")
    assert exc.value.code == "VOUCHER_ROLE_MISMATCH"


async def test_empty_cart(pricing):
    with pytest.raises(CartEmpty):
        await pricing.build_quote(1)


async def test_unavailable_product(pricing, seed):
    product = await seed.product(status="unavailable")
    await seed.add_to_cart(1, product.id, 1)

    with pytest.raises(InsufficientStock) as exc:
        await pricing.build_quote(1)
    assert exc.value.code == "PRODUCT_UNAVAILABLE"


async def test_quantity_over_stock(pricing, seed):
    product = await seed.product(stock=2)
    await seed.add_to_cart(1, product.id, 3)

    with pytest.raises(InsufficientStock) as exc:
        await pricing.build_quote(1)
    assert exc.value.code == "INSUFFICIENT_STOCK"
    assert exc.value.extra["product_id"] == product.id
