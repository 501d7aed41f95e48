"""
Pytest 配置和 fixtures
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any, List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from cl_core.config import Settings
from cl_core.database import DatabaseManager
from cl_core.gateways.base import (
    GatewayCapture,
    GatewayOrder,
    GatewayRefund,
    PaymentGateway,
    QrPaymentGateway,
    QrRequest,
    QrStatus,
)
from cl_core.models import CartItem, PaymentTransaction, Product, Voucher
from cl_core.models.base import utcnow
from cl_core.models.enums import PaymentStatus
from cl_core.schemas import CheckoutOptions, OrderSummary
from cl_core.services import (
    CartService,
    CheckoutTransaction,
    PricingEngine,
    RefundEngine,
    RiskFlagger,
    VoucherStore,
    WalletLedger,
)
from cl_core.utils.errors import PaymentGatewayError
from cl_core.utils.money import round2


@pytest.fixture
def settings(tmp_path) -> Settings:
    """每个测试独立的 sqlite 数据库"""
    return Settings(
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        qr_poll_interval_seconds=0,
        qr_poll_max_attempts=3,
    )


@pytest_asyncio.fixture
async def db_manager(settings):
    """数据库管理器 fixture"""
    manager = DatabaseManager(settings)
    await manager.create_tables()

    yield manager

    await manager.drop_tables()
    await manager.close()


class Seeder:
    """测试数据准备"""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    async def _save(self, obj):
        async with self.db_manager.get_transaction() as session:
            session.add(obj)
            await session.flush()
        return obj

    async def product(self, name: str = "Dog Food", price="10.00", stock: int = 10,
                      status: str = "available") -> Product:
        return await self._save(Product(name=name, price=round2(price), stock=stock, status=status))

    async def add_to_cart(self, user_id: int, product_id: int, quantity: int = 1) -> CartItem:
        return await self._save(CartItem(user_id=user_id, product_id=product_id, quantity=quantity))

    async def voucher(
        self,
        code: str = "SAVE10",
        discount_type: str = "percentage",
        value="10",
        usage_limit: Optional[int] = 1,
        used_count: int = 0,
        expires_in: timedelta = timedelta(days=30),
        allowed_role: Optional[str] = "adopter"
    ) -> Voucher:
        return await self._save(Voucher(
            code=code,
            discount_type=discount_type,
            discount_value=round2(value),
            usage_limit=usage_limit,
            used_count=used_count,
            expiry_date=utcnow() + expires_in,
            allowed_role=allowed_role
        ))

    async def payment(
        self,
        order_id: int,
        amount,
        payment_method: str = "PAYPAL",
        gateway_reference: Optional[str] = "5O190127TN364715T",
        txn_retrieval_ref: Optional[str] = None,
        payer_id: Optional[str] = None
    ) -> PaymentTransaction:
        return await self._save(PaymentTransaction(
            order_id=order_id,
            amount=round2(amount),
            currency="SGD",
            status="COMPLETED",
            payment_method=payment_method,
            gateway_reference=gateway_reference,
            txn_retrieval_ref=txn_retrieval_ref,
            payer_id=payer_id
        ))

    async def get(self, model, pk):
        async with self.db_manager.get_session() as session:
            return await session.get(model, pk)

    async def all(self, model, *where) -> List[Any]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(select(model).where(*where).order_by(model.id))
            return list(result.scalars().all())

    async def count(self, model, *where) -> int:
        async with self.db_manager.get_session() as session:
            result = await session.execute(select(func.count()).select_from(model).where(*where))
            return int(result.scalar_one())


@pytest.fixture
def seed(db_manager) -> Seeder:
    return Seeder(db_manager)


@pytest.fixture
def voucher_store(db_manager, settings) -> VoucherStore:
    return VoucherStore(db_manager, settings)


@pytest.fixture
def pricing(db_manager, settings, voucher_store) -> PricingEngine:
    return PricingEngine(db_manager, settings, voucher_store)


@pytest.fixture
def checkout(db_manager, settings, pricing, voucher_store) -> CheckoutTransaction:
    return CheckoutTransaction(db_manager, settings, pricing, voucher_store)


@pytest.fixture
def wallet(db_manager, settings) -> WalletLedger:
    return WalletLedger(db_manager, settings)


@pytest.fixture
def risk(db_manager, settings) -> RiskFlagger:
    return RiskFlagger(db_manager, settings)


@pytest.fixture
def cart(db_manager, settings) -> CartService:
    return CartService(db_manager, settings)


class FakeGateway(PaymentGateway):
    """内存网关：记录调用，结果可配置"""

    name = "PAYPAL"

    def __init__(self):
        self.orders: List[Tuple[str, Decimal, str]] = []
        self.captures: List[str] = []
        self.refunds: List[Tuple[str, Decimal, str]] = []
        self.capture_status = "COMPLETED"
        self.refund_status = "COMPLETED"
        self.refund_error: Optional[PaymentGatewayError] = None

    async def create_order(self, amount, currency) -> GatewayOrder:
        order_id = f"PAYPAL-ORDER-{len(self.orders) + 1}"
        self.orders.append((order_id, round2(amount), currency))
        return GatewayOrder(id=order_id, status="CREATED")

    async def capture_order(self, order_id) -> GatewayCapture:
        self.captures.append(order_id)
        amount = next((a for oid, a, _ in self.orders if oid == order_id), None)
        return GatewayCapture(
            order_id=order_id,
            status=self.capture_status,
            amount=amount,
            currency="SGD",
            capture_id=f"CAPTURE-{order_id}",
            payer_id="PAYER123",
            payer_email="buyer@example.com"
        )

    async def refund_order(self, reference, amount, currency) -> GatewayRefund:
        self.refunds.append((reference, round2(amount), currency))
        if self.refund_error is not None:
            raise self.refund_error
        return GatewayRefund(id=f"REFUND-{len(self.refunds)}", status=self.refund_status)


class FakeQrGateway(QrPaymentGateway):
    """内存扫码网关：按顺序返回预设状态，用完后重复最后一个"""

    name = "NETS"

    def __init__(self, statuses: Sequence[QrStatus] = ()):
        self.statuses = list(statuses) or [QrStatus(response_code="00", txn_status=1)]
        self.requests: List[Decimal] = []
        self.queries: List[Tuple[str, bool]] = []

    async def request_qr(self, amount) -> QrRequest:
        self.requests.append(round2(amount))
        return QrRequest(txn_retrieval_ref=f"NETS-REF-{len(self.requests)}", qr_payload="iVBORw0KGgo=")

    async def query_status(self, txn_retrieval_ref, frontend_timeout=False) -> QrStatus:
        self.queries.append((txn_retrieval_ref, frontend_timeout))
        index = min(len(self.queries) - 1, len(self.statuses) - 1)
        return self.statuses[index]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_qr_gateway():
    """按给定状态序列构造扫码网关"""
    def _make(*statuses: QrStatus) -> FakeQrGateway:
        return FakeQrGateway(statuses)

    return _make


@pytest.fixture
def refunds(db_manager, settings, wallet, voucher_store, risk, gateway) -> RefundEngine:
    return RefundEngine(db_manager, settings, wallet, voucher_store, risk, gateway)


@pytest.fixture
def place_order(seed, checkout):
    """下单并写入一条支付流水"""
    async def _place(
        user_id: int,
        lines: Sequence[Tuple[Product, int]],
        voucher_id: Optional[int] = None,
        payment_method: str = "PAYPAL",
        gateway_reference: Optional[str] = "5O190127TN364715T",
        txn_retrieval_ref: Optional[str] = None
    ) -> OrderSummary:
        for product, quantity in lines:
            await seed.add_to_cart(user_id, product.id, quantity)
        summary = await checkout.checkout(
            user_id,
            CheckoutOptions(voucher_id=voucher_id, payment_status=PaymentStatus.PAID)
        )
        await seed.payment(
            summary.id,
            summary.total_amount,
            payment_method=payment_method,
            gateway_reference=gateway_reference,
            txn_retrieval_ref=txn_retrieval_ref
        )
        return summary

    return _place
