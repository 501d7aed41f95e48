"""
支付编排服务

网关支付（PayPal）：创建网关订单 → 用户授权 → 扣款 → 同一事务内结算入账。
钱包支付：结算与钱包扣款在同一外层事务内完成。
扫码支付（NETS QR）：生成二维码后按固定间隔轮询状态，等待期间不持有数据库事务。

待确认支付以 PendingPayment 持久化，按 (user_id, gateway_reference) 查找，
完成后记录生成的订单，重复确认直接返回已有结果。
"""
import asyncio
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cl_core.gateways.base import PaymentGateway, QrPaymentGateway
from cl_core.models.base import utcnow
from cl_core.models.enums import (
    DeliveryStatus,
    OrderType,
    PaymentMethod,
    PaymentPurpose,
    PaymentStatus,
    PendingPaymentStatus,
    WalletTxnType,
)
from cl_core.models.orders import Order
from cl_core.models.payments import PaymentTransaction, PendingPayment
from cl_core.schemas import (
    CheckoutOptions,
    OrderSummary,
    PaymentStart,
    Quote,
    TopupResult,
    WalletTxnMeta,
)
from cl_core.utils.errors import (
    CommerceException,
    ConcurrencyConflict,
    PaymentGatewayError,
    StateError,
    ValidationError,
)
from cl_core.utils.money import round2

from .base import BaseService, ServiceResult
from .checkout import CheckoutTransaction, to_order_summary
from .pricing import PricingEngine
from .risk import RiskFlagger
from .vouchers import VoucherStore
from .wallet import WalletLedger

CompletionResult = Union[OrderSummary, TopupResult]


def _now_ms() -> int:
    return int(time.time() * 1000)


class PaymentService(BaseService):
    """支付编排：网关 / 钱包 / 扫码"""

    def __init__(
        self,
        db_manager=None,
        settings=None,
        pricing: Optional[PricingEngine] = None,
        checkout: Optional[CheckoutTransaction] = None,
        wallet: Optional[WalletLedger] = None,
        risk: Optional[RiskFlagger] = None,
        gateway: Optional[PaymentGateway] = None,
        qr_gateway: Optional[QrPaymentGateway] = None
    ):
        super().__init__(db_manager, settings)
        voucher_store = VoucherStore(self.db_manager, self.settings)
        self.pricing = pricing or PricingEngine(self.db_manager, self.settings, voucher_store)
        self.checkout = checkout or CheckoutTransaction(
            self.db_manager, self.settings, self.pricing, self.pricing.voucher_store
        )
        self.wallet = wallet or WalletLedger(self.db_manager, self.settings)
        self.risk = risk or RiskFlagger(self.db_manager, self.settings)
        self.gateway = gateway
        self.qr_gateway = qr_gateway

    # ------------------------------------------------------------------
    # 公共工具
    # ------------------------------------------------------------------

    def _require_gateway(self) -> PaymentGateway:
        if self.gateway is None:
            raise StateError(code="GATEWAY_NOT_CONFIGURED", detail="Online payment is not available.")
        return self.gateway

    def _require_qr_gateway(self) -> QrPaymentGateway:
        if self.qr_gateway is None:
            raise StateError(code="GATEWAY_NOT_CONFIGURED", detail="QR payment is not available.")
        return self.qr_gateway

    @staticmethod
    def _positive_amount(amount) -> Decimal:
        try:
            value = round2(amount)
        except ValueError:
            raise ValidationError(code="INVALID_AMOUNT", detail="Amount must be a number")
        if value <= 0:
            raise ValidationError(code="INVALID_AMOUNT", detail="Amount must be greater than 0")
        return value

    async def _create_pending(
        self,
        user_id: int,
        reference: str,
        purpose: PaymentPurpose,
        method: PaymentMethod,
        amount: Decimal,
        quote: Optional[Quote] = None
    ) -> PendingPayment:
        async def _insert(session: AsyncSession) -> PendingPayment:
            pending = PendingPayment(
                user_id=user_id,
                gateway_reference=reference,
                purpose=purpose.value,
                payment_method=method.value,
                amount=amount,
                currency=self.settings.currency,
                voucher_code=quote.voucher_code if quote else None,
                voucher_id=quote.voucher_id if quote else None,
                quote_total=quote.total if quote else None,
                status=PendingPaymentStatus.PENDING.value
            )
            session.add(pending)
            await session.flush()
            return pending

        return await self.execute_with_transaction(_insert)

    async def get_pending(self, user_id: int, reference: str) -> PendingPayment:
        """按 (user_id, reference) 查找待确认支付，不属于该用户时视为会话不匹配"""
        async def _read(session: AsyncSession) -> Optional[PendingPayment]:
            result = await session.execute(
                select(PendingPayment).where(
                    PendingPayment.user_id == user_id,
                    PendingPayment.gateway_reference == reference
                )
            )
            return result.scalar_one_or_none()

        pending = await self.execute_with_session(_read)
        if pending is None:
            raise StateError(
                code="PAYMENT_SESSION_MISMATCH",
                detail="Payment session mismatch. Please try again."
            )
        return pending

    @staticmethod
    async def _lock_pending(session: AsyncSession, pending_id: int) -> PendingPayment:
        result = await session.execute(
            select(PendingPayment).where(PendingPayment.id == pending_id).with_for_update()
        )
        return result.scalar_one()

    async def _mark_failed(self, pending_id: int, reason: str) -> None:
        """独立事务中将待确认支付置为 FAILED（已完成的不受影响）"""
        async def _update(session: AsyncSession) -> None:
            await session.execute(
                update(PendingPayment)
                .where(
                    PendingPayment.id == pending_id,
                    PendingPayment.status == PendingPaymentStatus.PENDING.value
                )
                .values(status=PendingPaymentStatus.FAILED.value, failure_reason=reason[:500])
                .execution_options(synchronize_session=False)
            )

        await self.execute_with_transaction(_update)

    @staticmethod
    async def _load_summary(session: AsyncSession, order_id: int) -> OrderSummary:
        result = await session.execute(
            select(Order).options(selectinload(Order.items)).where(Order.id == order_id)
        )
        order = result.scalar_one()
        return to_order_summary(order, order.items)

    async def _existing_result(self, pending: PendingPayment) -> CompletionResult:
        if pending.purpose == PaymentPurpose.TOPUP.value:
            balance = await self.wallet.get_balance(pending.user_id)
            return TopupResult(order_id=pending.order_id, amount=round2(pending.amount), balance=balance)
        return await self.checkout.get_order(pending.order_id, user_id=pending.user_id)

    def _check_pending(self, pending: PendingPayment, purpose: PaymentPurpose) -> None:
        if pending.purpose != purpose.value:
            raise StateError(code="PAYMENT_SESSION_MISMATCH", detail="Payment session mismatch. Please try again.")
        if pending.status == PendingPaymentStatus.FAILED.value:
            raise StateError(
                code="PAYMENT_ALREADY_FAILED",
                detail=pending.failure_reason or "This payment has already failed."
            )

    async def _requote(self, pending: PendingPayment, role: Optional[str]) -> Quote:
        """重新报价并与创建支付时的总额比较"""
        quote = await self.pricing.build_quote(pending.user_id, role, pending.voucher_code)
        if round2(quote.total) != round2(pending.quote_total):
            self.logger.warning(
                "Quote changed before payment capture",
                user_id=pending.user_id,
                reference=pending.gateway_reference,
                expected=str(pending.quote_total),
                actual=str(quote.total)
            )
            raise ConcurrencyConflict(
                code="QUOTE_STALE",
                detail="Cart changed during payment, please refresh and try again."
            )
        return quote

    # ------------------------------------------------------------------
    # 入账事务
    # ------------------------------------------------------------------

    async def _complete_checkout(
        self,
        session: AsyncSession,
        pending_id: int,
        quote: Quote,
        txn_fields: Dict[str, Any]
    ) -> OrderSummary:
        pending = await self._lock_pending(session, pending_id)
        if pending.status == PendingPaymentStatus.COMPLETED.value:
            return await self._load_summary(session, pending.order_id)

        summary = await self.checkout.checkout(
            pending.user_id,
            CheckoutOptions(
                voucher_id=quote.voucher_id,
                payment_status=PaymentStatus.PAID,
                expected_total=pending.quote_total
            ),
            session=session
        )
        session.add(PaymentTransaction(
            order_id=summary.id,
            amount=summary.total_amount,
            currency=pending.currency,
            **txn_fields
        ))

        pending.status = PendingPaymentStatus.COMPLETED.value
        pending.order_id = summary.id
        pending.completed_at = utcnow()
        await session.flush()
        return summary

    async def _complete_topup(
        self,
        session: AsyncSession,
        pending_id: int,
        amount: Decimal,
        txn_fields: Dict[str, Any]
    ) -> TopupResult:
        pending = await self._lock_pending(session, pending_id)
        if pending.status == PendingPaymentStatus.COMPLETED.value:
            balance = await self.wallet.get_balance(pending.user_id, session=session)
            return TopupResult(order_id=pending.order_id, amount=round2(pending.amount), balance=balance)

        # 充值以记账订单表示，无订单行
        order = Order(
            user_id=pending.user_id,
            order_type=OrderType.TOPUP.value,
            subtotal=amount,
            discount_amount=Decimal("0.00"),
            shipping_fee=Decimal("0.00"),
            tax_amount=Decimal("0.00"),
            total_amount=amount,
            payment_status=PaymentStatus.PAID.value,
            delivery_status=DeliveryStatus.COMPLETED.value
        )
        session.add(order)
        await session.flush()

        entry = await self.wallet.credit(
            pending.user_id,
            amount,
            WalletTxnMeta(
                txn_type=WalletTxnType.TOPUP,
                reference_type="ORDER",
                reference_id=str(order.id),
                payment_method=pending.payment_method,
                description=f"Wallet top-up via {pending.payment_method}"
            ),
            session=session
        )
        session.add(PaymentTransaction(
            order_id=order.id,
            amount=amount,
            currency=pending.currency,
            **txn_fields
        ))

        pending.status = PendingPaymentStatus.COMPLETED.value
        pending.order_id = order.id
        pending.completed_at = utcnow()
        await session.flush()
        return TopupResult(order_id=order.id, amount=amount, balance=round2(entry.balance_after))

    async def _finalize(self, pending: PendingPayment, operation, *args) -> Any:
        """执行入账事务；资金已到账但入账失败时记录错误并标记 FAILED"""
        try:
            return await self.execute_with_transaction(operation, pending.id, *args)
        except CommerceException as e:
            self.logger.error(
                "Payment received but ledger update failed",
                user_id=pending.user_id,
                reference=pending.gateway_reference,
                purpose=pending.purpose,
                error_code=e.code,
                error=e.detail
            )
            await self._mark_failed(pending.id, f"{e.code}: {e.detail or e.title}")
            raise

    # ------------------------------------------------------------------
    # 网关结账
    # ------------------------------------------------------------------

    async def create_gateway_checkout(
        self,
        user_id: int,
        role: Optional[str] = None,
        voucher_code: Optional[str] = None
    ) -> PaymentStart:
        """报价并创建网关订单"""
        gateway = self._require_gateway()
        quote = await self.pricing.build_quote(user_id, role, voucher_code)
        if quote.total <= 0:
            raise ValidationError(code="INVALID_AMOUNT", detail="Order total must be greater than 0")

        gateway_order = await gateway.create_order(quote.total, quote.currency)
        method = PaymentMethod.normalize(gateway.name)
        pending = await self._create_pending(
            user_id, gateway_order.id, PaymentPurpose.CHECKOUT, method, quote.total, quote
        )

        self.logger.info(
            "Gateway checkout created",
            user_id=user_id,
            reference=gateway_order.id,
            total=str(quote.total),
            voucher_id=quote.voucher_id
        )
        return PaymentStart(
            pending_id=pending.id,
            gateway_reference=gateway_order.id,
            amount=quote.total,
            currency=quote.currency
        )

    async def capture_gateway_checkout(
        self,
        user_id: int,
        gateway_order_id: str,
        role: Optional[str] = None
    ) -> OrderSummary:
        """确认网关支付并生成已支付订单（幂等）"""
        gateway = self._require_gateway()
        pending = await self.get_pending(user_id, gateway_order_id)
        if pending.status == PendingPaymentStatus.COMPLETED.value and pending.purpose == PaymentPurpose.CHECKOUT.value:
            return await self._existing_result(pending)
        self._check_pending(pending, PaymentPurpose.CHECKOUT)

        try:
            quote = await self._requote(pending, role)
        except CommerceException as e:
            await self._mark_failed(pending.id, f"{e.code}: {e.detail or e.title}")
            raise

        capture = await gateway.capture_order(gateway_order_id)
        if not capture.is_completed:
            await self._mark_failed(pending.id, f"Gateway capture status {capture.status}")
            raise PaymentGatewayError(
                code="PAYMENT_NOT_COMPLETED",
                detail="Payment not completed.",
                gateway=gateway.name
            )

        method = PaymentMethod.normalize(pending.payment_method)
        summary = await self._finalize(pending, self._complete_checkout, quote, {
            "gateway_reference": gateway_order_id,
            "payer_id": capture.payer_id,
            "payer_email": capture.payer_email,
            "status": capture.status,
            "payment_method": method.value,
        })

        self.logger.info(
            "Gateway checkout captured",
            user_id=user_id,
            reference=gateway_order_id,
            order_id=summary.id,
            total=str(summary.total_amount)
        )
        return summary

    # ------------------------------------------------------------------
    # 钱包支付
    # ------------------------------------------------------------------

    async def pay_with_wallet(
        self,
        user_id: int,
        role: Optional[str] = None,
        voucher_code: Optional[str] = None
    ) -> OrderSummary:
        """钱包支付：结算、扣款、支付流水在同一事务内，任一步失败整体回滚"""
        quote = await self.pricing.build_quote(user_id, role, voucher_code)
        summary = await self.execute_with_transaction(self._pay_with_wallet, user_id, quote)
        self.logger.info(
            "Wallet payment completed",
            user_id=user_id,
            order_id=summary.id,
            total=str(summary.total_amount)
        )
        return summary

    async def _pay_with_wallet(self, session: AsyncSession, user_id: int, quote: Quote) -> OrderSummary:
        summary = await self.checkout.checkout(
            user_id,
            CheckoutOptions(
                voucher_id=quote.voucher_id,
                payment_status=PaymentStatus.PAID,
                expected_total=quote.total
            ),
            session=session
        )

        if summary.total_amount > 0:
            await self.wallet.debit(
                user_id,
                summary.total_amount,
                WalletTxnMeta(
                    txn_type=WalletTxnType.PURCHASE_DEBIT,
                    reference_type="ORDER",
                    reference_id=str(summary.id),
                    payment_method=PaymentMethod.WALLET.value,
                    description=f"Payment for order #{summary.id}"
                ),
                session=session
            )

        session.add(PaymentTransaction(
            order_id=summary.id,
            gateway_reference=f"WALLET-{summary.id}-{_now_ms()}",
            payer_id=f"WALLET_{user_id}",
            amount=summary.total_amount,
            currency=self.settings.currency,
            status="COMPLETED",
            payment_method=PaymentMethod.WALLET.value
        ))
        await session.flush()
        return summary

    # ------------------------------------------------------------------
    # 网关充值
    # ------------------------------------------------------------------

    async def create_gateway_topup(self, user_id: int, amount) -> PaymentStart:
        """创建充值网关订单"""
        gateway = self._require_gateway()
        value = self._positive_amount(amount)

        gateway_order = await gateway.create_order(value, self.settings.currency)
        method = PaymentMethod.normalize(gateway.name)
        pending = await self._create_pending(user_id, gateway_order.id, PaymentPurpose.TOPUP, method, value)

        self.logger.info("Gateway top-up created", user_id=user_id, reference=gateway_order.id, amount=str(value))
        return PaymentStart(
            pending_id=pending.id,
            gateway_reference=gateway_order.id,
            amount=value,
            currency=self.settings.currency
        )

    async def capture_gateway_topup(self, user_id: int, gateway_order_id: str) -> TopupResult:
        """确认充值：扣款前检查风控上限，入账与记账订单在同一事务内"""
        gateway = self._require_gateway()
        pending = await self.get_pending(user_id, gateway_order_id)
        if pending.status == PendingPaymentStatus.COMPLETED.value and pending.purpose == PaymentPurpose.TOPUP.value:
            return await self._existing_result(pending)
        self._check_pending(pending, PaymentPurpose.TOPUP)

        try:
            await self.risk.evaluate_topup(user_id, pending.amount)
        except ValidationError as e:
            await self._mark_failed(pending.id, f"{e.code}: {e.detail}")
            raise

        capture = await gateway.capture_order(gateway_order_id)
        if not capture.is_completed:
            await self._mark_failed(pending.id, f"Gateway capture status {capture.status}")
            raise PaymentGatewayError(
                code="PAYMENT_NOT_COMPLETED",
                detail="Top-up payment not completed.",
                gateway=gateway.name
            )

        amount = round2(capture.amount) if capture.amount is not None else round2(pending.amount)
        result = await self._finalize(pending, self._complete_topup, amount, {
            "gateway_reference": gateway_order_id,
            "payer_id": capture.payer_id,
            "payer_email": capture.payer_email,
            "status": capture.status,
            "payment_method": PaymentMethod.normalize(pending.payment_method).value,
        })

        self.logger.info(
            "Wallet top-up captured",
            user_id=user_id,
            reference=gateway_order_id,
            order_id=result.order_id,
            amount=str(result.amount),
            balance=str(result.balance)
        )
        return result

    # ------------------------------------------------------------------
    # 扫码支付
    # ------------------------------------------------------------------

    async def request_qr_payment(
        self,
        user_id: int,
        purpose: PaymentPurpose,
        amount=None,
        role: Optional[str] = None,
        voucher_code: Optional[str] = None
    ) -> PaymentStart:
        """生成扫码支付二维码

        CHECKOUT 按当前购物车报价；TOPUP 使用传入金额，生成二维码前检查风控上限。
        """
        qr_gateway = self._require_qr_gateway()
        purpose = PaymentPurpose(purpose)

        quote: Optional[Quote] = None
        if purpose is PaymentPurpose.CHECKOUT:
            quote = await self.pricing.build_quote(user_id, role, voucher_code)
            value = quote.total
            if value <= 0:
                raise ValidationError(code="INVALID_AMOUNT", detail="Order total must be greater than 0")
        else:
            value = self._positive_amount(amount)
            await self.risk.evaluate_topup(user_id, value)

        qr = await qr_gateway.request_qr(value)
        pending = await self._create_pending(
            user_id, qr.txn_retrieval_ref, purpose, PaymentMethod.NETS, value, quote
        )

        self.logger.info(
            "QR payment requested",
            user_id=user_id,
            purpose=purpose.value,
            reference=qr.txn_retrieval_ref,
            amount=str(value)
        )
        return PaymentStart(
            pending_id=pending.id,
            gateway_reference=qr.txn_retrieval_ref,
            amount=value,
            currency=self.settings.currency,
            qr_payload=qr.qr_payload
        )

    async def poll_qr_payment(
        self,
        user_id: int,
        txn_retrieval_ref: str,
        role: Optional[str] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        max_attempts: Optional[int] = None
    ) -> ServiceResult:
        """轮询扫码支付状态直到成功、失败、超时或被取消

        每次查询间隔 qr_poll_interval_seconds，等待期间不持有数据库事务。
        should_stop 返回 True（如客户端断开）时停止轮询，待确认支付保持 PENDING。
        任务被取消时 CancelledError 原样抛出。
        """
        qr_gateway = self._require_qr_gateway()
        pending = await self.get_pending(user_id, txn_retrieval_ref)
        if pending.status == PendingPaymentStatus.COMPLETED.value:
            return ServiceResult.ok(await self._existing_result(pending))
        if pending.status == PendingPaymentStatus.FAILED.value:
            return ServiceResult.error(pending.failure_reason or "Payment failed", "QR_PAYMENT_FAILED")

        attempts = max_attempts if max_attempts is not None else self.settings.qr_poll_max_attempts
        interval = self.settings.qr_poll_interval_seconds

        for attempt in range(1, attempts + 1):
            if should_stop is not None and should_stop():
                self.logger.info("QR polling stopped by caller", user_id=user_id, reference=txn_retrieval_ref)
                return ServiceResult.error("Polling stopped", "POLL_STOPPED")

            try:
                status = await qr_gateway.query_status(txn_retrieval_ref)
            except PaymentGatewayError as e:
                self.logger.warning(
                    "QR status query failed",
                    reference=txn_retrieval_ref,
                    attempt=attempt,
                    error=e.detail
                )
            else:
                if status.is_success:
                    return await self._complete_qr(pending, role)
                if status.is_failed:
                    reason = f"QR payment failed: response_code={status.response_code}, txn_status={status.txn_status}"
                    await self._mark_failed(pending.id, reason)
                    self.logger.warning("QR payment failed", user_id=user_id, reference=txn_retrieval_ref)
                    return ServiceResult.error(reason, "QR_PAYMENT_FAILED")

            if attempt < attempts:
                await asyncio.sleep(interval)

        # 超时：通知网关前端已超时，最后确认一次
        try:
            status = await qr_gateway.query_status(txn_retrieval_ref, frontend_timeout=True)
        except PaymentGatewayError:
            status = None
        if status is not None and status.is_success:
            return await self._complete_qr(pending, role)

        await self._mark_failed(pending.id, "QR payment timed out")
        self.logger.warning("QR payment timed out", user_id=user_id, reference=txn_retrieval_ref, attempts=attempts)
        return ServiceResult.error("QR payment timed out", "QR_PAYMENT_TIMEOUT")

    async def _complete_qr(self, pending: PendingPayment, role: Optional[str]) -> ServiceResult:
        txn_fields = {
            "txn_retrieval_ref": pending.gateway_reference,
            "payer_id": f"NETS_{pending.user_id}",
            "status": "COMPLETED",
            "payment_method": PaymentMethod.NETS.value,
        }
        try:
            if pending.purpose == PaymentPurpose.TOPUP.value:
                result = await self._finalize(pending, self._complete_topup, round2(pending.amount), txn_fields)
            else:
                try:
                    quote = await self._requote(pending, role)
                except CommerceException as e:
                    await self._mark_failed(pending.id, f"{e.code}: {e.detail or e.title}")
                    raise
                result = await self._finalize(pending, self._complete_checkout, quote, txn_fields)
        except CommerceException as e:
            return ServiceResult.from_exception(e)

        self.logger.info(
            "QR payment completed",
            user_id=pending.user_id,
            reference=pending.gateway_reference,
            purpose=pending.purpose,
            order_id=result.order_id if isinstance(result, TopupResult) else result.id
        )
        return ServiceResult.ok(result)
