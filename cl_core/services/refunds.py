"""
退款服务

状态机：PENDING → REFUNDED / REJECTED；审批时下游失败 → FAILED。
REFUNDED（含历史 APPROVED）、REJECTED、FAILED 均为终态。

分摊规则：
    share = 订单优惠 × item_total / subtotal
    unit  = (item_total - share) / 购买数量
    line  = round2(申请数量 × unit)
全部数量申请时退款额为订单总额（含运费）；部分申请为各行之和（不含运费）。
"""
import time
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cl_core.gateways.base import PaymentGateway
from cl_core.models.base import utcnow
from cl_core.models.enums import (
    DeliveryStatus,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    RiskEventType,
    WalletTxnType,
)
from cl_core.models.orders import DeliveryTracking, Order, OrderItem
from cl_core.models.payments import PaymentTransaction
from cl_core.models.refunds import RefundRequest
from cl_core.schemas import RefundItemRequest, RefundLine, RefundResult, WalletTxnMeta
from cl_core.utils.errors import (
    NotFoundError,
    PaymentGatewayError,
    StateError,
    ValidationError,
)
from cl_core.utils.money import ZERO, round2

from .base import BaseService
from .risk import RiskFlagger
from .vouchers import VoucherStore
from .wallet import WalletLedger

ItemLike = Union[RefundItemRequest, Dict[str, Any]]

SUCCESS_STATUSES = (RefundStatus.APPROVED.value, RefundStatus.REFUNDED.value)


def allocate_refund(
    order: Order,
    order_items: Sequence[OrderItem],
    requested: Sequence[RefundItemRequest]
) -> Tuple[List[RefundLine], Decimal]:
    """按行分摊订单优惠，计算退款明细与总额"""
    if not requested:
        raise ValidationError(code="REFUND_ITEMS_REQUIRED", detail="Select at least one item to refund")

    by_id = {item.id: item for item in order_items}
    seen = set()
    subtotal = round2(order.subtotal)
    discount = round2(order.discount_amount)

    lines: List[RefundLine] = []
    total = ZERO
    for req in requested:
        if req.order_item_id in seen:
            raise ValidationError(
                code="REFUND_ITEM_DUPLICATED",
                detail=f"Order item {req.order_item_id} requested more than once"
            )
        seen.add(req.order_item_id)

        item = by_id.get(req.order_item_id)
        if item is None:
            raise ValidationError(
                code="ORDER_ITEM_NOT_FOUND",
                detail=f"Order item {req.order_item_id} does not belong to this order"
            )
        if req.quantity > item.quantity:
            raise ValidationError(
                code="REFUND_QTY_EXCEEDED",
                detail=f"Refund quantity exceeds purchased quantity for item {item.id}"
            )

        item_total = round2(item.item_total)
        share = discount * item_total / subtotal if subtotal > 0 else ZERO
        # 优惠含运费部分时份额可能超过行金额
        share = min(share, item_total)
        unit = (item_total - share) / Decimal(item.quantity)
        line_refund = round2(unit * req.quantity)

        lines.append(RefundLine(
            order_item_id=item.id,
            quantity=req.quantity,
            unit_refund=round2(unit),
            line_refund=line_refund
        ))
        total += line_refund

    requested_qty = {line.order_item_id: line.quantity for line in lines}
    is_full = all(requested_qty.get(item.id) == item.quantity for item in order_items)
    amount = round2(order.total_amount) if is_full else round2(total)
    if amount <= 0:
        raise ValidationError(code="REFUND_AMOUNT_INVALID", detail="Refund amount must be greater than 0")
    return lines, amount


class RefundEngine(BaseService):
    """退款申请、审批与拒绝"""

    def __init__(
        self,
        db_manager=None,
        settings=None,
        wallet: Optional[WalletLedger] = None,
        voucher_store: Optional[VoucherStore] = None,
        risk: Optional[RiskFlagger] = None,
        gateway: Optional[PaymentGateway] = None
    ):
        super().__init__(db_manager, settings)
        self.wallet = wallet or WalletLedger(self.db_manager, self.settings)
        self.voucher_store = voucher_store or VoucherStore(self.db_manager, self.settings)
        self.risk = risk or RiskFlagger(self.db_manager, self.settings)
        self.gateway = gateway

    @staticmethod
    async def _latest_transaction(session: AsyncSession, order_id: int) -> Optional[PaymentTransaction]:
        result = await session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.order_id == order_id)
            .order_by(PaymentTransaction.transaction_time.desc(), PaymentTransaction.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _status_counts(session: AsyncSession, order_id: int) -> Dict[str, int]:
        result = await session.execute(
            select(RefundRequest.status, func.count(RefundRequest.id))
            .where(RefundRequest.order_id == order_id)
            .group_by(RefundRequest.status)
        )
        return {str(row[0]).upper(): int(row[1]) for row in result.all()}

    @staticmethod
    async def _lock_order(session: AsyncSession, order_id: int) -> Optional[Order]:
        result = await session.execute(select(Order).where(Order.id == order_id).with_for_update())
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # 提交
    # ------------------------------------------------------------------

    async def submit_request(
        self,
        user_id: int,
        order_id: int,
        items: Iterable[ItemLike],
        reason: str,
        details: Optional[str] = None
    ) -> RefundRequest:
        """提交退款申请"""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError(code="REFUND_REASON_REQUIRED", detail="Refund reason is required")

        requested = [
            item if isinstance(item, RefundItemRequest) else RefundItemRequest.model_validate(item)
            for item in (items or [])
        ]
        details = (details or "").strip() or None

        refund = await self.execute_with_transaction(
            self._submit, user_id, order_id, requested, reason, details
        )
        self.logger.info(
            "Refund request submitted",
            refund_id=refund.id,
            order_id=order_id,
            user_id=user_id,
            amount=str(refund.amount)
        )
        return refund

    async def _submit(
        self,
        session: AsyncSession,
        user_id: int,
        order_id: int,
        requested: List[RefundItemRequest],
        reason: str,
        details: Optional[str]
    ) -> RefundRequest:
        order = await self._lock_order(session, order_id)
        if order is None or order.user_id != user_id:
            raise NotFoundError(code="ORDER_NOT_FOUND", resource="Order")

        txn = await self._latest_transaction(session, order_id)
        if txn is None:
            raise StateError(code="PAYMENT_NOT_FOUND", detail="No payment record found for this order.")

        counts = await self._status_counts(session, order_id)
        if counts.get(RefundStatus.PENDING.value):
            raise StateError(code="REFUND_ALREADY_PENDING", detail="A refund request is already pending for this order.")
        if any(counts.get(s) for s in SUCCESS_STATUSES):
            raise StateError(code="REFUND_ALREADY_COMPLETED", detail="This order has already been refunded.")
        if counts.get(RefundStatus.FAILED.value):
            raise StateError(code="REFUND_NOT_RETRYABLE", detail="A previous refund for this order failed. Please contact support.")
        if counts.get(RefundStatus.REJECTED.value, 0) >= self.settings.refund_max_rejections:
            raise StateError(code="REFUND_LIMIT_REACHED", detail="Refund attempt limit reached. Please contact support.")

        result = await session.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        )
        order_items = list(result.scalars().all())
        lines, amount = allocate_refund(order, order_items, requested)

        method = PaymentMethod.guess_from_transaction(txn.payment_method, txn.gateway_reference, txn.payer_id)
        refund = RefundRequest(
            order_id=order_id,
            user_id=user_id,
            refund_items=[line.model_dump(mode="json") for line in lines],
            amount=amount,
            reason=reason,
            details=details,
            status=RefundStatus.PENDING.value,
            payment_method=method.value,
            payment_reference=txn.gateway_reference or txn.txn_retrieval_ref
        )
        session.add(refund)
        await session.flush()
        return refund

    # ------------------------------------------------------------------
    # 审批
    # ------------------------------------------------------------------

    async def approve(self, refund_id: int) -> RefundResult:
        """审批退款并结算

        网关失败、缺少参考号或支付方式未知时标记为 FAILED 并返回；
        其余意外错误整体回滚。
        """
        result = await self.execute_with_transaction(self._approve, refund_id)
        log = self.logger.info if result.status == RefundStatus.REFUNDED.value else self.logger.warning
        log(
            "Refund approval processed",
            refund_id=refund_id,
            order_id=result.order_id,
            status=result.status,
            method=result.payment_method.value,
            error=result.error
        )
        return result

    async def _lock_refund(self, session: AsyncSession, refund_id: int) -> RefundRequest:
        result = await session.execute(
            select(RefundRequest).where(RefundRequest.id == refund_id).with_for_update()
        )
        refund = result.scalar_one_or_none()
        if refund is None:
            raise NotFoundError(code="REFUND_NOT_FOUND", resource="Refund request")
        if str(refund.status).upper() != RefundStatus.PENDING.value:
            raise StateError(
                code="REFUND_ALREADY_PROCESSED",
                detail=f"Refund is already {str(refund.status).upper()}."
            )
        return refund

    async def _approve(self, session: AsyncSession, refund_id: int) -> RefundResult:
        refund = await self._lock_refund(session, refund_id)

        order = await self._lock_order(session, refund.order_id)
        if order is None or order.user_id != refund.user_id:
            raise StateError(code="ORDER_MISMATCH", detail="Refund request does not match the order owner.")

        counts = await self._status_counts(session, refund.order_id)
        if any(counts.get(s) for s in SUCCESS_STATUSES):
            raise StateError(code="REFUND_ALREADY_COMPLETED", detail="Refund already completed for this order.")

        txn = await self._latest_transaction(session, refund.order_id)
        declared = PaymentMethod.normalize(refund.payment_method)
        actual = PaymentMethod.UNKNOWN
        if txn is not None:
            actual = PaymentMethod.guess_from_transaction(txn.payment_method, txn.gateway_reference, txn.payer_id)
        if declared is not PaymentMethod.UNKNOWN and actual is not PaymentMethod.UNKNOWN and declared is not actual:
            raise StateError(
                code="PAYMENT_METHOD_MISMATCH",
                detail=f"Refund method {declared.value} does not match payment method {actual.value}."
            )
        method = declared if declared is not PaymentMethod.UNKNOWN else actual

        amount = round2(refund.amount)
        currency = (txn.currency if txn is not None else None) or self.settings.currency

        refund_reference: Optional[str] = None
        error: Optional[str] = None
        try:
            if txn is None:
                error = "No payment record found for this order"
            elif method is PaymentMethod.PAYPAL:
                refund_reference, error = await self._settle_via_gateway(refund, txn, amount, currency)
            elif method.refunds_to_wallet:
                refund_reference = await self._settle_via_wallet(session, refund, method, amount)
            else:
                error = f"Unsupported payment method: {refund.payment_method}"
        except (PaymentGatewayError, ValidationError) as e:
            error = e.detail or e.title

        now = utcnow()
        refund.updated_at = now
        if error is not None:
            refund.status = RefundStatus.FAILED.value
            refund.refund_reference = refund_reference
            await session.flush()
            return RefundResult(
                refund_id=refund.id,
                order_id=refund.order_id,
                status=refund.status,
                amount=amount,
                payment_method=method,
                refund_reference=refund_reference,
                order_payment_status=PaymentStatus(order.payment_status),
                error=error
            )

        refund.status = RefundStatus.REFUNDED.value
        refund.refund_reference = refund_reference
        refund.approved_at = refund.approved_at or now

        new_status = PaymentStatus.REFUNDED if amount >= round2(order.total_amount) else PaymentStatus.PARTIALLY_REFUNDED
        order.payment_status = new_status.value
        order.updated_at = now

        if order.voucher_id is not None:
            await self.voucher_store.decrement_usage(order.voucher_id, session=session)

        await session.flush()
        return RefundResult(
            refund_id=refund.id,
            order_id=refund.order_id,
            status=refund.status,
            amount=amount,
            payment_method=method,
            refund_reference=refund_reference,
            order_payment_status=new_status
        )

    async def _settle_via_gateway(
        self,
        refund: RefundRequest,
        txn: PaymentTransaction,
        amount: Decimal,
        currency: str
    ) -> Tuple[Optional[str], Optional[str]]:
        """网关原路退款，返回 (退款参考号, 错误信息)"""
        reference = refund.payment_reference or txn.gateway_reference
        if not reference:
            return None, "Missing payment reference"
        if self.gateway is None:
            return None, "Payment gateway is not configured"

        result = await self.gateway.refund_order(reference, amount, currency)
        if not result.is_accepted:
            return result.id, f"Gateway refund status {result.status}"
        return result.id, None

    async def _settle_via_wallet(
        self,
        session: AsyncSession,
        refund: RefundRequest,
        method: PaymentMethod,
        amount: Decimal
    ) -> str:
        """退回钱包余额，超过余额上限只记录风控标记"""
        entry = await self.wallet.credit(
            refund.user_id,
            amount,
            WalletTxnMeta(
                txn_type=WalletTxnType.REFUND_CREDIT,
                reference_type="ORDER",
                reference_id=str(refund.order_id),
                payment_method=method.value,
                description=f"Refund for order #{refund.order_id}"
            ),
            session=session
        )

        cap = round2(self.settings.wallet_balance_cap)
        if round2(entry.balance_after) > cap:
            await self.risk.record(
                refund.user_id,
                RiskEventType.WALLET_BALANCE_CAP_EXCEEDED,
                "Wallet balance cap exceeded by refund credit",
                {"cap": str(cap), "balance_after": str(entry.balance_after), "refund_id": refund.id},
                session=session
            )

        return f"WALLET-{refund.id}-{int(time.time() * 1000)}"

    # ------------------------------------------------------------------
    # 拒绝
    # ------------------------------------------------------------------

    async def reject(self, refund_id: int) -> RefundRequest:
        """拒绝退款；达到最大拒绝次数时订单配送状态置为 COMPLETED"""
        refund = await self.execute_with_transaction(self._reject, refund_id)
        self.logger.info("Refund request rejected", refund_id=refund_id, order_id=refund.order_id)
        return refund

    async def _reject(self, session: AsyncSession, refund_id: int) -> RefundRequest:
        refund = await self._lock_refund(session, refund_id)
        refund.status = RefundStatus.REJECTED.value
        refund.updated_at = utcnow()
        await session.flush()

        counts = await self._status_counts(session, refund.order_id)
        if counts.get(RefundStatus.REJECTED.value, 0) >= self.settings.refund_max_rejections:
            order = await self._lock_order(session, refund.order_id)
            if order is not None:
                order.delivery_status = DeliveryStatus.COMPLETED.value
                order.updated_at = utcnow()
            await session.execute(
                update(DeliveryTracking)
                .where(DeliveryTracking.order_id == refund.order_id)
                .values(status=DeliveryStatus.COMPLETED.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.flush()
            self.logger.warning(
                "Refund rejection limit reached, order closed",
                order_id=refund.order_id
            )

        return refund

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def get_latest_for_order(self, order_id: int) -> Optional[RefundRequest]:
        async def _read(session: AsyncSession) -> Optional[RefundRequest]:
            result = await session.execute(
                select(RefundRequest)
                .where(RefundRequest.order_id == order_id)
                .order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

        return await self.execute_with_session(_read)

    async def list_by_user(self, user_id: int) -> List[RefundRequest]:
        async def _read(session: AsyncSession) -> List[RefundRequest]:
            result = await session.execute(
                select(RefundRequest)
                .where(RefundRequest.user_id == user_id)
                .order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc())
            )
            return list(result.scalars().all())

        return await self.execute_with_session(_read)

    async def list_all(self, status: Optional[str] = None, limit: int = 200) -> List[RefundRequest]:
        async def _read(session: AsyncSession) -> List[RefundRequest]:
            stmt = select(RefundRequest)
            if status:
                stmt = stmt.where(RefundRequest.status == status.upper())
            stmt = stmt.order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc()).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self.execute_with_session(_read)
