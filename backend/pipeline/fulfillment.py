"""
Payment Confirmation Handler
============================
Idempotent reconciler for paid checkout sessions.

Two triggers converge here: the customer returning from the hosted page
(`confirm_from_client`) and the signed gateway webhook (`fulfill`). For one
session:

1. A fulfillment lock keyed by session id serialises the triggers (and any
   later write to the order, see pipeline.locks.order_lock_key)
2. An existing order for the payment reference short-circuits (dedup point)
3. Otherwise the order is built from the PendingCheckout (or metadata) and
   inserted; the unique payment_id rejects a concurrent duplicate
4. Post-creation steps run once each, tracked by Order.fulfillment flags:
   transaction (registered users), stock, coupon, confirmation event.
   Only the flags are written, so status and history stay as stored.

An order found with incomplete flags (a crash between steps) is resumed:
only the missing steps run. A complete order is a pure no-op.
"""

from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel

from pipeline.audit import AuditTrail
from pipeline.checkout import pending_from_metadata
from pipeline.coupons import CouponEngine
from pipeline.errors import FulfillmentError
from pipeline.event_bus_adapter import EventPublisherMixin, IEventBus
from pipeline.gateway import GatewaySession, IPaymentGateway
from pipeline.inventory import InventoryLedger
from pipeline.locks import IFulfillmentLock, InProcessFulfillmentLock, order_lock_key
from pipeline.repositories import (
    CatalogRegistry,
    IOrderRepository,
    IPendingCheckoutRepository,
    ITransactionRepository,
    InMemoryOrderRepository,
    InMemoryPendingCheckoutRepository,
    InMemoryTransactionRepository,
)
from schemas.commerce import (
    AuditEventType,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PendingCheckout,
    PendingCheckoutStatus,
    StatusHistoryEntry,
    Transaction,
    TransactionStatus,
    utcnow,
)
from schemas.event_definitions import (
    OrderCreatedEvent,
    StockShortfallEvent,
    StockShortfallLine,
    StockShortfallPayload,
)


class ConfirmationOutcome(str, Enum):
    NOT_PAID = "not_paid"
    FULFILLED = "fulfilled"
    ALREADY_FULFILLED = "already_fulfilled"


class ConfirmationResult(BaseModel):
    outcome: ConfirmationOutcome
    session_id: str
    order: Optional[Order] = None


class PaymentConfirmationHandler(EventPublisherMixin):

    def __init__(
        self,
        gateway: IPaymentGateway,
        orders: Optional[IOrderRepository] = None,
        transactions: Optional[ITransactionRepository] = None,
        pending: Optional[IPendingCheckoutRepository] = None,
        inventory: Optional[InventoryLedger] = None,
        coupons: Optional[CouponEngine] = None,
        lock: Optional[IFulfillmentLock] = None,
        audit: Optional[AuditTrail] = None,
        catalogs: Optional[CatalogRegistry] = None,
        event_bus: Optional[IEventBus] = None,
    ):
        self.gateway = gateway
        self.orders = orders or InMemoryOrderRepository()
        self.transactions = transactions or InMemoryTransactionRepository()
        self.pending = pending or InMemoryPendingCheckoutRepository()
        self.inventory = inventory or InventoryLedger()
        self.coupons = coupons or CouponEngine()
        self.lock = lock or InProcessFulfillmentLock()
        self.audit = audit or AuditTrail()
        self.catalogs = catalogs or self.inventory.catalogs
        self.init_event_bus(event_bus)
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str, **context):
        return self._base_logger.bind(component="payment_confirmation", correlation_id=correlation_id, **context)

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    async def confirm_from_client(self, session_id: str) -> ConfirmationResult:
        """Client returned from the hosted page and polls with the session id"""
        session = await self.gateway.retrieve_session(session_id)
        if not session.is_paid:
            self._get_logger(session_id, trigger="client").info(
                "payment_not_completed", payment_status=session.payment_status)
            return ConfirmationResult(outcome=ConfirmationOutcome.NOT_PAID, session_id=session_id)
        return await self.fulfill(session, trigger="client")

    async def fulfill(self, session: GatewaySession, trigger: str = "webhook") -> ConfirmationResult:
        """Materialise exactly one order for a paid session"""
        log = self._get_logger(session.id, trigger=trigger, payment_id=session.payment_reference)

        if not session.is_paid:
            log.info("payment_not_completed", payment_status=session.payment_status)
            return ConfirmationResult(outcome=ConfirmationOutcome.NOT_PAID, session_id=session.id)

        async with self.lock.hold(f"session:{session.id}"):
            existing = await self._find_existing(session)
            if existing is not None:
                order = await self._resume(existing, session.id, log)
                return ConfirmationResult(
                    outcome=ConfirmationOutcome.ALREADY_FULFILLED, session_id=session.id, order=order)

            contents = await self._load_contents(session)
            order = self._build_order(session, contents, log)
            order, created = await self.orders.insert_if_absent(order)
            if not created:
                log.info("order_insert_conflict", order_id=order.id)
                order = await self._resume(order, session.id, log)
                return ConfirmationResult(
                    outcome=ConfirmationOutcome.ALREADY_FULFILLED, session_id=session.id, order=order)

            await self.audit.emit(
                event_type=AuditEventType.PAYMENT_CONFIRMED,
                entity_type="order",
                entity_id=order.id,
                correlation_id=session.id,
                new_state=order.model_dump(mode="json"),
                metadata={"payment_id": order.payment_id, "amount_total": session.amount_total, "trigger": trigger},
                actor=trigger,
            )
            log.info("order_created", order_id=order.id, order_number=order.order_number, total=order.total_amount)

            order = await self._complete(order, session.id, log)
            await self.pending.mark(session.id, PendingCheckoutStatus.FULFILLED, only_if_open=False)

            log.info("order_fulfilled", order_id=order.id)
            return ConfirmationResult(outcome=ConfirmationOutcome.FULFILLED, session_id=session.id, order=order)

    async def resume_order(self, order_id: str) -> Optional[Order]:
        """Re-run missing post-creation steps for a paid order (sweeper entry point)"""
        order = await self.orders.get(order_id)
        if order is None:
            return None
        key = order.checkout_session_id or order.id
        log = self._get_logger(key, trigger="sweeper")
        async with self.lock.hold(order_lock_key(order)):
            order = await self.orders.get(order_id)
            return await self._resume(order, key, log)

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _find_existing(self, session: GatewaySession) -> Optional[Order]:
        order = await self.orders.get_by_payment_id(session.payment_reference)
        if order is None:
            order = await self.orders.get_by_session_id(session.id)
        return order

    async def _resume(self, order: Order, correlation_id: str, log) -> Order:
        if order.fulfillment.complete:
            log.info("order_already_fulfilled", order_id=order.id)
            return order
        log.warning("fulfillment_resumed", order_id=order.id, progress=order.fulfillment.model_dump())
        return await self._complete(order, correlation_id, log)

    async def _load_contents(self, session: GatewaySession) -> PendingCheckout:
        pending = await self.pending.get(session.id)
        if pending is not None:
            return pending
        self._get_logger(session.id).warning("pending_checkout_missing", fallback="metadata")
        return await pending_from_metadata(session, self.catalogs)

    def _build_order(self, session: GatewaySession, contents: PendingCheckout, log) -> Order:
        now = utcnow()
        order = Order(
            order_number=Order.generate_order_number(session.id, now),
            user_id=contents.user_id,
            items=contents.items,
            total_amount=contents.total_amount,
            tax=contents.tax,
            shipping_fee=contents.shipping_fee,
            discount_amount=contents.discount_amount,
            coupon_code=contents.coupon_code,
            shipping_address=contents.shipping_address,
            payment_method=PaymentMethod.CARD,
            payment_status=PaymentStatus.PAID,
            payment_id=session.payment_reference,
            checkout_session_id=session.id,
            status=OrderStatus.PROCESSING,
            is_paid=True,
            paid_at=now,
            status_history=[
                StatusHistoryEntry(status=OrderStatus.PENDING, timestamp=now, note="Order created"),
                StatusHistoryEntry(status=OrderStatus.PROCESSING, timestamp=now, note="Payment confirmed"),
            ],
            created_at=now,
            updated_at=now,
        )
        if abs(order.expected_total() - order.total_amount) > 0.01:
            log.warning("order_total_mismatch", expected=order.expected_total(), recorded=order.total_amount)
        charged = session.amount_total / 100
        if session.amount_total and abs(charged - order.total_amount) > 0.01:
            log.warning("charged_amount_mismatch", charged=charged, total=order.total_amount)
        return order

    async def _mark(self, order: Order, **flags) -> Order:
        """Persist step flags only; status and history stay as stored"""
        stored = await self.orders.update_fulfillment(order.id, **flags)
        if stored is None:
            raise FulfillmentError(f"Order {order.id} disappeared during fulfillment")
        return stored

    async def _complete(self, order: Order, correlation_id: str, log) -> Order:
        """Run each missing post-creation step, persisting its flag right after"""
        if not order.fulfillment.transaction_recorded:
            if order.user_id:
                await self.transactions.append(Transaction(
                    user_id=order.user_id,
                    order_id=order.id,
                    amount=order.total_amount,
                    status=TransactionStatus.COMPLETED,
                    payment_method=order.payment_method,
                    payment_id=order.payment_id,
                    description=f"Payment for Order #{order.order_number}",
                ))
                log.info("transaction_recorded", order_id=order.id, amount=order.total_amount)
            order = await self._mark(order, transaction_recorded=True)

        if not order.fulfillment.stock_applied:
            shortfalls = await self.inventory.apply_order(order.items)
            if shortfalls:
                log.error("stock_shortfall", order_id=order.id,
                          lines=[s.model_dump(mode="json") for s in shortfalls])
                history = list(order.status_history)
                refs = ", ".join(f"{s.product_ref} x{s.requested}" for s in shortfalls)
                history[-1] = history[-1].model_copy(update={
                    "note": f"{history[-1].note or ''} | Stock shortfall: {refs}".strip(" |"),
                })
                order = await self.orders.save(
                    order.model_copy(update={"status_history": history, "updated_at": utcnow()}),
                    expected_version=order.version,
                )
                await self.publish_event(StockShortfallEvent(
                    correlation_id=correlation_id,
                    payload=StockShortfallPayload(
                        order_id=order.id,
                        order_number=order.order_number,
                        shortfalls=[
                            StockShortfallLine(
                                product_ref=s.product_ref,
                                product_type=s.product_type.value,
                                requested=s.requested,
                            )
                            for s in shortfalls
                        ],
                    ),
                ))
            order = await self._mark(order, stock_applied=True)

        if not order.fulfillment.coupon_redeemed:
            if order.coupon_code:
                await self.coupons.redeem(order.coupon_code)
            order = await self._mark(order, coupon_redeemed=True)

        if not order.fulfillment.confirmation_sent:
            await self.audit.emit(
                event_type=AuditEventType.ORDER_CREATED,
                entity_type="order",
                entity_id=order.id,
                correlation_id=correlation_id,
                new_state={"status": order.status.value, "order_number": order.order_number},
            )
            await self.publish_event(OrderCreatedEvent.for_order(order, correlation_id=correlation_id))
            order = await self._mark(order, confirmation_sent=True)

        return order
