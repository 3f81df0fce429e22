"""
Refund Workflow
===============
Customer refund requests, the admin decision, the gateway reversal and the
gateway's own `charge.refunded` confirmation.

    request ──▶ pending ──approve──▶ processing ──charge.refunded──▶ processed
                   │                     │
                   │          (gateway failure: stays approved,
                   │           refund.reversal_failed is published)
                   └──reject──▶ rejected (order status restored)

At most one request per order may be pending, approved or processing. Every
status move is conditional on the status it was read in, so two admins
deciding the same request race to one winner and the charge is reversed once.
"""

from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from pipeline.audit import AuditTrail
from pipeline.errors import Forbidden, GatewayError, InvalidTransition, NotFound, ValidationError
from pipeline.event_bus_adapter import EventPublisherMixin, IEventBus
from pipeline.gateway import GatewayRefund, IPaymentGateway
from pipeline.locks import IFulfillmentLock, InProcessFulfillmentLock, order_lock_key
from pipeline.repositories import (
    IOrderRepository,
    IRefundRepository,
    ITransactionRepository,
    InMemoryOrderRepository,
    InMemoryRefundRepository,
    InMemoryTransactionRepository,
)
from schemas.commerce import (
    AuditEventType,
    Order,
    OrderStatus,
    PaymentStatus,
    RefundItem,
    RefundRequest,
    RefundStatus,
    Transaction,
    TransactionStatus,
    utcnow,
)
from schemas.event_definitions import (
    RefundProcessedEvent,
    RefundRequestedEvent,
    RefundReversalFailedEvent,
    RefundReversalFailedPayload,
)


REFUNDABLE_ORDER_STATUSES = frozenset({OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED})


class RefundDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class RefundRequestBody(BaseModel):
    reason: str = Field(..., min_length=1)
    items: list[RefundItem] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)


class RefundDecisionBody(BaseModel):
    status: RefundDecision
    admin_comments: Optional[str] = None


class DirectReversalBody(BaseModel):
    payment_id: str = Field(..., min_length=1)
    amount: Optional[float] = Field(None, gt=0)


class RefundWorkflow(EventPublisherMixin):

    def __init__(
        self,
        gateway: IPaymentGateway,
        orders: Optional[IOrderRepository] = None,
        refunds: Optional[IRefundRepository] = None,
        transactions: Optional[ITransactionRepository] = None,
        audit: Optional[AuditTrail] = None,
        event_bus: Optional[IEventBus] = None,
        lock: Optional[IFulfillmentLock] = None,
    ):
        self.gateway = gateway
        self.lock = lock or InProcessFulfillmentLock()
        self.orders = orders or InMemoryOrderRepository()
        self.refunds = refunds or InMemoryRefundRepository()
        self.transactions = transactions or InMemoryTransactionRepository()
        self.audit = audit or AuditTrail()
        self.init_event_bus(event_bus)
        self._logger = structlog.get_logger().bind(component="refund_workflow")

    # =========================================================================
    # CUSTOMER
    # =========================================================================

    async def request(self, order_id: str, user_id: str, body: RefundRequestBody) -> RefundRequest:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFound("Order not found")
        if order.user_id != user_id:
            raise Forbidden("Not authorized to request a refund for this order")

        async with self.lock.hold(order_lock_key(order)):
            order = await self.orders.get(order_id)
            if order is None:
                raise NotFound("Order not found")
            if order.status not in REFUNDABLE_ORDER_STATUSES:
                raise InvalidTransition(
                    f"Refund cannot be requested for an order in status {order.status.value}",
                    details={"status": order.status.value},
                )

            refund = await self.refunds.create_if_no_active(RefundRequest(
                user_id=user_id,
                order_id=order.id,
                reason=body.reason,
                items=body.items,
                images=body.images,
                previous_order_status=order.status,
            ))
            order = await self.orders.save(
                order.transition_to(OrderStatus.RETURN_REQUESTED, "Refund requested"),
                expected_version=order.version,
            )

        await self.audit.emit(
            event_type=AuditEventType.REFUND_REQUESTED,
            entity_type="refund",
            entity_id=refund.id,
            correlation_id=order.id,
            new_state={"status": refund.status.value, "order_status": order.status.value},
            metadata={"reason": refund.reason},
            actor="user",
        )
        self._logger.info("refund_requested", refund_id=refund.id, order_id=order.id, user_id=user_id)
        await self.publish_event(RefundRequestedEvent.for_refund(refund, order))
        return refund

    async def list_for_order(self, order_id: str) -> list[RefundRequest]:
        return await self.refunds.list_by_order(order_id)

    # =========================================================================
    # ADMIN
    # =========================================================================

    async def process(self, refund_id: str, body: RefundDecisionBody) -> RefundRequest:
        refund = await self.refunds.get(refund_id)
        if refund is None:
            raise NotFound("Refund request not found")
        if refund.status != RefundStatus.PENDING:
            raise InvalidTransition(
                f"Refund request already {refund.status.value}",
                details={"status": refund.status.value},
            )
        order = await self.orders.get(refund.order_id)
        if order is None:
            raise NotFound("Order not found")

        log = self._logger.bind(refund_id=refund.id, order_id=order.id)
        now = utcnow()

        if body.status == RefundDecision.REJECTED:
            decided = await self.refunds.transition(
                refund.id,
                RefundStatus.PENDING,
                status=RefundStatus.REJECTED,
                admin_comments=body.admin_comments,
                updated_at=now,
            )
            if decided is None:
                await self._raise_already_decided(refund.id)
            refund = decided
            order = await self._restore_order_status(order, refund)
            log.info("refund_rejected")
        else:
            decided = await self.refunds.transition(
                refund.id,
                RefundStatus.PENDING,
                status=RefundStatus.APPROVED,
                admin_comments=body.admin_comments,
                refund_amount=order.total_amount,
                updated_at=now,
            )
            if decided is None:
                await self._raise_already_decided(refund.id)
            log.info("refund_approved", amount=order.total_amount)
            refund = await self._reverse(decided, order, log)

        await self.audit.emit(
            event_type=AuditEventType.REFUND_PROCESSED,
            entity_type="refund",
            entity_id=refund.id,
            correlation_id=order.id,
            previous_state={"status": RefundStatus.PENDING.value},
            new_state={"status": refund.status.value, "refund_amount": refund.refund_amount},
            metadata={"admin_comments": body.admin_comments, "gateway_error": refund.gateway_error},
            actor="admin",
        )
        await self.publish_event(RefundProcessedEvent.for_refund(refund, order))
        return refund

    async def _raise_already_decided(self, refund_id: str):
        current = await self.refunds.get(refund_id)
        status = current.status.value if current else "removed"
        raise InvalidTransition(f"Refund request already {status}", details={"status": status})

    async def _restore_order_status(self, order: Order, refund: RefundRequest) -> Order:
        async with self.lock.hold(order_lock_key(order)):
            current = await self.orders.get(order.id)
            if current is None or current.status != OrderStatus.RETURN_REQUESTED:
                return current or order
            restore_to = refund.previous_order_status or OrderStatus.DELIVERED
            return await self.orders.save(
                current.transition_to(restore_to, "Refund request rejected"),
                expected_version=current.version,
            )

    async def _advance_approved(self, refund: RefundRequest, **changes) -> RefundRequest:
        """Apply `changes` while the request is still approved, else return it as stored"""
        stored = await self.refunds.transition(refund.id, RefundStatus.APPROVED, updated_at=utcnow(), **changes)
        if stored is None:
            stored = await self.refunds.get(refund.id) or refund
        return stored

    async def _reverse(self, refund: RefundRequest, order: Order, log) -> RefundRequest:
        """Ask the gateway for the money back; a failure leaves the refund approved"""
        if not order.payment_id:
            error = "Order has no gateway payment reference"
            log.warning("refund_reversal_skipped", reason=error)
            refund = await self._advance_approved(refund, gateway_error=error)
            await self._publish_reversal_failed(refund, order, error)
            return refund

        try:
            reversal = await self.gateway.refund(order.payment_id)
        except GatewayError as e:
            log.error("refund_reversal_failed", payment_id=order.payment_id, error=e.message)
            refund = await self._advance_approved(refund, gateway_error=e.message)
            await self._publish_reversal_failed(refund, order, e.message)
            return refund

        log.info("refund_reversal_submitted", gateway_refund_id=reversal.id, status=reversal.status)
        return await self._advance_approved(
            refund,
            status=RefundStatus.PROCESSING,
            gateway_refund_id=reversal.id,
            gateway_error=None,
        )

    async def _publish_reversal_failed(self, refund: Optional[RefundRequest], order: Order, error: str):
        await self.publish_event(RefundReversalFailedEvent(
            correlation_id=order.id,
            payload=RefundReversalFailedPayload(
                refund_id=refund.id if refund else None,
                order_id=order.id,
                order_number=order.order_number,
                payment_id=order.payment_id,
                amount=refund.refund_amount if refund else order.total_amount,
                error=error,
            ),
        ))

    async def direct_reversal(self, body: DirectReversalBody) -> GatewayRefund:
        """Admin-initiated gateway reversal by payment reference; partial amounts allowed"""
        order = await self.orders.get_by_payment_id(body.payment_id)
        if order is None:
            raise NotFound("No order found for this payment")
        if body.amount is not None and body.amount > order.total_amount + 0.005:
            raise ValidationError(
                "Refund amount exceeds order total",
                details={"amount": body.amount, "order_total": order.total_amount},
            )

        reversal = await self.gateway.refund(body.payment_id, body.amount)
        self._logger.info("direct_reversal_submitted", order_id=order.id, payment_id=body.payment_id,
                          amount=body.amount, gateway_refund_id=reversal.id)

        active = await self.refunds.get_active_for_order(order.id)
        if active is not None and active.status == RefundStatus.APPROVED:
            await self._advance_approved(
                active,
                status=RefundStatus.PROCESSING,
                gateway_refund_id=reversal.id,
                gateway_error=None,
            )
        await self.audit.emit(
            event_type=AuditEventType.PAYMENT_REFUNDED,
            entity_type="payment",
            entity_id=body.payment_id,
            correlation_id=order.id,
            new_state={"gateway_refund_id": reversal.id, "status": reversal.status},
            metadata={"amount": body.amount, "trigger": "admin"},
            actor="admin",
        )
        return reversal

    # =========================================================================
    # GATEWAY CONFIRMATION
    # =========================================================================

    async def on_charge_refunded(self, charge: dict, correlation_id: str) -> Optional[Order]:
        """Apply a `charge.refunded` webhook. Re-delivery of a full refund is a no-op."""
        payment_id = charge.get("payment_intent") or charge.get("id")
        order = await self.orders.get_by_payment_id(payment_id) if payment_id else None
        if order is None and charge.get("id") and charge.get("id") != payment_id:
            order = await self.orders.get_by_payment_id(charge["id"])
        log = self._logger.bind(correlation_id=correlation_id, payment_id=payment_id)
        if order is None:
            log.warning("refund_order_not_found")
            return None

        amount = charge.get("amount") or 0
        refunded = charge.get("amount_refunded") or 0
        full = bool(charge.get("refunded")) or (amount > 0 and refunded >= amount)

        if not full:
            log.info("partial_refund_recorded", order_id=order.id, amount_refunded=refunded)
            await self.audit.emit(
                event_type=AuditEventType.PAYMENT_REFUNDED,
                entity_type="order",
                entity_id=order.id,
                correlation_id=correlation_id,
                metadata={"amount_refunded": refunded, "partial": True},
                actor="webhook",
            )
            return order

        async with self.lock.hold(order_lock_key(order)):
            current = await self.orders.get(order.id) or order
            if current.payment_status == PaymentStatus.REFUNDED:
                log.info("refund_already_applied", order_id=order.id)
                return current

            previous = current.status
            order = current.transition_to(OrderStatus.REFUNDED, "Payment refunded")
            order = await self.orders.save(
                order.model_copy(update={"payment_status": PaymentStatus.REFUNDED}),
                expected_version=current.version,
            )

        if order.user_id:
            await self.transactions.append(Transaction(
                user_id=order.user_id,
                order_id=order.id,
                amount=-round(refunded / 100, 2) if refunded else -order.total_amount,
                status=TransactionStatus.REFUNDED,
                payment_method=order.payment_method,
                payment_id=order.payment_id,
                description=f"Refund for Order #{order.order_number}",
            ))

        active = await self.refunds.get_active_for_order(order.id)
        if active is not None:
            active = await self.refunds.transition(
                active.id,
                active.status,
                status=RefundStatus.PROCESSED,
                refund_amount=active.refund_amount or order.total_amount,
                updated_at=utcnow(),
            )
            if active is not None:
                await self.publish_event(RefundProcessedEvent.for_refund(active, order))

        await self.audit.emit(
            event_type=AuditEventType.PAYMENT_REFUNDED,
            entity_type="order",
            entity_id=order.id,
            correlation_id=correlation_id,
            previous_state={"status": previous.value, "payment_status": PaymentStatus.PAID.value},
            new_state={"status": order.status.value, "payment_status": order.payment_status.value},
            metadata={"amount_refunded": refunded, "refund_request_id": active.id if active else None},
            actor="webhook",
        )
        log.info("order_refunded", order_id=order.id, amount_refunded=refunded)
        return order
