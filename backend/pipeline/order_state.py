"""
Order lifecycle transitions.

Administrators may move an order between any statuses except out of the
terminal ones: a cancelled order can only become refunded, a refunded order
is final, so admin cancellation covers every status except refunded.
Customers may cancel only while the order is pending or processing.
Stock is put back on cancellation at most once, and only if it was taken.
"""

import re
from typing import Optional

import structlog
from pydantic import BaseModel

from pipeline.audit import AuditTrail
from pipeline.errors import InvalidTransition, NotFound, ValidationError
from pipeline.event_bus_adapter import EventPublisherMixin, IEventBus
from pipeline.inventory import InventoryLedger
from pipeline.locks import IFulfillmentLock, InProcessFulfillmentLock, order_lock_key
from pipeline.repositories import IOrderRepository, InMemoryOrderRepository
from pipeline.settings import CommerceSettings, settings as default_settings
from schemas.commerce import AuditEventType, Order, OrderStatus, utcnow
from schemas.event_definitions import OrderCancelledEvent, OrderStatusChangedEvent


CUSTOMER_CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


def allowed_targets(current: OrderStatus) -> frozenset[OrderStatus]:
    # Admin cancellation is open from every status but refunded; money
    # already returned cannot be un-refunded by a cancel.
    if current == OrderStatus.REFUNDED:
        return frozenset()
    if current == OrderStatus.CANCELLED:
        return frozenset({OrderStatus.REFUNDED})
    return frozenset(OrderStatus)


class StatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = None
    tracking_number: Optional[str] = None


class OrderStateMachine(EventPublisherMixin):

    def __init__(
        self,
        orders: Optional[IOrderRepository] = None,
        inventory: Optional[InventoryLedger] = None,
        audit: Optional[AuditTrail] = None,
        event_bus: Optional[IEventBus] = None,
        config: Optional[CommerceSettings] = None,
        lock: Optional[IFulfillmentLock] = None,
    ):
        self.orders = orders or InMemoryOrderRepository()
        self.inventory = inventory or InventoryLedger()
        self.audit = audit or AuditTrail()
        self.lock = lock or InProcessFulfillmentLock()
        self.config = config or default_settings
        self.init_event_bus(event_bus)
        self._tracking_pattern = re.compile(self.config.TRACKING_NUMBER_PATTERN)
        self._logger = structlog.get_logger().bind(component="order_state")

    async def apply(
        self,
        order: Order,
        update: StatusUpdate,
        actor: str = "admin",
        allowed_from: Optional[frozenset[OrderStatus]] = None,
    ) -> Order:
        """
        Persist a status update and notify subscribers if the status moved.

        The order is re-read under its lock and written with a compare-and-set
        on its version; stock goes back only after that write has landed.
        `allowed_from` narrows the statuses this caller may move the order out of.
        """
        tracking = None
        if update.tracking_number is not None and update.tracking_number.strip():
            tracking = update.tracking_number.strip().upper()
            if not self._tracking_pattern.match(tracking):
                raise ValidationError("Invalid tracking number format")

        async with self.lock.hold(order_lock_key(order)):
            current = await self.orders.get(order.id)
            if current is None:
                raise NotFound("Order not found")
            previous = current.status
            if allowed_from is not None and previous not in allowed_from:
                raise InvalidTransition(
                    f"Order cannot be cancelled in status {previous.value}",
                    details={"status": previous.value},
                )
            if update.status != previous and update.status not in allowed_targets(previous):
                raise InvalidTransition(
                    f"Cannot change order status from {previous.value} to {update.status.value}",
                    details={"from": previous.value, "to": update.status.value},
                )

            if update.status != previous:
                updated = current.transition_to(update.status, update.note)
            else:
                updated = current.model_copy(update={"updated_at": utcnow()})
                if update.note and updated.status_history:
                    history = list(updated.status_history)
                    history[-1] = history[-1].model_copy(update={"note": update.note})
                    updated = updated.model_copy(update={"status_history": history})

            changes: dict = {}
            if tracking:
                changes["tracking_number"] = tracking
            if update.status == OrderStatus.DELIVERED and not updated.is_delivered:
                changes["is_delivered"] = True
                changes["delivered_at"] = utcnow()

            restore = (
                update.status == OrderStatus.CANCELLED
                and previous != OrderStatus.CANCELLED
                and updated.fulfillment.stock_applied
                and not updated.stock_restored
            )
            if restore:
                changes["stock_restored"] = True
            if changes:
                updated = updated.model_copy(update=changes)

            updated = await self.orders.save(updated, expected_version=current.version)
            if restore:
                await self.inventory.restore(updated.items)

        await self.audit.emit(
            event_type=AuditEventType.ORDER_UPDATED,
            entity_type="order",
            entity_id=order.id,
            correlation_id=order.id,
            previous_state={"status": previous.value, "tracking_number": current.tracking_number},
            new_state={"status": updated.status.value, "tracking_number": updated.tracking_number},
            metadata={"note": update.note, "stock_restored": restore},
            actor=actor,
        )
        self._logger.info("order_status_updated", order_id=order.id, previous=previous.value,
                          new=updated.status.value, actor=actor)

        if updated.status != previous:
            if updated.status == OrderStatus.CANCELLED:
                await self.publish_event(OrderCancelledEvent.for_order(
                    updated, previous.value, cancelled_by=actor, stock_restored=restore))
            else:
                await self.publish_event(OrderStatusChangedEvent.for_order(updated, previous.value, actor=actor))
        return updated

    async def cancel_by_customer(self, order: Order, note: Optional[str] = None) -> Order:
        return await self.apply(
            order,
            StatusUpdate(status=OrderStatus.CANCELLED, note=note or "Cancelled by customer"),
            actor="user",
            allowed_from=CUSTOMER_CANCELLABLE,
        )
