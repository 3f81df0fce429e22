# schemas/event_definitions.py
# ============================================================================
# HANDYLAND MARKETPLACE — DOMAIN EVENT SCHEMAS
# ============================================================================
# Events published by the order & payment pipeline after a state change has
# been persisted. Subscribers (email, realtime) consume them independently.
# ============================================================================

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field

from schemas.commerce import Order, RefundRequest, utcnow


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class EventType(str, Enum):
    """All domain events in the pipeline"""

    # Orders
    ORDER_CREATED = "order.created"
    ORDER_STATUS_CHANGED = "order.status_changed"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_STOCK_SHORTFALL = "order.stock_shortfall"

    # Refunds
    REFUND_REQUESTED = "refund.requested"
    REFUND_PROCESSED = "refund.processed"
    REFUND_REVERSAL_FAILED = "refund.reversal_failed"


class EventPriority(int, Enum):
    """Message priority levels"""
    LOW = 1
    NORMAL = 5
    HIGH = 8
    CRITICAL = 10


# ============================================================================
# SECTION 2: BASE EVENT
# ============================================================================

class BaseEvent(BaseModel):
    """Base event schema - all events inherit from this"""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    version: str = "1.0"
    timestamp: datetime = Field(default_factory=utcnow)
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source: str = "order_pipeline"
    priority: EventPriority = EventPriority.NORMAL

    payload: dict = Field(default_factory=dict)

    @computed_field
    @property
    def routing_key(self) -> str:
        return self.event_type.value

    def to_message_body(self) -> bytes:
        """Serialize to JSON bytes for RabbitMQ"""
        return self.model_dump_json(exclude={"routing_key"}).encode()

    @classmethod
    def from_message_body(cls, body: bytes) -> "BaseEvent":
        """Deserialize from JSON bytes into the concrete event class"""
        data = json.loads(body)
        data.pop("routing_key", None)
        event_cls = EVENT_MODELS.get(EventType(data["event_type"]), BaseEvent)
        return event_cls.model_validate(data)


# ============================================================================
# SECTION 3: ORDER EVENTS
# ============================================================================

class OrderLinePayload(BaseModel):
    product_ref: str
    product_type: str
    name: str
    quantity: int
    price: float


class OrderCreatedPayload(BaseModel):
    """Payload for order.created"""
    order_id: str
    order_number: str
    user_id: Optional[str] = None
    email: str
    customer_name: str
    items: list[OrderLinePayload]
    total_amount: float
    shipping_fee: float
    discount_amount: float = 0.0
    status: str
    source: str = "checkout"  # "checkout" or "direct"


class OrderCreatedEvent(BaseEvent):
    event_type: EventType = EventType.ORDER_CREATED
    priority: EventPriority = EventPriority.HIGH
    payload: OrderCreatedPayload

    @classmethod
    def for_order(cls, order: Order, source: str = "checkout", correlation_id: Optional[str] = None) -> "OrderCreatedEvent":
        return cls(
            correlation_id=correlation_id or order.id,
            payload=OrderCreatedPayload(
                order_id=order.id,
                order_number=order.order_number,
                user_id=order.user_id,
                email=order.customer_email,
                customer_name=order.shipping_address.full_name,
                items=[
                    OrderLinePayload(
                        product_ref=item.product_ref,
                        product_type=item.product_type.value,
                        name=item.name,
                        quantity=item.quantity,
                        price=item.price,
                    )
                    for item in order.items
                ],
                total_amount=order.total_amount,
                shipping_fee=order.shipping_fee,
                discount_amount=order.discount_amount,
                status=order.status.value,
                source=source,
            ),
        )


class OrderStatusChangedPayload(BaseModel):
    """Payload for order.status_changed"""
    order_id: str
    order_number: str
    user_id: Optional[str] = None
    email: str
    customer_name: str
    previous_status: str
    new_status: str
    tracking_number: Optional[str] = None
    note: Optional[str] = None
    actor: str = "admin"


class OrderStatusChangedEvent(BaseEvent):
    event_type: EventType = EventType.ORDER_STATUS_CHANGED
    payload: OrderStatusChangedPayload

    @classmethod
    def for_order(cls, order: Order, previous_status: str, actor: str = "admin") -> "OrderStatusChangedEvent":
        return cls(
            correlation_id=order.id,
            payload=OrderStatusChangedPayload(
                order_id=order.id,
                order_number=order.order_number,
                user_id=order.user_id,
                email=order.customer_email,
                customer_name=order.shipping_address.full_name,
                previous_status=previous_status,
                new_status=order.status.value,
                tracking_number=order.tracking_number,
                note=order.status_history[-1].note if order.status_history else None,
                actor=actor,
            ),
        )


class OrderCancelledPayload(BaseModel):
    """Payload for order.cancelled"""
    order_id: str
    order_number: str
    user_id: Optional[str] = None
    email: str
    customer_name: str
    previous_status: str
    cancelled_by: str
    stock_restored: bool


class OrderCancelledEvent(BaseEvent):
    event_type: EventType = EventType.ORDER_CANCELLED
    payload: OrderCancelledPayload

    @classmethod
    def for_order(cls, order: Order, previous_status: str, cancelled_by: str, stock_restored: bool) -> "OrderCancelledEvent":
        return cls(
            correlation_id=order.id,
            payload=OrderCancelledPayload(
                order_id=order.id,
                order_number=order.order_number,
                user_id=order.user_id,
                email=order.customer_email,
                customer_name=order.shipping_address.full_name,
                previous_status=previous_status,
                cancelled_by=cancelled_by,
                stock_restored=stock_restored,
            ),
        )


class StockShortfallLine(BaseModel):
    product_ref: str
    product_type: str
    requested: int


class StockShortfallPayload(BaseModel):
    """Payload for order.stock_shortfall - paid order could not be fully decremented"""
    order_id: str
    order_number: str
    shortfalls: list[StockShortfallLine]


class StockShortfallEvent(BaseEvent):
    event_type: EventType = EventType.ORDER_STOCK_SHORTFALL
    priority: EventPriority = EventPriority.CRITICAL
    payload: StockShortfallPayload


# ============================================================================
# SECTION 4: REFUND EVENTS
# ============================================================================

class RefundRequestedPayload(BaseModel):
    """Payload for refund.requested"""
    refund_id: str
    order_id: str
    order_number: str
    user_id: str
    email: str
    customer_name: str
    reason: str


class RefundRequestedEvent(BaseEvent):
    event_type: EventType = EventType.REFUND_REQUESTED
    payload: RefundRequestedPayload

    @classmethod
    def for_refund(cls, refund: RefundRequest, order: Order) -> "RefundRequestedEvent":
        return cls(
            correlation_id=order.id,
            payload=RefundRequestedPayload(
                refund_id=refund.id,
                order_id=order.id,
                order_number=order.order_number,
                user_id=refund.user_id,
                email=order.customer_email,
                customer_name=order.shipping_address.full_name,
                reason=refund.reason,
            ),
        )


class RefundProcessedPayload(BaseModel):
    """Payload for refund.processed - admin decision or gateway confirmation"""
    refund_id: str
    order_id: str
    order_number: str
    user_id: str
    email: str
    customer_name: str
    status: str
    refund_amount: Optional[float] = None
    admin_comments: Optional[str] = None


class RefundProcessedEvent(BaseEvent):
    event_type: EventType = EventType.REFUND_PROCESSED
    payload: RefundProcessedPayload

    @classmethod
    def for_refund(cls, refund: RefundRequest, order: Order) -> "RefundProcessedEvent":
        return cls(
            correlation_id=order.id,
            payload=RefundProcessedPayload(
                refund_id=refund.id,
                order_id=order.id,
                order_number=order.order_number,
                user_id=refund.user_id,
                email=order.customer_email,
                customer_name=order.shipping_address.full_name,
                status=refund.status.value,
                refund_amount=refund.refund_amount,
                admin_comments=refund.admin_comments,
            ),
        )


class RefundReversalFailedPayload(BaseModel):
    """Payload for refund.reversal_failed - needs a manual retry by an admin"""
    refund_id: Optional[str] = None
    order_id: str
    order_number: str
    payment_id: Optional[str] = None
    amount: Optional[float] = None
    error: str


class RefundReversalFailedEvent(BaseEvent):
    event_type: EventType = EventType.REFUND_REVERSAL_FAILED
    priority: EventPriority = EventPriority.CRITICAL
    payload: RefundReversalFailedPayload


EVENT_MODELS: dict[EventType, type[BaseEvent]] = {
    EventType.ORDER_CREATED: OrderCreatedEvent,
    EventType.ORDER_STATUS_CHANGED: OrderStatusChangedEvent,
    EventType.ORDER_CANCELLED: OrderCancelledEvent,
    EventType.ORDER_STOCK_SHORTFALL: StockShortfallEvent,
    EventType.REFUND_REQUESTED: RefundRequestedEvent,
    EventType.REFUND_PROCESSED: RefundProcessedEvent,
    EventType.REFUND_REVERSAL_FAILED: RefundReversalFailedEvent,
}


# ============================================================================
# SECTION 5: EXPORTS
# ============================================================================

__all__ = [
    "EventType",
    "EventPriority",
    "BaseEvent",
    "OrderLinePayload",
    "OrderCreatedPayload",
    "OrderCreatedEvent",
    "OrderStatusChangedPayload",
    "OrderStatusChangedEvent",
    "OrderCancelledPayload",
    "OrderCancelledEvent",
    "StockShortfallLine",
    "StockShortfallPayload",
    "StockShortfallEvent",
    "RefundRequestedPayload",
    "RefundRequestedEvent",
    "RefundProcessedPayload",
    "RefundProcessedEvent",
    "RefundReversalFailedPayload",
    "RefundReversalFailedEvent",
    "EVENT_MODELS",
]
