"""
Notification Fan-out
====================
Independent subscribers to the pipeline's domain events:

- EmailNotifier: order confirmation, status updates, cancellation, refund
  decisions to the customer; refund requests and reversal/stock problems
  to the shop administrator
- RealtimeNotifier: `order:new`, `order:updated`, `refund:updated` frames to
  the owner's room and the admin room

A subscriber failure is logged and swallowed; it never reaches the pipeline.
"""

from html import escape
from typing import Optional

import structlog

from pipeline.event_bus_adapter import IEventBus
from schemas.event_definitions import (
    BaseEvent,
    EventType,
    OrderCancelledEvent,
    OrderCreatedEvent,
    OrderStatusChangedEvent,
    RefundProcessedEvent,
    RefundRequestedEvent,
    RefundReversalFailedEvent,
    StockShortfallEvent,
)
from services.email import EmailMessage, IEmailSender
from services.realtime import ADMIN_ROOM, WebSocketManager, user_room


# =============================================================================
# TEMPLATES
# =============================================================================

STATUS_LABELS = {
    "pending": "Pending",
    "processing": "Processing",
    "shipped": "Shipped",
    "delivered": "Delivered",
    "cancelled": "Cancelled",
    "return_requested": "Return requested",
    "refunded": "Refunded",
}


def _layout(title: str, body: str) -> str:
    return (
        "<div style=\"font-family:Arial,sans-serif;max-width:600px;margin:0 auto\">"
        f"<h2 style=\"color:#1a1a2e\">{escape(title)}</h2>{body}"
        "<p style=\"color:#888;font-size:12px\">HandyLand</p></div>"
    )


def order_confirmation(event: OrderCreatedEvent) -> EmailMessage:
    p = event.payload
    rows = "".join(
        f"<tr><td>{escape(item.name)}</td><td>{item.quantity}</td><td>€{item.price * item.quantity:.2f}</td></tr>"
        for item in p.items
    )
    body = (
        f"<p>Hi {escape(p.customer_name)},</p>"
        f"<p>Thank you for your order <strong>{p.order_number}</strong>.</p>"
        f"<table width=\"100%\">{rows}</table>"
        f"<p>Shipping: €{p.shipping_fee:.2f}<br>"
        + (f"Discount: -€{p.discount_amount:.2f}<br>" if p.discount_amount else "")
        + f"<strong>Total: €{p.total_amount:.2f}</strong></p>"
    )
    return EmailMessage(
        to=p.email,
        subject=f"Order Confirmation - {p.order_number}",
        html=_layout("Order confirmed", body),
        text=f"Order {p.order_number} confirmed. Total: EUR {p.total_amount:.2f}",
    )


def status_update(event: OrderStatusChangedEvent) -> EmailMessage:
    p = event.payload
    label = STATUS_LABELS.get(p.new_status, p.new_status)
    body = f"<p>Hi {escape(p.customer_name)},</p><p>Your order <strong>{p.order_number}</strong> is now <strong>{label}</strong>.</p>"
    if p.tracking_number:
        body += f"<p>Tracking number: <strong>{escape(p.tracking_number)}</strong></p>"
    if p.note:
        body += f"<p>{escape(p.note)}</p>"
    return EmailMessage(
        to=p.email,
        subject=f"Order {p.order_number} - {label}",
        html=_layout("Order update", body),
    )


def cancellation(event: OrderCancelledEvent) -> EmailMessage:
    p = event.payload
    body = f"<p>Hi {escape(p.customer_name)},</p><p>Your order <strong>{p.order_number}</strong> has been cancelled.</p>"
    return EmailMessage(
        to=p.email,
        subject=f"Order {p.order_number} cancelled",
        html=_layout("Order cancelled", body),
    )


def refund_decision(event: RefundProcessedEvent) -> EmailMessage:
    p = event.payload
    if p.status == "rejected":
        headline = "Your refund request was declined"
    elif p.status == "processed":
        headline = "Your refund has been completed"
    else:
        headline = "Your refund request was approved"
    body = f"<p>Hi {escape(p.customer_name)},</p><p>{headline} for order <strong>{p.order_number}</strong>.</p>"
    if p.refund_amount is not None and p.status != "rejected":
        body += f"<p>Refund amount: <strong>€{p.refund_amount:.2f}</strong></p>"
    if p.admin_comments:
        body += f"<p>{escape(p.admin_comments)}</p>"
    return EmailMessage(
        to=p.email,
        subject=f"Refund update - {p.order_number}",
        html=_layout("Refund update", body),
    )


def admin_alert(subject: str, lines: list[str], to: str) -> EmailMessage:
    body = "".join(f"<p>{escape(line)}</p>" for line in lines)
    return EmailMessage(to=to, subject=subject, html=_layout(subject, body), text="\n".join(lines))


# =============================================================================
# EMAIL
# =============================================================================

class EmailNotifier:

    def __init__(self, sender: IEmailSender, admin_email: Optional[str] = None):
        self.sender = sender
        self.admin_email = admin_email
        self._logger = structlog.get_logger().bind(component="email_notifier")

    async def _deliver(self, event: BaseEvent, message: EmailMessage):
        try:
            await self.sender.send(message)
        except Exception as e:
            self._logger.error("notification_failed",
                               channel="email",
                               event_type=event.event_type.value,
                               correlation_id=event.correlation_id,
                               error=str(e))

    async def _alert_admin(self, event: BaseEvent, subject: str, lines: list[str]):
        if not self.admin_email:
            self._logger.warning("admin_alert_unrouted", event_type=event.event_type.value, subject=subject)
            return
        await self._deliver(event, admin_alert(subject, lines, self.admin_email))

    async def handle(self, event: BaseEvent):
        try:
            if isinstance(event, OrderCreatedEvent):
                await self._deliver(event, order_confirmation(event))
            elif isinstance(event, OrderStatusChangedEvent):
                await self._deliver(event, status_update(event))
            elif isinstance(event, OrderCancelledEvent):
                await self._deliver(event, cancellation(event))
            elif isinstance(event, RefundProcessedEvent):
                await self._deliver(event, refund_decision(event))
            elif isinstance(event, RefundRequestedEvent):
                p = event.payload
                await self._alert_admin(event, f"Refund requested - {p.order_number}",
                                        [f"Customer: {p.customer_name} <{p.email}>", f"Reason: {p.reason}"])
            elif isinstance(event, RefundReversalFailedEvent):
                p = event.payload
                await self._alert_admin(event, f"Refund reversal failed - {p.order_number}",
                                        [f"Payment: {p.payment_id}", f"Error: {p.error}",
                                         "Retry the reversal from the admin panel."])
            elif isinstance(event, StockShortfallEvent):
                p = event.payload
                await self._alert_admin(event, f"Stock shortfall - {p.order_number}",
                                        [f"{line.product_type} {line.product_ref}: {line.requested} requested"
                                         for line in p.shortfalls])
        except Exception as e:
            self._logger.error("notification_failed", channel="email",
                               event_type=event.event_type.value, error=str(e))


# =============================================================================
# REAL-TIME
# =============================================================================

class RealtimeNotifier:

    def __init__(self, manager: WebSocketManager):
        self.manager = manager
        self._logger = structlog.get_logger().bind(component="realtime_notifier")

    async def _emit(self, user_id: Optional[str], event: str, data: dict):
        if user_id:
            await self.manager.emit(user_room(user_id), event, data)
        await self.manager.emit(ADMIN_ROOM, event, data)

    async def handle(self, event: BaseEvent):
        try:
            p = event.payload
            if isinstance(event, OrderCreatedEvent):
                await self._emit(p.user_id, "order:new", {
                    "order_id": p.order_id, "order_number": p.order_number,
                    "status": p.status, "total_amount": p.total_amount,
                })
            elif isinstance(event, OrderStatusChangedEvent):
                await self._emit(p.user_id, "order:updated", {
                    "order_id": p.order_id, "order_number": p.order_number,
                    "status": p.new_status, "previous_status": p.previous_status,
                    "tracking_number": p.tracking_number,
                })
            elif isinstance(event, OrderCancelledEvent):
                await self._emit(p.user_id, "order:updated", {
                    "order_id": p.order_id, "order_number": p.order_number,
                    "status": "cancelled", "previous_status": p.previous_status,
                })
            elif isinstance(event, (RefundRequestedEvent, RefundProcessedEvent)):
                await self._emit(p.user_id, "refund:updated", {
                    "refund_id": p.refund_id, "order_id": p.order_id,
                    "status": getattr(p, "status", "pending"),
                })
        except Exception as e:
            self._logger.error("notification_failed", channel="realtime",
                               event_type=event.event_type.value, error=str(e))


# =============================================================================
# WIRING
# =============================================================================

EMAIL_EVENTS = [
    EventType.ORDER_CREATED,
    EventType.ORDER_STATUS_CHANGED,
    EventType.ORDER_CANCELLED,
    EventType.ORDER_STOCK_SHORTFALL,
    EventType.REFUND_REQUESTED,
    EventType.REFUND_PROCESSED,
    EventType.REFUND_REVERSAL_FAILED,
]

REALTIME_EVENTS = [
    EventType.ORDER_CREATED,
    EventType.ORDER_STATUS_CHANGED,
    EventType.ORDER_CANCELLED,
    EventType.REFUND_REQUESTED,
    EventType.REFUND_PROCESSED,
]


async def register_notifiers(
    bus: IEventBus,
    email: Optional[EmailNotifier] = None,
    realtime: Optional[RealtimeNotifier] = None,
) -> list[str]:
    """Subscribe the notifiers to the bus; returns subscription ids"""
    subscriptions = []
    if email is not None:
        subscriptions.append(await bus.subscribe(EMAIL_EVENTS, email.handle, queue_name="notifications.email"))
    if realtime is not None:
        subscriptions.append(await bus.subscribe(REALTIME_EVENTS, realtime.handle, queue_name="notifications.realtime"))
    return subscriptions
