"""Tests for email and real-time notification fan-out."""

from pipeline.event_bus_adapter import EventPublisherMixin, InMemoryEventBus
from schemas.event_definitions import (
    EventType,
    OrderCreatedEvent,
    OrderStatusChangedEvent,
    RefundProcessedEvent,
    RefundRequestedEvent,
)
from services.email import EmailDeliveryError, IEmailSender, LoggingEmailSender
from services.notifications import EmailNotifier, RealtimeNotifier, register_notifiers
from services.realtime import ADMIN_ROOM, WebSocketManager, user_room


class FakeSocket:
    def __init__(self, fail=False):
        self.frames = []
        self.accepted = False
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(data)


class FailingSender(IEmailSender):
    async def send(self, message):
        raise EmailDeliveryError("smtp down")


async def first_event(container, paid_order, event_type):
    await paid_order()
    return container.event_bus.get_published_events(event_type)[0]


class TestEmailNotifier:
    async def test_order_confirmation(self, container, paid_order):
        event = await first_event(container, paid_order, EventType.ORDER_CREATED)
        sender = LoggingEmailSender()
        await EmailNotifier(sender).handle(event)

        message = sender.outbox[0]
        assert message.to == "jane@example.com"
        assert message.subject == f"Order Confirmation - {event.payload.order_number}"
        assert "iPhone 13" in message.html
        assert "€500.00" in message.html

    async def test_status_update_includes_tracking(self):
        event = OrderStatusChangedEvent.model_validate({
            "payload": {
                "order_id": "o-1", "order_number": "HL-20260101-ABCDEF12", "email": "jane@example.com",
                "customer_name": "Jane <b>Doe</b>", "previous_status": "processing", "new_status": "shipped",
                "tracking_number": "DHL12345678",
            },
        })
        sender = LoggingEmailSender()
        await EmailNotifier(sender).handle(event)
        message = sender.outbox[0]
        assert message.subject == "Order HL-20260101-ABCDEF12 - Shipped"
        assert "DHL12345678" in message.html
        assert "&lt;b&gt;" in message.html

    async def test_refund_rejection(self):
        event = RefundProcessedEvent.model_validate({
            "payload": {
                "refund_id": "r-1", "order_id": "o-1", "order_number": "HL-1", "user_id": "user-1",
                "email": "jane@example.com", "customer_name": "Jane", "status": "rejected",
                "refund_amount": 10.0, "admin_comments": "Outside the return window",
            },
        })
        sender = LoggingEmailSender()
        await EmailNotifier(sender).handle(event)
        assert "declined" in sender.outbox[0].html
        assert "Refund amount" not in sender.outbox[0].html

    async def test_admin_alerts_need_an_address(self):
        event = RefundRequestedEvent.model_validate({
            "payload": {
                "refund_id": "r-1", "order_id": "o-1", "order_number": "HL-1", "user_id": "user-1",
                "email": "jane@example.com", "customer_name": "Jane", "reason": "Broken",
            },
        })
        sender = LoggingEmailSender()
        await EmailNotifier(sender, admin_email=None).handle(event)
        assert sender.outbox == []

        await EmailNotifier(sender, admin_email="ops@example.com").handle(event)
        assert sender.outbox[0].to == "ops@example.com"
        assert "Reason: Broken" in sender.outbox[0].html

    async def test_delivery_failure_is_swallowed(self, container, paid_order):
        event = await first_event(container, paid_order, EventType.ORDER_CREATED)
        await EmailNotifier(FailingSender()).handle(event)


class TestRealtime:
    async def test_manager_rooms(self):
        manager = WebSocketManager()
        user_socket, admin_socket = FakeSocket(), FakeSocket()
        await manager.connect(user_socket, [user_room("user-1")])
        await manager.connect(admin_socket, [user_room("admin-1"), ADMIN_ROOM])

        assert user_socket.accepted
        assert manager.connection_count(ADMIN_ROOM) == 1
        assert await manager.emit(user_room("user-1"), "order:updated", {"order_id": "o-1"}) == 1
        assert user_socket.frames == [{"event": "order:updated", "data": {"order_id": "o-1"}}]
        assert admin_socket.frames == []

        manager.disconnect(admin_socket)
        assert manager.connection_count(ADMIN_ROOM) == 0

    async def test_broken_socket_is_dropped(self):
        manager = WebSocketManager()
        await manager.connect(FakeSocket(fail=True), [ADMIN_ROOM])
        assert await manager.emit(ADMIN_ROOM, "order:new", {}) == 0
        assert manager.connection_count(ADMIN_ROOM) == 0

    async def test_new_order_reaches_owner_and_admins(self, container, paid_order):
        user_socket, admin_socket = FakeSocket(), FakeSocket()
        await container.ws_manager.connect(user_socket, [user_room("user-1")])
        await container.ws_manager.connect(admin_socket, [ADMIN_ROOM])

        order = await paid_order()
        assert user_socket.frames[0]["event"] == "order:new"
        assert user_socket.frames[0]["data"]["order_id"] == order.id
        assert admin_socket.frames[0]["data"]["order_number"] == order.order_number

    async def test_guest_order_only_reaches_admins(self, container, paid_order):
        admin_socket = FakeSocket()
        await container.ws_manager.connect(admin_socket, [ADMIN_ROOM])
        await paid_order(user_id=None)
        assert [f["event"] for f in admin_socket.frames] == ["order:new"]


class TestWiring:
    async def test_register_notifiers_subscribes_both(self):
        bus = InMemoryEventBus()
        await bus.connect()
        sender = LoggingEmailSender()
        manager = WebSocketManager()
        admin_socket = FakeSocket()
        await manager.connect(admin_socket, [ADMIN_ROOM])

        subscriptions = await register_notifiers(bus, EmailNotifier(sender), RealtimeNotifier(manager))
        assert len(subscriptions) == 2

        event = OrderCreatedEvent.model_validate({
            "payload": {
                "order_id": "o-1", "order_number": "HL-1", "email": "jane@example.com", "customer_name": "Jane",
                "items": [], "total_amount": 10.0, "shipping_fee": 5.99, "status": "pending",
            },
        })
        await bus.publish(event)
        assert len(sender.outbox) == 1
        assert admin_socket.frames[0]["event"] == "order:new"

    async def test_publish_never_raises_into_pipeline(self):
        class Component(EventPublisherMixin):
            pass

        component = Component()
        component.init_event_bus(InMemoryEventBus())
        event = OrderCreatedEvent.model_validate({
            "payload": {
                "order_id": "o-1", "order_number": "HL-1", "email": "jane@example.com", "customer_name": "Jane",
                "items": [], "total_amount": 10.0, "shipping_fee": 0.0, "status": "pending",
            },
        })
        assert await component.publish_event(event) is False
