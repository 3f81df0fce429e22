"""Tests for direct orders, owner-scoped reads and status transitions."""

import pytest

from pipeline.errors import Forbidden, InsufficientStock, InvalidTransition, NotFound, ValidationError
from pipeline.order_state import StatusUpdate, allowed_targets
from pipeline.orders import CouponQuoteRequest, DirectOrderRequest
from schemas.commerce import AuditEventType, OrderStatus, PaymentMethod
from schemas.event_definitions import EventType

from conftest import address_payload, stock_of


def direct_request(items=None, **overrides) -> DirectOrderRequest:
    payload = {
        "items": items or [{"product_ref": "pixel-7", "product_type": "Product", "quantity": 2}],
        "shipping_address": address_payload(),
    }
    payload.update(overrides)
    return DirectOrderRequest.model_validate(payload)


class TestDirectOrders:
    async def test_creates_pending_order(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        assert order.status == OrderStatus.PENDING
        assert order.payment_method == PaymentMethod.CASH
        assert not order.is_paid
        assert order.total_amount == 85.99
        assert order.status_history[0].note == "Order created"
        assert order.fulfillment.complete
        assert await stock_of(container, "pixel-7") == 8

    async def test_coupon_redeemed_immediately(self, container):
        order = await container.orders.create_direct(direct_request(coupon_code="SAVE10"), "user-1")
        assert order.discount_amount == 8.0
        assert order.total_amount == 77.99
        assert (await container.coupon_repo.get("SAVE10")).used_count == 1

    async def test_matching_client_total_accepted(self, container):
        order = await container.orders.create_direct(direct_request(total_amount=85.99), "user-1")
        assert order.total_amount == 85.99

    async def test_mismatched_client_total_rejected(self, container):
        with pytest.raises(ValidationError):
            await container.orders.create_direct(direct_request(total_amount=10.0), "user-1")
        assert await stock_of(container, "pixel-7") == 10

    async def test_stock_reserved_all_or_nothing(self, container):
        items = [
            {"product_ref": "pixel-7", "product_type": "Product", "quantity": 2},
            {"product_ref": "pixel-7", "product_type": "Product", "quantity": 9},
        ]
        with pytest.raises(InsufficientStock):
            await container.orders.create_direct(direct_request(items=items), "user-1")
        assert await stock_of(container, "pixel-7") == 10
        orders, total = await container.order_repo.list_all()
        assert total == 0

    async def test_publishes_created_event(self, container, outbox):
        order = await container.orders.create_direct(direct_request(), "user-1")
        events = container.event_bus.get_published_events(EventType.ORDER_CREATED)
        assert len(events) == 1
        assert events[0].payload.source == "direct"
        assert events[0].payload.order_id == order.id
        assert outbox[0].to == "jane@example.com"


class TestCouponQuote:
    async def test_quote_from_cart_total(self, container):
        quote = await container.orders.quote_coupon(CouponQuoteRequest(code="SAVE10", cart_total=200))
        assert quote.discount == 20.0

    async def test_quote_from_items_uses_catalog_prices(self, container):
        quote = await container.orders.quote_coupon(CouponQuoteRequest.model_validate({
            "code": "SAVE10",
            "items": [{"product_ref": "iphone-13", "product_type": "Product", "quantity": 2}],
        }))
        assert quote.discount == 100.0

    async def test_quote_requires_total_or_items(self, container):
        with pytest.raises(ValidationError):
            await container.orders.quote_coupon(CouponQuoteRequest(code="SAVE10"))


class TestReads:
    async def test_owner_can_read(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        assert (await container.orders.get(order.id, "user-1")).id == order.id

    async def test_other_user_forbidden(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        with pytest.raises(Forbidden):
            await container.orders.get(order.id, "user-2")

    async def test_admin_can_read_any(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        assert (await container.orders.get(order.id, "admin-1", is_admin=True)).id == order.id

    async def test_missing_order(self, container):
        with pytest.raises(NotFound):
            await container.orders.get("missing", "user-1")

    async def test_list_for_user_newest_first(self, container):
        first = await container.orders.create_direct(direct_request(), "user-1")
        second = await container.orders.create_direct(direct_request(), "user-1")
        await container.orders.create_direct(direct_request(), "user-2")
        orders = await container.orders.list_for_user("user-1")
        assert [o.id for o in orders] == [second.id, first.id]

    async def test_admin_listing_and_stats(self, container):
        for _ in range(3):
            await container.orders.create_direct(direct_request(
                items=[{"product_ref": "pixel-7", "product_type": "Product", "quantity": 1}]), "user-1")
        page = await container.orders.list_all(page=1, limit=2)
        assert page.total == 3
        assert page.pages == 2
        assert len(page.orders) == 2
        assert (await container.orders.list_all(status=OrderStatus.SHIPPED)).total == 0

        stats = await container.orders.stats()
        assert stats["total_orders"] == 3
        assert stats["by_status"]["pending"] == 3
        assert stats["total_revenue"] == 137.97


class TestStateMachine:
    def test_allowed_targets(self):
        assert allowed_targets(OrderStatus.REFUNDED) == frozenset()
        assert allowed_targets(OrderStatus.CANCELLED) == frozenset({OrderStatus.REFUNDED})
        assert OrderStatus.PENDING in allowed_targets(OrderStatus.DELIVERED)

    async def test_customer_cancel_restores_stock(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        cancelled = await container.orders.cancel(order.id, "user-1")
        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.stock_restored
        assert cancelled.status_history[-1].note == "Cancelled by customer"
        assert await stock_of(container, "pixel-7") == 10
        assert len(container.event_bus.get_published_events(EventType.ORDER_CANCELLED)) == 1

    async def test_customer_cannot_cancel_twice(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        await container.orders.cancel(order.id, "user-1")
        with pytest.raises(InvalidTransition):
            await container.orders.cancel(order.id, "user-1")
        assert await stock_of(container, "pixel-7") == 10

    async def test_customer_cannot_cancel_shipped(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        await container.orders.admin_update(order.id, StatusUpdate(status=OrderStatus.SHIPPED))
        with pytest.raises(InvalidTransition):
            await container.orders.cancel(order.id, "user-1")

    async def test_customer_cannot_cancel_others_order(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        with pytest.raises(Forbidden):
            await container.orders.cancel(order.id, "user-2")

    async def test_paid_order_cancel_restores_stock_once(self, container, paid_order):
        order = await paid_order()
        assert await stock_of(container, "iphone-13") == 4
        await container.orders.admin_update(order.id, StatusUpdate(status=OrderStatus.CANCELLED))
        again = await container.orders.admin_update(order.id, StatusUpdate(status=OrderStatus.CANCELLED, note="dup"))
        assert again.stock_restored
        assert await stock_of(container, "iphone-13") == 5

    async def test_tracking_number_normalised(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        updated = await container.orders.admin_update(
            order.id, StatusUpdate(status=OrderStatus.SHIPPED, tracking_number=" dhl12345678 ", note="Sent"))
        assert updated.tracking_number == "DHL12345678"
        assert updated.status_history[-1].status == OrderStatus.SHIPPED
        assert updated.status_history[-1].note == "Sent"
        event = container.event_bus.get_published_events(EventType.ORDER_STATUS_CHANGED)[0]
        assert event.payload.previous_status == "pending"
        assert event.payload.tracking_number == "DHL12345678"

    async def test_invalid_tracking_number(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        with pytest.raises(ValidationError):
            await container.orders.admin_update(
                order.id, StatusUpdate(status=OrderStatus.SHIPPED, tracking_number="abc"))
        assert (await container.order_repo.get(order.id)).status == OrderStatus.PENDING

    async def test_delivered_sets_delivery_fields(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        updated = await container.orders.admin_update(order.id, StatusUpdate(status=OrderStatus.DELIVERED))
        assert updated.is_delivered
        assert updated.delivered_at is not None

    async def test_same_status_updates_note_without_event(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        updated = await container.orders.admin_update(
            order.id, StatusUpdate(status=OrderStatus.PENDING, note="Waiting for pickup"))
        assert len(updated.status_history) == 1
        assert updated.status_history[0].note == "Waiting for pickup"
        assert updated.version == order.version + 1
        assert container.event_bus.get_published_events(EventType.ORDER_STATUS_CHANGED) == []

    async def test_cancelled_only_moves_to_refunded(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        await container.orders.cancel(order.id, "user-1")
        with pytest.raises(InvalidTransition):
            await container.orders.admin_update(order.id, StatusUpdate(status=OrderStatus.PROCESSING))
        refunded = await container.orders.admin_update(order.id, StatusUpdate(status=OrderStatus.REFUNDED))
        with pytest.raises(InvalidTransition):
            await container.orders.admin_update(refunded.id, StatusUpdate(status=OrderStatus.PENDING))

    async def test_admin_cannot_cancel_refunded_order(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        await container.orders.admin_update(order.id, StatusUpdate(status=OrderStatus.REFUNDED))
        with pytest.raises(InvalidTransition):
            await container.orders.admin_update(order.id, StatusUpdate(status=OrderStatus.CANCELLED))
        stored = await container.order_repo.get(order.id)
        assert stored.status == OrderStatus.REFUNDED
        assert not stored.stock_restored

    async def test_admin_cancels_from_every_other_status(self, container):
        for status in OrderStatus:
            if status in (OrderStatus.REFUNDED, OrderStatus.CANCELLED):
                continue
            order = await container.orders.create_direct(direct_request(), "user-1")
            if status != OrderStatus.PENDING:
                await container.orders.admin_update(order.id, StatusUpdate(status=status))
            cancelled = await container.orders.admin_update(order.id, StatusUpdate(status=OrderStatus.CANCELLED))
            assert cancelled.status == OrderStatus.CANCELLED

    async def test_tracking_number_length_bounds(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        updated = await container.orders.admin_update(
            order.id, StatusUpdate(status=OrderStatus.SHIPPED, tracking_number="A" * 20))
        assert updated.tracking_number == "A" * 20
        with pytest.raises(ValidationError):
            await container.orders.admin_update(
                order.id, StatusUpdate(status=OrderStatus.SHIPPED, tracking_number="A" * 21))
        with pytest.raises(ValidationError):
            await container.orders.admin_update(
                order.id, StatusUpdate(status=OrderStatus.SHIPPED, tracking_number="A" * 7))

    async def test_updates_are_audited(self, container):
        order = await container.orders.create_direct(direct_request(), "user-1")
        await container.orders.admin_update(order.id, StatusUpdate(status=OrderStatus.PROCESSING))
        entries = await container.audit_log.get_by_entity("order", order.id)
        assert [e.event_type for e in entries] == [AuditEventType.ORDER_CREATED, AuditEventType.ORDER_UPDATED]
        assert entries[-1].previous_state["status"] == "pending"
        assert entries[-1].actor == "admin"
