"""Tests for idempotent payment confirmation."""

import asyncio

import pytest

from pipeline.fulfillment import ConfirmationOutcome
from schemas.commerce import (
    AuditEventType,
    CatalogItem,
    OrderStatus,
    PaymentStatus,
    PendingCheckoutStatus,
    ProductKind,
)
from schemas.event_definitions import EventType

from conftest import stock_of


async def pay(container, session_id, payment_intent="pi_test_1"):
    return await container.gateway.complete_session(session_id, payment_intent=payment_intent)


class TestConfirmFromClient:
    async def test_unpaid_session_creates_nothing(self, container, make_checkout):
        result = await make_checkout()
        confirmation = await container.confirmation.confirm_from_client(result.session_id)
        assert confirmation.outcome == ConfirmationOutcome.NOT_PAID
        assert confirmation.order is None
        assert await container.order_repo.get_by_session_id(result.session_id) is None

    async def test_paid_session_materialises_order(self, container, make_checkout):
        result = await make_checkout(coupon_code="SAVE10")
        await pay(container, result.session_id)

        confirmation = await container.confirmation.confirm_from_client(result.session_id)
        order = confirmation.order
        assert confirmation.outcome == ConfirmationOutcome.FULFILLED
        assert order.status == OrderStatus.PROCESSING
        assert order.payment_status == PaymentStatus.PAID
        assert order.is_paid and order.paid_at is not None
        assert order.payment_id == "pi_test_1"
        assert order.checkout_session_id == result.session_id
        assert order.total_amount == 450.0
        assert order.order_number.startswith("HL-")
        assert [h.status for h in order.status_history] == [OrderStatus.PENDING, OrderStatus.PROCESSING]
        assert order.fulfillment.complete

    async def test_side_effects_applied(self, container, make_checkout, outbox):
        result = await make_checkout(coupon_code="SAVE10")
        await pay(container, result.session_id)
        order = (await container.confirmation.confirm_from_client(result.session_id)).order

        assert await stock_of(container, "iphone-13") == 4
        assert (await container.coupon_repo.get("SAVE10")).used_count == 1
        transactions = await container.transaction_repo.list_by_order(order.id)
        assert [t.amount for t in transactions] == [450.0]
        assert (await container.pending_repo.get(result.session_id)).status == PendingCheckoutStatus.FULFILLED
        assert len(container.event_bus.get_published_events(EventType.ORDER_CREATED)) == 1
        assert any(m.subject == f"Order Confirmation - {order.order_number}" for m in outbox)

    async def test_guest_order_has_no_transaction(self, container, make_checkout):
        result = await make_checkout(user_id=None)
        await pay(container, result.session_id)
        order = (await container.confirmation.confirm_from_client(result.session_id)).order
        assert order.user_id is None
        assert await container.transaction_repo.list_by_order(order.id) == []
        assert order.fulfillment.transaction_recorded

    async def test_audit_trail_for_session(self, container, make_checkout):
        result = await make_checkout()
        await pay(container, result.session_id)
        await container.confirmation.confirm_from_client(result.session_id)
        types = [e.event_type for e in await container.audit_log.get_by_correlation_id(result.session_id)]
        assert types == [AuditEventType.SESSION_CREATED, AuditEventType.PAYMENT_CONFIRMED, AuditEventType.ORDER_CREATED]


class TestIdempotency:
    async def test_client_then_webhook(self, container, make_checkout):
        result = await make_checkout(coupon_code="SAVE10")
        session = await pay(container, result.session_id)

        first = await container.confirmation.confirm_from_client(result.session_id)
        second = await container.confirmation.fulfill(session, trigger="webhook")

        assert second.outcome == ConfirmationOutcome.ALREADY_FULFILLED
        assert second.order.id == first.order.id
        assert await stock_of(container, "iphone-13") == 4
        assert (await container.coupon_repo.get("SAVE10")).used_count == 1
        assert len(await container.transaction_repo.list_by_user("user-1")) == 1
        assert len(container.event_bus.get_published_events(EventType.ORDER_CREATED)) == 1

    async def test_repeated_client_polls(self, container, make_checkout):
        result = await make_checkout()
        await pay(container, result.session_id)
        outcomes = [
            (await container.confirmation.confirm_from_client(result.session_id)).outcome
            for _ in range(3)
        ]
        assert outcomes == [
            ConfirmationOutcome.FULFILLED,
            ConfirmationOutcome.ALREADY_FULFILLED,
            ConfirmationOutcome.ALREADY_FULFILLED,
        ]
        orders, total = await container.order_repo.list_all()
        assert total == 1

    async def test_concurrent_triggers_create_one_order(self, container, make_checkout):
        result = await make_checkout()
        session = await pay(container, result.session_id)

        results = await asyncio.gather(
            container.confirmation.confirm_from_client(result.session_id),
            container.confirmation.fulfill(session, trigger="webhook"),
            container.confirmation.fulfill(session, trigger="webhook"),
        )
        assert len({r.order.id for r in results}) == 1
        assert sorted(r.outcome.value for r in results) == ["already_fulfilled", "already_fulfilled", "fulfilled"]
        assert await stock_of(container, "iphone-13") == 4

    async def test_session_without_payment_intent_uses_session_id(self, container, make_checkout):
        result = await make_checkout()
        session = await pay(container, result.session_id)
        session = session.model_copy(update={"payment_intent": None})

        first = await container.confirmation.fulfill(session)
        second = await container.confirmation.fulfill(session)
        assert first.order.payment_id == result.session_id
        assert second.outcome == ConfirmationOutcome.ALREADY_FULFILLED


class TestResume:
    async def test_crash_between_steps_is_resumed(self, container, make_checkout, monkeypatch):
        result = await make_checkout(coupon_code="SAVE10")
        session = await pay(container, result.session_id)

        async def broken_redeem(code):
            raise RuntimeError("coupon store unavailable")

        monkeypatch.setattr(container.coupons, "redeem", broken_redeem)
        with pytest.raises(RuntimeError):
            await container.confirmation.fulfill(session)

        stuck = await container.order_repo.get_by_payment_id("pi_test_1")
        assert stuck.fulfillment.transaction_recorded
        assert stuck.fulfillment.stock_applied
        assert not stuck.fulfillment.coupon_redeemed
        assert not stuck.fulfillment.confirmation_sent

        monkeypatch.undo()
        resumed = await container.confirmation.fulfill(session)

        assert resumed.outcome == ConfirmationOutcome.ALREADY_FULFILLED
        assert resumed.order.id == stuck.id
        assert resumed.order.fulfillment.complete
        assert await stock_of(container, "iphone-13") == 4
        assert (await container.coupon_repo.get("SAVE10")).used_count == 1
        assert len(await container.transaction_repo.list_by_order(stuck.id)) == 1
        assert len(container.event_bus.get_published_events(EventType.ORDER_CREATED)) == 1

    async def test_resume_order_by_id(self, container, paid_order):
        order = await paid_order()
        assert (await container.confirmation.resume_order(order.id)).fulfillment.complete
        assert await container.confirmation.resume_order("missing") is None


class TestFallbacks:
    async def test_order_rebuilt_from_metadata(self, container, make_checkout):
        result = await make_checkout(coupon_code="SAVE10")
        session = await pay(container, result.session_id)
        container.pending_repo._pending.pop(result.session_id)

        confirmation = await container.confirmation.fulfill(session)
        order = confirmation.order
        assert confirmation.outcome == ConfirmationOutcome.FULFILLED
        assert order.total_amount == 450.0
        assert order.coupon_code == "SAVE10"
        assert order.items[0].name == "iPhone 13"
        assert order.shipping_address.email == "jane@example.com"

    async def test_stock_shortfall_still_fulfils(self, container, make_checkout, outbox):
        result = await make_checkout(items=[{"product_ref": "case-1", "product_type": "Accessory", "quantity": 3}])
        await container.catalogs.for_kind(ProductKind.ACCESSORY).save(
            CatalogItem(id="case-1", kind=ProductKind.ACCESSORY, name="Phone Case", price=20.0, stock=1))
        await pay(container, result.session_id)

        order = (await container.confirmation.confirm_from_client(result.session_id)).order
        assert order.status == OrderStatus.PROCESSING
        assert order.fulfillment.complete
        assert "Stock shortfall" in order.status_history[-1].note
        assert await stock_of(container, "case-1", ProductKind.ACCESSORY) == 1
        assert len(container.event_bus.get_published_events(EventType.ORDER_STOCK_SHORTFALL)) == 1
        assert any(m.subject.startswith("Stock shortfall") for m in outbox)
