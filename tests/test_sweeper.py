"""Tests for the fulfillment sweeper."""

from datetime import timedelta

import pytest

from schemas.commerce import AuditEventType, PendingCheckoutStatus, utcnow
from tasks.fulfillment_sweeper import FulfillmentSweeper

from conftest import DisabledSweeperConfig


class TwoAttemptsConfig(DisabledSweeperConfig):
    MAX_ATTEMPTS = 2


@pytest.fixture
def stuck_order(container, make_checkout, monkeypatch):
    """A paid order whose coupon and confirmation steps never ran, last touched an hour ago"""
    async def _stuck():
        result = await make_checkout(coupon_code="SAVE10")
        session = await container.gateway.complete_session(result.session_id, payment_intent="pi_stuck")

        async def broken_redeem(code):
            raise RuntimeError("crashed")

        with monkeypatch.context() as m:
            m.setattr(container.coupons, "redeem", broken_redeem)
            with pytest.raises(RuntimeError):
                await container.confirmation.fulfill(session)

        order = await container.order_repo.get_by_payment_id("pi_stuck")
        return await container.order_repo.save(order.model_copy(update={"updated_at": utcnow() - timedelta(hours=1)}))
    return _stuck


class TestResumeStuckOrders:
    async def test_stuck_order_is_completed(self, container, stuck_order):
        order = await stuck_order()
        assert not order.fulfillment.complete

        assert await container.sweeper.resume_stuck_orders() == 1
        resumed = await container.order_repo.get(order.id)
        assert resumed.fulfillment.complete
        assert (await container.coupon_repo.get("SAVE10")).used_count == 1

        assert await container.sweeper.resume_stuck_orders() == 0

    async def test_recent_orders_are_left_alone(self, container, make_checkout, monkeypatch):
        result = await make_checkout(coupon_code="SAVE10")
        session = await container.gateway.complete_session(result.session_id, payment_intent="pi_recent")

        async def broken_redeem(code):
            raise RuntimeError("crashed")

        monkeypatch.setattr(container.coupons, "redeem", broken_redeem)
        with pytest.raises(RuntimeError):
            await container.confirmation.fulfill(session)
        monkeypatch.undo()

        assert await container.sweeper.resume_stuck_orders() == 0

    async def test_gives_up_after_max_attempts(self, container, stuck_order, monkeypatch):
        order = await stuck_order()
        sweeper = FulfillmentSweeper(
            confirmation=container.confirmation,
            orders=container.order_repo,
            pending=container.pending_repo,
            sweeper_config=TwoAttemptsConfig(),
        )
        calls = []

        async def failing_resume(order_id):
            calls.append(order_id)
            raise RuntimeError("still broken")

        monkeypatch.setattr(container.confirmation, "resume_order", failing_resume)
        for _ in range(4):
            assert await sweeper.resume_stuck_orders() == 0
        assert calls == [order.id, order.id]
        assert sweeper.stats()["orders_retrying"] == 1


class TestExpireStaleCheckouts:
    async def test_old_open_checkouts_expire(self, container, make_checkout):
        old = await make_checkout()
        fresh = await make_checkout()
        pending = await container.pending_repo.get(old.session_id)
        await container.pending_repo.save(pending.model_copy(update={"created_at": utcnow() - timedelta(hours=3)}))

        assert await container.sweeper.expire_stale_checkouts() == 1
        assert (await container.pending_repo.get(old.session_id)).status == PendingCheckoutStatus.EXPIRED
        assert (await container.pending_repo.get(fresh.session_id)).status == PendingCheckoutStatus.OPEN
        entries = await container.audit_log.get_by_correlation_id(old.session_id)
        assert entries[-1].event_type == AuditEventType.SESSION_EXPIRED

    async def test_run_cycle_summary(self, container):
        assert await container.sweeper.run_cycle() == {"resumed": 0, "expired": 0}


class TestLifecycle:
    def test_disabled_sweeper_does_not_start(self, container):
        assert container.sweeper.start() is None
        assert container.sweeper.stats()["running"] is False

    async def test_enabled_sweeper_runs_and_stops(self, container):
        class Enabled(DisabledSweeperConfig):
            ENABLED = True
            CHECK_INTERVAL = 3600

        sweeper = FulfillmentSweeper(container.confirmation, container.order_repo, container.pending_repo,
                                     sweeper_config=Enabled())
        task = sweeper.start()
        assert task is not None
        assert sweeper.start() is task
        await sweeper.stop()
        assert sweeper.stats()["running"] is False
