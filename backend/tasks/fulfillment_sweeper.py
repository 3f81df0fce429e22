"""
Fulfillment Sweeper - The Safety Net
====================================
Background task that finds paid orders whose post-creation fulfillment steps
never completed (a crash between "order inserted" and "confirmation sent")
and resumes them through the confirmation handler.

It also expires pending checkouts that stayed open past the session TTL.

Features:
- Runs every CHECK_INTERVAL seconds
- Resumes orders stuck longer than STUCK_THRESHOLD minutes
- Escalates (CRITICAL log) after MAX_ATTEMPTS resumes of the same order
- Configurable thresholds
"""

import os
import asyncio
from collections import Counter
from datetime import timedelta
from typing import Optional

import structlog

from pipeline.audit import AuditTrail
from pipeline.fulfillment import PaymentConfirmationHandler
from pipeline.repositories import IOrderRepository, IPendingCheckoutRepository
from schemas.commerce import AuditEventType, PendingCheckoutStatus, utcnow

# Configure logger
logger = structlog.get_logger().bind(component="fulfillment_sweeper")


# =============================================================================
# CONFIGURATION
# =============================================================================

class SweeperConfig:
    """Sweeper configuration"""

    # How often to check for stuck orders (seconds)
    CHECK_INTERVAL = int(os.getenv("SWEEPER_INTERVAL", "300"))

    # How long before a partially fulfilled order is considered stuck (minutes)
    STUCK_THRESHOLD = int(os.getenv("SWEEPER_THRESHOLD", "10"))

    # Maximum orders to process per cycle
    MAX_ORDERS_PER_CYCLE = int(os.getenv("SWEEPER_BATCH_SIZE", "10"))

    # Resume attempts per order before escalating
    MAX_ATTEMPTS = int(os.getenv("SWEEPER_MAX_ATTEMPTS", "3"))

    # Open pending checkouts older than this are marked expired (minutes)
    PENDING_EXPIRY = int(os.getenv("SWEEPER_PENDING_EXPIRY", "90"))

    # Enable/disable the sweeper
    ENABLED = os.getenv("SWEEPER_ENABLED", "true").lower() == "true"


config = SweeperConfig()


# =============================================================================
# SWEEPER
# =============================================================================

class FulfillmentSweeper:

    def __init__(
        self,
        confirmation: PaymentConfirmationHandler,
        orders: IOrderRepository,
        pending: IPendingCheckoutRepository,
        audit: Optional[AuditTrail] = None,
        sweeper_config: Optional[SweeperConfig] = None,
    ):
        self.confirmation = confirmation
        self.orders = orders
        self.pending = pending
        self.audit = audit or confirmation.audit
        self.config = sweeper_config or config
        self._attempts: Counter = Counter()
        self._task: Optional[asyncio.Task] = None

    async def resume_stuck_orders(self) -> int:
        """One pass over partially fulfilled orders; returns how many were resumed"""
        cutoff = utcnow() - timedelta(minutes=self.config.STUCK_THRESHOLD)
        stuck = await self.orders.find_unfinished(cutoff, limit=self.config.MAX_ORDERS_PER_CYCLE)
        if stuck:
            logger.warning("stuck_orders_found", count=len(stuck))

        resumed = 0
        for order in stuck:
            attempts = self._attempts[order.id]
            if attempts >= self.config.MAX_ATTEMPTS:
                logger.critical("order_requires_manual_intervention",
                                order_id=order.id,
                                attempts=attempts,
                                progress=order.fulfillment.model_dump())
                continue

            self._attempts[order.id] += 1
            try:
                result = await self.confirmation.resume_order(order.id)
            except Exception as e:
                logger.error("order_resume_failed", order_id=order.id, attempt=attempts + 1, error=str(e))
                continue

            if result is not None and result.fulfillment.complete:
                self._attempts.pop(order.id, None)
                resumed += 1
                logger.info("order_resumed", order_id=order.id, attempt=attempts + 1)
        return resumed

    async def expire_stale_checkouts(self) -> int:
        cutoff = utcnow() - timedelta(minutes=self.config.PENDING_EXPIRY)
        stale = await self.pending.list_open_before(cutoff)
        expired = 0
        for pending in stale:
            marked = await self.pending.mark(pending.session_id, PendingCheckoutStatus.EXPIRED)
            if marked is not None and marked.status == PendingCheckoutStatus.EXPIRED:
                expired += 1
                await self.audit.emit(
                    event_type=AuditEventType.SESSION_EXPIRED,
                    entity_type="checkout_session",
                    entity_id=pending.session_id,
                    correlation_id=pending.session_id,
                    new_state={"status": PendingCheckoutStatus.EXPIRED.value},
                    actor="system",
                )
        if expired:
            logger.info("pending_checkouts_expired", count=expired)
        return expired

    async def run_cycle(self) -> dict:
        resumed = await self.resume_stuck_orders()
        expired = await self.expire_stale_checkouts()
        return {"resumed": resumed, "expired": expired}

    async def loop(self):
        """
        Background task that runs every CHECK_INTERVAL seconds.
        A failing cycle is logged and the loop carries on.
        """
        logger.info("sweeper_started",
                    interval=self.config.CHECK_INTERVAL,
                    threshold=self.config.STUCK_THRESHOLD)
        while True:
            try:
                summary = await self.run_cycle()
                logger.debug("sweeper_cycle_complete", **summary)
            except Exception as e:
                logger.error("sweeper_cycle_error", error=str(e))

            # Sleep until next check
            await asyncio.sleep(self.config.CHECK_INTERVAL)

    def start(self) -> Optional[asyncio.Task]:
        if not self.config.ENABLED:
            logger.info("sweeper_disabled")
            return None
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.loop())
        return self._task

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("sweeper_stopped")

    def stats(self) -> dict:
        return {
            "enabled": self.config.ENABLED,
            "interval_seconds": self.config.CHECK_INTERVAL,
            "threshold_minutes": self.config.STUCK_THRESHOLD,
            "running": self._task is not None and not self._task.done(),
            "orders_retrying": len(self._attempts),
        }
