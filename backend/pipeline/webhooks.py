"""
Payment Webhook Processing
==========================
Signed, at-least-once gateway events. The signature is verified over the raw
body before anything is parsed; the event is then routed by type and handled
inline. A handler failure propagates so the HTTP layer answers 5xx and the
gateway redelivers; redelivery is safe because fulfillment is idempotent.
"""

import uuid
from typing import Any, Callable, Optional

import structlog

from pipeline.audit import AuditTrail
from pipeline.fulfillment import PaymentConfirmationHandler
from pipeline.gateway import IPaymentGateway, session_from_payload
from pipeline.refunds import RefundWorkflow
from pipeline.repositories import IPendingCheckoutRepository
from schemas.commerce import AuditEventType, PendingCheckoutStatus


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[dict, str], Any]


class WebhookRouter:
    """
    Routes a verified event to the handler registered for its type.
    Separates routing from business logic.
    """

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: dict, correlation_id: str) -> Optional[Any]:
        event_type = event.get("type", "unknown")
        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("webhook_ignored", event_type=event_type)
            return None
        return await handler(event, correlation_id)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


# =============================================================================
# PROCESSOR
# =============================================================================

class PaymentWebhookProcessor:

    def __init__(
        self,
        gateway: IPaymentGateway,
        confirmation: PaymentConfirmationHandler,
        refunds: RefundWorkflow,
        pending: IPendingCheckoutRepository,
        audit: Optional[AuditTrail] = None,
    ):
        self.gateway = gateway
        self.confirmation = confirmation
        self.refunds = refunds
        self.pending = pending
        self.audit = audit or AuditTrail()
        self.router = WebhookRouter()
        self._register_handlers()
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        return self._base_logger.bind(
            component="payment_webhooks",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def process(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify, audit and handle one delivery. GatewaySignatureInvalid is
        raised before any state is touched.
        """
        try:
            event = self.gateway.verify_event(payload, signature)
        except Exception as e:
            self._get_logger().warning("webhook_signature_invalid", error=str(e))
            raise

        event_type = event.get("type", "unknown")
        gateway_event_id = event.get("id", "unknown")
        obj = (event.get("data") or {}).get("object") or {}
        correlation_id = obj.get("id") or gateway_event_id

        log = self._get_logger(correlation_id)
        log.info("webhook_received", event_type=event_type, gateway_event_id=gateway_event_id)

        await self.audit.emit(
            event_type=AuditEventType.WEBHOOK_RECEIVED,
            entity_type="webhook",
            entity_id=gateway_event_id,
            correlation_id=correlation_id,
            metadata={"event_type": event_type},
            actor="webhook",
        )

        result = await self.router.route(event, correlation_id)
        log.info("webhook_processed", event_type=event_type)
        return {"received": True, "event_id": gateway_event_id, "handled": result is not None}

    # =========================================================================
    # HANDLERS (Registered with Router)
    # =========================================================================

    def _register_handlers(self):

        @self.router.register("checkout.session.completed")
        async def handle_checkout_completed(event: dict, correlation_id: str):
            return await self._on_session_paid(event, correlation_id)

        @self.router.register("checkout.session.async_payment_succeeded")
        async def handle_async_payment_succeeded(event: dict, correlation_id: str):
            return await self._on_session_paid(event, correlation_id)

        @self.router.register("checkout.session.expired")
        async def handle_session_expired(event: dict, correlation_id: str):
            return await self._on_session_expired(event, correlation_id)

        @self.router.register("payment_intent.payment_failed")
        async def handle_payment_failed(event: dict, correlation_id: str):
            return await self._on_payment_failed(event, correlation_id)

        @self.router.register("charge.refunded")
        async def handle_refund(event: dict, correlation_id: str):
            return await self.refunds.on_charge_refunded(event["data"]["object"], correlation_id)

    async def _on_session_paid(self, event: dict, correlation_id: str):
        session = session_from_payload(event["data"]["object"])
        if not session.is_paid:
            self._get_logger(correlation_id).info("checkout_awaiting_payment", payment_status=session.payment_status)
            return {"status": "awaiting_payment"}
        result = await self.confirmation.fulfill(session, trigger="webhook")
        return {"status": result.outcome.value, "order_id": result.order.id if result.order else None}

    async def _on_session_expired(self, event: dict, correlation_id: str):
        session_id = event["data"]["object"]["id"]
        pending = await self.pending.mark(session_id, PendingCheckoutStatus.EXPIRED)
        await self.audit.emit(
            event_type=AuditEventType.SESSION_EXPIRED,
            entity_type="checkout_session",
            entity_id=session_id,
            correlation_id=correlation_id,
            new_state={"status": pending.status.value if pending else None},
            actor="webhook",
        )
        self._get_logger(correlation_id).info("checkout_session_expired", session_id=session_id)
        return {"status": "expired"}

    async def _on_payment_failed(self, event: dict, correlation_id: str):
        intent = event["data"]["object"]
        log = self._get_logger(correlation_id)
        error = (intent.get("last_payment_error") or {}).get("message")
        checkout_ref = (intent.get("metadata") or {}).get("checkout_ref")

        pending = await self.pending.get_by_ref(checkout_ref) if checkout_ref else None
        if pending is not None:
            pending = await self.pending.mark(pending.session_id, PendingCheckoutStatus.FAILED)

        await self.audit.emit(
            event_type=AuditEventType.PAYMENT_FAILED,
            entity_type="payment",
            entity_id=intent.get("id", "unknown"),
            correlation_id=correlation_id,
            metadata={"error": error, "checkout_ref": checkout_ref,
                      "session_id": pending.session_id if pending else None},
            actor="webhook",
        )
        log.warning("payment_failed", payment_intent=intent.get("id"), error=error,
                    pending_found=pending is not None)
        return {"status": "failed"}
