"""
Payment gateway capability.

The pipeline needs four things from a gateway: create a hosted checkout
session, retrieve a session by id, verify a signed webhook event and issue a
refund. StripePaymentGateway talks to Stripe; MockPaymentGateway keeps
sessions in memory for development and tests. One of them is chosen at
process start by create_payment_gateway().
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

import stripe
import structlog
from pydantic import BaseModel, Field

from pipeline.errors import GatewayError, GatewaySignatureInvalid, NotFound
from pipeline.settings import CommerceSettings, settings as default_settings


# =============================================================================
# MODELS
# =============================================================================

class GatewayLineItem(BaseModel):
    name: str
    unit_amount: int  # minor units
    quantity: int = 1
    image: Optional[str] = None


class CheckoutSessionRequest(BaseModel):
    line_items: list[GatewayLineItem]
    customer_email: str
    metadata: dict[str, str] = Field(default_factory=dict)
    success_url: str
    cancel_url: str
    currency: str = "eur"
    discount_amount: int = 0  # minor units
    discount_label: Optional[str] = None
    expires_at: Optional[datetime] = None
    idempotency_key: Optional[str] = None


class GatewaySession(BaseModel):
    id: str
    url: Optional[str] = None
    status: str = "open"  # open, complete, expired
    payment_status: str = "unpaid"  # paid, unpaid, no_payment_required
    payment_intent: Optional[str] = None
    amount_total: int = 0
    currency: str = "eur"
    customer_email: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @property
    def payment_reference(self) -> str:
        """Gateway charge reference used as the order's idempotency key"""
        return self.payment_intent or self.id


class GatewayRefund(BaseModel):
    id: str
    payment_id: str
    amount: Optional[float] = None
    status: str = "succeeded"


def _plain(obj: Any) -> dict:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def session_from_payload(data: dict) -> GatewaySession:
    """Build a GatewaySession from a Stripe checkout.session object"""
    payment_intent = data.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")
    return GatewaySession(
        id=data["id"],
        url=data.get("url"),
        status=data.get("status") or "open",
        payment_status=data.get("payment_status") or "unpaid",
        payment_intent=payment_intent,
        amount_total=data.get("amount_total") or 0,
        currency=data.get("currency") or "eur",
        customer_email=data.get("customer_email") or (data.get("customer_details") or {}).get("email"),
        metadata={k: str(v) for k, v in (data.get("metadata") or {}).items()},
    )


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentGateway(ABC):

    name: str = "gateway"

    def __init__(self, webhook_secret: str, tolerance: int = 300):
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance

    @abstractmethod
    async def create_session(self, request: CheckoutSessionRequest) -> GatewaySession:
        pass

    @abstractmethod
    async def retrieve_session(self, session_id: str) -> GatewaySession:
        pass

    @abstractmethod
    async def refund(self, payment_id: str, amount: Optional[float] = None) -> GatewayRefund:
        """Reverse a charge, fully or by `amount` (major units)"""
        pass

    def verify_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify the Stripe-Signature header over the raw body, then parse it.
        Raises GatewaySignatureInvalid on any verification failure.
        """
        if not signature:
            raise GatewaySignatureInvalid("Missing webhook signature")
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature, self._webhook_secret, self._tolerance)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise GatewaySignatureInvalid(f"Invalid webhook signature: {e}")
        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise GatewaySignatureInvalid(f"Malformed webhook payload: {e}")
        if not isinstance(event, dict) or "type" not in event:
            raise GatewaySignatureInvalid("Malformed webhook payload")
        return event


# =============================================================================
# STRIPE
# =============================================================================

class StripePaymentGateway(IPaymentGateway):
    """Stripe Checkout. SDK calls run in a worker thread."""

    name = "stripe"

    def __init__(self, api_key: str, webhook_secret: str, tolerance: int = 300):
        super().__init__(webhook_secret, tolerance)
        self._api_key = api_key
        self._logger = structlog.get_logger().bind(component="stripe_gateway")

    async def _call(self, fn, **kwargs):
        try:
            return await asyncio.to_thread(fn, api_key=self._api_key, **kwargs)
        except stripe.StripeError as e:
            self._logger.error("stripe_call_failed", call=getattr(fn, "__qualname__", str(fn)), error=str(e),
                               error_type=type(e).__name__)
            raise GatewayError(f"Payment provider error: {e.user_message or e}")

    async def create_session(self, request: CheckoutSessionRequest) -> GatewaySession:
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": request.currency,
                        "product_data": {
                            "name": item.name,
                            "images": [item.image] if item.image else [],
                        },
                        "unit_amount": item.unit_amount,
                    },
                    "quantity": item.quantity,
                }
                for item in request.line_items
            ],
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "customer_email": request.customer_email,
            "metadata": request.metadata,
            "payment_intent_data": {"metadata": request.metadata},
        }
        if request.expires_at is not None:
            params["expires_at"] = int(request.expires_at.timestamp())
        if request.idempotency_key:
            params["idempotency_key"] = request.idempotency_key

        if request.discount_amount > 0:
            coupon = await self._call(
                stripe.Coupon.create,
                amount_off=request.discount_amount,
                currency=request.currency,
                duration="once",
                name=request.discount_label or "Discount",
            )
            params["discounts"] = [{"coupon": coupon.id}]

        session = await self._call(stripe.checkout.Session.create, **params)
        self._logger.info("stripe_session_created", session_id=session.id)
        return session_from_payload(_plain(session))

    async def retrieve_session(self, session_id: str) -> GatewaySession:
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id, api_key=self._api_key)
        except stripe.InvalidRequestError as e:
            raise NotFound(f"Checkout session not found: {session_id}") from e
        except stripe.StripeError as e:
            self._logger.error("stripe_retrieve_failed", session_id=session_id, error=str(e))
            raise GatewayError(f"Payment provider error: {e.user_message or e}")
        return session_from_payload(_plain(session))

    async def refund(self, payment_id: str, amount: Optional[float] = None) -> GatewayRefund:
        params: dict[str, Any] = {}
        if payment_id.startswith("ch_"):
            params["charge"] = payment_id
        else:
            params["payment_intent"] = payment_id
        if amount is not None:
            params["amount"] = int(round(amount * 100))
        refund = await self._call(stripe.Refund.create, **params)
        data = _plain(refund)
        self._logger.info("stripe_refund_created", refund_id=data.get("id"), payment_id=payment_id)
        return GatewayRefund(
            id=data["id"],
            payment_id=payment_id,
            amount=(data.get("amount") or 0) / 100,
            status=data.get("status") or "pending",
        )


# =============================================================================
# MOCK
# =============================================================================

class MockPaymentGateway(IPaymentGateway):
    """
    In-memory gateway used when no Stripe key is configured.
    Webhooks are still verified with the real Stripe signature scheme.
    """

    name = "mock"

    def __init__(self, webhook_secret: str, tolerance: int = 300, frontend_url: str = "http://localhost:3000"):
        super().__init__(webhook_secret, tolerance)
        self._frontend_url = frontend_url
        self._sessions: dict[str, GatewaySession] = {}
        self.refunds: list[GatewayRefund] = []
        self.fail_refunds = False
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="mock_gateway")

    async def create_session(self, request: CheckoutSessionRequest) -> GatewaySession:
        session_id = f"cs_mock_{uuid.uuid4().hex}"
        amount = sum(item.unit_amount * item.quantity for item in request.line_items)
        session = GatewaySession(
            id=session_id,
            url=f"{self._frontend_url}/payment-success?session_id={session_id}",
            amount_total=max(amount - request.discount_amount, 0),
            currency=request.currency,
            customer_email=request.customer_email,
            metadata=dict(request.metadata),
        )
        async with self._lock:
            self._sessions[session_id] = session
        self._logger.info("mock_session_created", session_id=session_id, amount_total=session.amount_total)
        return session

    async def retrieve_session(self, session_id: str) -> GatewaySession:
        async with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f"Checkout session not found: {session_id}")
        return session

    async def complete_session(self, session_id: str, payment_intent: Optional[str] = None) -> GatewaySession:
        """Simulate the customer paying on the hosted page"""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFound(f"Checkout session not found: {session_id}")
            session = session.model_copy(update={
                "status": "complete",
                "payment_status": "paid",
                "payment_intent": payment_intent or f"pi_mock_{uuid.uuid4().hex[:24]}",
            })
            self._sessions[session_id] = session
            return session

    async def expire_session(self, session_id: str) -> GatewaySession:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFound(f"Checkout session not found: {session_id}")
            session = session.model_copy(update={"status": "expired"})
            self._sessions[session_id] = session
            return session

    async def refund(self, payment_id: str, amount: Optional[float] = None) -> GatewayRefund:
        if self.fail_refunds:
            self._logger.warning("mock_refund_failed", payment_id=payment_id)
            raise GatewayError("Mock gateway refused the refund")
        refund = GatewayRefund(id=f"re_mock_{uuid.uuid4().hex[:24]}", payment_id=payment_id, amount=amount)
        self.refunds.append(refund)
        self._logger.info("mock_refund_created", refund_id=refund.id, payment_id=payment_id, amount=amount)
        return refund


# =============================================================================
# FACTORY
# =============================================================================

def create_payment_gateway(config: Optional[CommerceSettings] = None) -> IPaymentGateway:
    """Stripe when a real secret key is configured, the mock otherwise"""
    config = config or default_settings
    logger = structlog.get_logger().bind(component="gateway_factory")
    if config.stripe_configured:
        logger.info("payment_gateway_selected", gateway="stripe")
        return StripePaymentGateway(
            api_key=config.STRIPE_SECRET_KEY,
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
            tolerance=config.WEBHOOK_TOLERANCE_SECONDS,
        )
    logger.warning("payment_gateway_selected", gateway="mock", reason="stripe_not_configured")
    return MockPaymentGateway(
        webhook_secret=config.STRIPE_WEBHOOK_SECRET,
        tolerance=config.WEBHOOK_TOLERANCE_SECONDS,
        frontend_url=config.FRONTEND_URL,
    )
