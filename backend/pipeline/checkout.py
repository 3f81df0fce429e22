"""
Checkout Session Orchestrator
=============================
Turns a cart into a hosted gateway session.

- Cart lines are re-resolved against the catalogs (client prices ignored)
- Coupons are re-validated server-side
- Shipping, tax and total come from pipeline.pricing
- A PendingCheckout keyed by session id is the hand-off to fulfillment;
  gateway metadata carries a compact copy as a fallback

No stock or coupon usage is touched here.
"""

import json
import uuid
from datetime import datetime, timedelta
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from pipeline.audit import AuditTrail
from pipeline.cart import CartValidator
from pipeline.coupons import CouponEngine
from pipeline.errors import FulfillmentError, ValidationError
from pipeline.gateway import CheckoutSessionRequest, GatewayLineItem, GatewaySession, IPaymentGateway
from pipeline.pricing import PriceBreakdown, compute_totals, to_minor_units
from pipeline.repositories import (
    CatalogRegistry,
    IPendingCheckoutRepository,
    InMemoryPendingCheckoutRepository,
)
from pipeline.settings import CommerceSettings, settings as default_settings
from schemas.commerce import (
    AuditEventType,
    CartLine,
    OrderItem,
    PendingCheckout,
    ProductKind,
    ShippingAddress,
    utcnow,
)


GUEST = "guest"


class CheckoutRequest(BaseModel):
    items: list[CartLine] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    coupon_code: Optional[str] = None
    shipping_fee: Optional[float] = Field(None, ge=0)
    terms_accepted: bool = False


class CheckoutResult(BaseModel):
    session_id: str
    url: Optional[str]
    expires_at: datetime
    totals: PriceBreakdown
    coupon_code: Optional[str] = None


# =============================================================================
# METADATA CODEC
# =============================================================================

def encode_items(items: list[OrderItem]) -> str:
    return ";".join(
        f"{item.product_ref}|{item.product_type.value}|{item.quantity}|{item.price:.2f}"
        for item in items
    )


def decode_items(value: str) -> list[tuple[str, ProductKind, int, float]]:
    lines = []
    for entry in filter(None, value.split(";")):
        ref, kind, qty, price = entry.split("|")
        lines.append((ref, ProductKind(kind), int(qty), float(price)))
    return lines


def encode_metadata(
    *,
    checkout_ref: str,
    user_id: Optional[str],
    email: str,
    items: list[OrderItem],
    address: ShippingAddress,
    totals: PriceBreakdown,
    coupon_code: Optional[str],
    limit: int,
) -> dict[str, str]:
    """
    Compact string-only snapshot of the cart. Values longer than `limit`
    are dropped and flagged rather than cut mid-entry.
    """
    metadata = {
        "checkout_ref": checkout_ref,
        "user_id": user_id or GUEST,
        "email": email,
        "subtotal": f"{totals.subtotal:.2f}",
        "shipping_fee": f"{totals.shipping_fee:.2f}",
        "tax": f"{totals.tax:.2f}",
        "discount": f"{totals.discount:.2f}",
        "coupon_code": coupon_code or "",
    }
    compact_items = encode_items(items)
    if len(compact_items) > limit:
        metadata["items"] = ""
        metadata["items_truncated"] = "true"
    else:
        metadata["items"] = compact_items
    address_json = address.model_dump_json()
    if len(address_json) > limit:
        metadata["shipping_address"] = ""
        metadata["address_truncated"] = "true"
    else:
        metadata["shipping_address"] = address_json
    return metadata


async def pending_from_metadata(session: GatewaySession, catalogs: CatalogRegistry) -> PendingCheckout:
    """
    Rebuild the hand-off record from session metadata when no PendingCheckout
    was persisted. Names and images are taken from the catalog; the unit price
    is the one the customer was charged.
    """
    meta = session.metadata
    if meta.get("items_truncated") == "true" or not meta.get("items"):
        raise FulfillmentError(f"Cannot reconstruct order for session {session.id}: item list unavailable")
    if meta.get("address_truncated") == "true" or not meta.get("shipping_address"):
        raise FulfillmentError(f"Cannot reconstruct order for session {session.id}: address unavailable")

    items = []
    for ref, kind, quantity, price in decode_items(meta["items"]):
        record = await catalogs.get(kind, ref)
        items.append(OrderItem(
            product_ref=ref,
            product_type=kind,
            name=record.name if record else ref,
            price=price,
            quantity=quantity,
            image=record.image if record else None,
        ))

    user_id = meta.get("user_id")
    subtotal = float(meta.get("subtotal", "0"))
    shipping_fee = float(meta.get("shipping_fee", "0"))
    discount = float(meta.get("discount", "0"))
    return PendingCheckout(
        session_id=session.id,
        checkout_ref=meta.get("checkout_ref") or session.id,
        user_id=None if user_id in (None, "", GUEST) else user_id,
        email=meta.get("email") or session.customer_email or "",
        items=items,
        shipping_address=ShippingAddress.model_validate(json.loads(meta["shipping_address"])),
        subtotal=subtotal,
        shipping_fee=shipping_fee,
        tax=float(meta.get("tax", "0")),
        discount_amount=discount,
        coupon_code=meta.get("coupon_code") or None,
        total_amount=round(max(subtotal + shipping_fee - discount, 0.0), 2),
    )


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class CheckoutOrchestrator:

    def __init__(
        self,
        gateway: IPaymentGateway,
        validator: Optional[CartValidator] = None,
        coupons: Optional[CouponEngine] = None,
        pending: Optional[IPendingCheckoutRepository] = None,
        audit: Optional[AuditTrail] = None,
        config: Optional[CommerceSettings] = None,
    ):
        self.gateway = gateway
        self.validator = validator or CartValidator()
        self.coupons = coupons or CouponEngine()
        self.pending = pending or InMemoryPendingCheckoutRepository()
        self.audit = audit or AuditTrail()
        self.config = config or default_settings
        self._logger = structlog.get_logger().bind(component="checkout_orchestrator")

    async def create_session(
        self,
        request: CheckoutRequest,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> CheckoutResult:
        if not request.terms_accepted:
            raise ValidationError("You must accept the terms and conditions to proceed")

        cart = await self.validator.validate(request.items)

        discount = 0.0
        coupon_code = None
        if request.coupon_code and request.coupon_code.strip():
            quote = await self.coupons.validate(request.coupon_code, cart.subtotal)
            discount = quote.discount
            coupon_code = quote.code

        totals = compute_totals(cart.subtotal, discount, request.shipping_fee)
        email = user_email or request.shipping_address.email
        checkout_ref = str(uuid.uuid4())
        expires_at = utcnow() + timedelta(minutes=self.config.CHECKOUT_SESSION_TTL_MINUTES)

        log = self._logger.bind(checkout_ref=checkout_ref, user_id=user_id or GUEST)
        log.info("checkout_initiated", lines=len(cart.items), subtotal=totals.subtotal,
                 discount=totals.discount, total=totals.total)

        line_items = [
            GatewayLineItem(
                name=item.name,
                unit_amount=to_minor_units(item.price),
                quantity=item.quantity,
                image=item.image,
            )
            for item in cart.items
        ]
        if totals.shipping_fee > 0:
            line_items.append(GatewayLineItem(name="Shipping Fee", unit_amount=to_minor_units(totals.shipping_fee)))

        session = await self.gateway.create_session(CheckoutSessionRequest(
            line_items=line_items,
            customer_email=email,
            metadata=encode_metadata(
                checkout_ref=checkout_ref,
                user_id=user_id,
                email=email,
                items=cart.items,
                address=request.shipping_address,
                totals=totals,
                coupon_code=coupon_code,
                limit=self.config.METADATA_VALUE_LIMIT,
            ),
            success_url=f"{self.config.FRONTEND_URL}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.config.FRONTEND_URL}/checkout",
            currency=self.config.CURRENCY,
            discount_amount=to_minor_units(totals.discount),
            discount_label=f"Coupon {coupon_code}" if coupon_code else None,
            expires_at=expires_at,
            idempotency_key=f"checkout_{checkout_ref}",
        ))

        await self.pending.save(PendingCheckout(
            session_id=session.id,
            checkout_ref=checkout_ref,
            user_id=user_id,
            email=email,
            items=cart.items,
            shipping_address=request.shipping_address,
            subtotal=totals.subtotal,
            shipping_fee=totals.shipping_fee,
            tax=totals.tax,
            discount_amount=totals.discount,
            coupon_code=coupon_code,
            total_amount=totals.total,
        ))

        await self.audit.emit(
            event_type=AuditEventType.SESSION_CREATED,
            entity_type="checkout_session",
            entity_id=session.id,
            correlation_id=session.id,
            new_state={"session_id": session.id, "total": totals.total},
            metadata={"checkout_ref": checkout_ref, "coupon_code": coupon_code, "gateway": self.gateway.name},
            actor="user" if user_id else "guest",
        )
        log.info("checkout_created", session_id=session.id, expires_at=expires_at.isoformat())

        return CheckoutResult(
            session_id=session.id,
            url=session.url,
            expires_at=expires_at,
            totals=totals,
            coupon_code=coupon_code,
        )
