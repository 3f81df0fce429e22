# schemas/commerce.py
# ============================================================================
# HANDYLAND MARKETPLACE — COMMERCE DOMAIN MODELS
# ============================================================================
# Persisted records of the order & payment pipeline: orders, coupons,
# transactions, refund requests and pending checkouts. Catalog records are
# owned by the catalog service; only the fields the pipeline reads live here.
# ============================================================================

import hashlib
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    """Naive UTC timestamp used for every stored datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class ProductKind(str, Enum):
    """Catalog the line item belongs to."""
    PRODUCT = "Product"
    ACCESSORY = "Accessory"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURN_REQUESTED = "return_requested"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CARD = "card"
    CASH = "cash"
    PAYPAL = "paypal"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    PROCESSED = "processed"


ACTIVE_REFUND_STATUSES = frozenset({
    RefundStatus.PENDING,
    RefundStatus.APPROVED,
    RefundStatus.PROCESSING,
})


class PendingCheckoutStatus(str, Enum):
    OPEN = "open"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    FAILED = "failed"


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    WEBHOOK_RECEIVED = "webhook.received"
    SESSION_CREATED = "session.created"
    SESSION_EXPIRED = "session.expired"
    REFUND_REQUESTED = "refund.requested"
    REFUND_PROCESSED = "refund.processed"


# ============================================================================
# SECTION 2: CATALOG VIEW
# ============================================================================

class CatalogItem(BaseModel):
    """Read model of a Product or Accessory record."""
    id: str
    kind: ProductKind
    name: str
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    sold: int = 0
    image: Optional[str] = None


# ============================================================================
# SECTION 3: CART & ORDER LINES
# ============================================================================

class CartLine(BaseModel):
    """Client-supplied cart entry. Prices sent by the client are ignored."""
    product_ref: str = Field(..., min_length=1)
    product_type: ProductKind = ProductKind.PRODUCT
    quantity: int = Field(..., ge=1)


class OrderItem(BaseModel):
    """Snapshot of a catalog item captured when the order is created."""
    product_ref: str
    product_type: ProductKind
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None

    @computed_field
    @property
    def line_total(self) -> float:
        return round(self.price * self.quantity, 2)


PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: str
    phone: str
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = "Germany"

    @field_validator("email")
    @classmethod
    def _check_email(cls, v: str) -> str:
        v = v.strip()
        if not EMAIL_PATTERN.match(v):
            raise ValueError(f"{v} is not a valid email address")
        return v.lower()

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, v: str) -> str:
        v = v.replace(" ", "")
        if not PHONE_PATTERN.match(v):
            raise ValueError(f"{v} is not a valid phone number")
        return v


# ============================================================================
# SECTION 4: ORDER
# ============================================================================

class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime = Field(default_factory=utcnow)
    note: Optional[str] = None


class FulfillmentProgress(BaseModel):
    """Side effects applied after a paid order was materialised."""
    transaction_recorded: bool = False
    stock_applied: bool = False
    coupon_redeemed: bool = False
    confirmation_sent: bool = False

    @property
    def complete(self) -> bool:
        return (
            self.transaction_recorded
            and self.stock_applied
            and self.coupon_redeemed
            and self.confirmation_sent
        )


class Order(BaseModel):
    """Core order entity"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_number: str
    user_id: Optional[str] = None

    items: list[OrderItem]
    total_amount: float = Field(..., ge=0)
    tax: float = 0.0
    shipping_fee: float = 0.0
    discount_amount: float = 0.0
    coupon_code: Optional[str] = None

    shipping_address: ShippingAddress
    payment_method: PaymentMethod = PaymentMethod.CARD
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    payment_id: Optional[str] = None
    checkout_session_id: Optional[str] = None

    status: OrderStatus = OrderStatus.PENDING
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)

    fulfillment: FulfillmentProgress = Field(default_factory=FulfillmentProgress)
    stock_restored: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    @staticmethod
    def generate_order_number(seed: str, when: Optional[datetime] = None) -> str:
        when = when or utcnow()
        h = hashlib.sha256(f"order:{seed}".encode()).hexdigest()[:8].upper()
        return f"HL-{when.strftime('%Y%m%d')}-{h}"

    @property
    def customer_email(self) -> str:
        return self.shipping_address.email

    def items_total(self) -> float:
        return round(sum(item.price * item.quantity for item in self.items), 2)

    def expected_total(self) -> float:
        """Gross pricing: tax is included in item prices."""
        return round(max(self.items_total() + self.shipping_fee - self.discount_amount, 0.0), 2)

    def transition_to(self, new_status: OrderStatus, note: Optional[str] = None) -> "Order":
        """Immutable state transition with history entry"""
        now = utcnow()
        return self.model_copy(update={
            "status": new_status,
            "status_history": [*self.status_history, StatusHistoryEntry(status=new_status, timestamp=now, note=note)],
            "updated_at": now,
            "version": self.version + 1,
        })

    def previous_status(self) -> Optional[OrderStatus]:
        """Status held before the latest history entry"""
        if len(self.status_history) < 2:
            return None
        return self.status_history[-2].status


# ============================================================================
# SECTION 5: COUPON
# ============================================================================

class Coupon(BaseModel):
    code: str
    discount_type: DiscountType = DiscountType.PERCENTAGE
    amount: float = Field(..., ge=0)
    min_order_amount: float = Field(0.0, ge=0)
    max_discount: Optional[float] = None
    valid_until: Optional[datetime] = None
    usage_limit: int = Field(0, ge=0)  # 0 = unlimited
    used_count: int = Field(0, ge=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, v: str) -> str:
        return normalize_coupon_code(v)

    @field_validator("valid_until")
    @classmethod
    def _normalize_expiry(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(v)

    @property
    def exhausted(self) -> bool:
        return self.usage_limit > 0 and self.used_count >= self.usage_limit


def normalize_coupon_code(code: str) -> str:
    return code.strip().upper()


# ============================================================================
# SECTION 6: TRANSACTION (immutable ledger entry)
# ============================================================================

class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    order_id: str
    amount: float
    status: TransactionStatus = TransactionStatus.COMPLETED
    payment_method: PaymentMethod = PaymentMethod.CARD
    payment_id: Optional[str] = None
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# SECTION 7: REFUND REQUEST
# ============================================================================

class RefundItem(BaseModel):
    product_ref: str
    quantity: int = Field(1, ge=1)
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    order_id: str
    reason: str = Field(..., min_length=1)
    items: list[RefundItem] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)
    status: RefundStatus = RefundStatus.PENDING
    admin_comments: Optional[str] = None
    refund_amount: Optional[float] = None
    previous_order_status: Optional[OrderStatus] = None
    gateway_refund_id: Optional[str] = None
    gateway_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_REFUND_STATUSES


# ============================================================================
# SECTION 8: PENDING CHECKOUT (hand-off between session and confirmation)
# ============================================================================

class PendingCheckout(BaseModel):
    session_id: str
    checkout_ref: str
    user_id: Optional[str] = None
    email: str
    items: list[OrderItem]
    shipping_address: ShippingAddress
    subtotal: float
    shipping_fee: float
    tax: float
    discount_amount: float = 0.0
    coupon_code: Optional[str] = None
    total_amount: float
    status: PendingCheckoutStatus = PendingCheckoutStatus.OPEN
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# SECTION 9: AUDIT
# ============================================================================

class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "order", "payment", "webhook", "refund", "checkout_session"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"  # "system", "webhook", "user", "admin"
