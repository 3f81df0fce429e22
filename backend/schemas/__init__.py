# schemas/__init__.py
# ============================================================================
# HANDYLAND MARKETPLACE — SCHEMAS MODULE
# ============================================================================
# Persisted commerce records and published domain events
# ============================================================================

from schemas.commerce import (
    ProductKind,
    OrderStatus,
    PaymentStatus,
    PaymentMethod,
    DiscountType,
    TransactionStatus,
    RefundStatus,
    PendingCheckoutStatus,
    AuditEventType,
    CatalogItem,
    CartLine,
    OrderItem,
    ShippingAddress,
    StatusHistoryEntry,
    FulfillmentProgress,
    Order,
    Coupon,
    Transaction,
    RefundItem,
    RefundRequest,
    PendingCheckout,
    AuditLogEntry,
    utcnow,
)

from schemas.event_definitions import (
    EventType,
    BaseEvent,
)

__all__ = [
    # Enums
    "ProductKind",
    "OrderStatus",
    "PaymentStatus",
    "PaymentMethod",
    "DiscountType",
    "TransactionStatus",
    "RefundStatus",
    "PendingCheckoutStatus",
    "AuditEventType",
    # Records
    "CatalogItem",
    "CartLine",
    "OrderItem",
    "ShippingAddress",
    "StatusHistoryEntry",
    "FulfillmentProgress",
    "Order",
    "Coupon",
    "Transaction",
    "RefundItem",
    "RefundRequest",
    "PendingCheckout",
    "AuditLogEntry",
    "utcnow",
    # Events
    "EventType",
    "BaseEvent",
]
