"""
Persistence interfaces for the order & payment pipeline.

Every store is an async ABC with an in-memory implementation guarded by an
asyncio.Lock (used by default and in tests). PostgreSQL implementations live
in pipeline.postgres_repositories. Stock and coupon usage are only ever
changed through signed-delta operations, never by writing a read value back.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Optional

from pipeline.errors import ConcurrentUpdate, NotFound, RefundAlreadyRequested
from schemas.commerce import (
    AuditLogEntry,
    CatalogItem,
    Coupon,
    Order,
    OrderStatus,
    PendingCheckout,
    PendingCheckoutStatus,
    ProductKind,
    RefundRequest,
    RefundStatus,
    Transaction,
    normalize_coupon_code,
    utcnow,
)


UPDATE_RETRIES = 5


# =============================================================================
# INTERFACES
# =============================================================================

class ICatalogRepository(ABC):
    """Stock-bearing catalog of one product kind"""

    kind: ProductKind

    @abstractmethod
    async def get(self, ref: str) -> Optional[CatalogItem]:
        pass

    @abstractmethod
    async def save(self, item: CatalogItem) -> CatalogItem:
        pass

    @abstractmethod
    async def adjust_stock(self, ref: str, delta: int, sold_delta: int = 0) -> bool:
        """
        Apply a signed stock delta. Decrements are bounded: the change is
        rejected (returns False) when it would drive stock below zero.
        """
        pass


class IOrderRepository(ABC):
    """Order-specific repository interface"""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_session_id(self, session_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def insert_if_absent(self, order: Order) -> tuple[Order, bool]:
        """
        Insert unless an order with the same payment_id (or checkout session)
        exists. Returns (stored_order, created).
        """
        pass

    @abstractmethod
    async def save(self, order: Order, expected_version: Optional[int] = None) -> Order:
        """
        Upsert. With `expected_version` the write is a compare-and-set: it
        lands only while the stored order still carries that version, and
        the stored copy gets version expected_version + 1. Raises
        ConcurrentUpdate otherwise.
        """
        pass

    async def update_fulfillment(self, order_id: str, **flags: bool) -> Optional[Order]:
        """Set fulfillment flags on the stored order, leaving every other field as stored"""
        for _ in range(UPDATE_RETRIES):
            current = await self.get(order_id)
            if current is None:
                return None
            updated = current.model_copy(update={
                "fulfillment": current.fulfillment.model_copy(update=flags),
                "updated_at": utcnow(),
            })
            try:
                return await self.save(updated, expected_version=current.version)
            except ConcurrentUpdate:
                continue
        raise ConcurrentUpdate("Order kept changing during fulfillment update", details={"order_id": order_id})

    @abstractmethod
    async def list_by_user(self, user_id: str) -> list[Order]:
        pass

    @abstractmethod
    async def list_all(
        self, status: Optional[OrderStatus] = None, skip: int = 0, limit: int = 20
    ) -> tuple[list[Order], int]:
        pass

    @abstractmethod
    async def find_unfinished(self, older_than: datetime, limit: int = 10) -> list[Order]:
        """Paid orders whose post-creation fulfillment steps are incomplete"""
        pass

    @abstractmethod
    async def stats(self) -> dict:
        pass


class ICouponRepository(ABC):

    @abstractmethod
    async def get(self, code: str) -> Optional[Coupon]:
        pass

    @abstractmethod
    async def save(self, coupon: Coupon) -> Coupon:
        pass

    @abstractmethod
    async def increment_usage(self, code: str) -> Optional[Coupon]:
        """used_count += 1 as a single delta operation"""
        pass


class ITransactionRepository(ABC):

    @abstractmethod
    async def append(self, transaction: Transaction) -> Transaction:
        pass

    @abstractmethod
    async def list_by_order(self, order_id: str) -> list[Transaction]:
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str) -> list[Transaction]:
        pass


class IRefundRepository(ABC):

    @abstractmethod
    async def get(self, refund_id: str) -> Optional[RefundRequest]:
        pass

    @abstractmethod
    async def create_if_no_active(self, refund: RefundRequest) -> RefundRequest:
        """Raises RefundAlreadyRequested when the order has an active request"""
        pass

    @abstractmethod
    async def save(self, refund: RefundRequest) -> RefundRequest:
        pass

    @abstractmethod
    async def transition(
        self, refund_id: str, from_status: RefundStatus, **changes
    ) -> Optional[RefundRequest]:
        """
        Apply `changes` only if the stored request is still in `from_status`.
        Returns the updated request, or None when it is missing or has moved on.
        """
        pass

    @abstractmethod
    async def get_active_for_order(self, order_id: str) -> Optional[RefundRequest]:
        pass

    @abstractmethod
    async def list_by_order(self, order_id: str) -> list[RefundRequest]:
        pass


class IPendingCheckoutRepository(ABC):

    @abstractmethod
    async def get(self, session_id: str) -> Optional[PendingCheckout]:
        pass

    @abstractmethod
    async def get_by_ref(self, checkout_ref: str) -> Optional[PendingCheckout]:
        pass

    @abstractmethod
    async def save(self, pending: PendingCheckout) -> PendingCheckout:
        pass

    @abstractmethod
    async def mark(
        self, session_id: str, status: PendingCheckoutStatus, only_if_open: bool = True
    ) -> Optional[PendingCheckout]:
        pass

    @abstractmethod
    async def list_open_before(self, cutoff: datetime, limit: int = 100) -> list[PendingCheckout]:
        pass


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass

    @abstractmethod
    async def get_by_entity(self, entity_type: str, entity_id: str) -> list[AuditLogEntry]:
        pass


# =============================================================================
# CATALOG REGISTRY (product-kind dispatch)
# =============================================================================

class CatalogRegistry:
    """Resolves a ProductKind to the catalog repository that owns it."""

    def __init__(self, catalogs: Optional[dict[ProductKind, ICatalogRepository]] = None):
        self._catalogs = catalogs or {
            ProductKind.PRODUCT: InMemoryCatalogRepository(ProductKind.PRODUCT),
            ProductKind.ACCESSORY: InMemoryCatalogRepository(ProductKind.ACCESSORY),
        }

    def for_kind(self, kind: ProductKind) -> ICatalogRepository:
        try:
            return self._catalogs[kind]
        except KeyError:
            raise NotFound(f"Unknown product type: {kind}")

    async def get(self, kind: ProductKind, ref: str) -> Optional[CatalogItem]:
        return await self.for_kind(kind).get(ref)

    async def adjust_stock(self, kind: ProductKind, ref: str, delta: int, sold_delta: int = 0) -> bool:
        return await self.for_kind(kind).adjust_stock(ref, delta, sold_delta)


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryCatalogRepository(ICatalogRepository):

    def __init__(self, kind: ProductKind):
        self.kind = kind
        self._items: dict[str, CatalogItem] = {}
        self._lock = asyncio.Lock()

    async def get(self, ref: str) -> Optional[CatalogItem]:
        async with self._lock:
            return self._items.get(ref)

    async def save(self, item: CatalogItem) -> CatalogItem:
        async with self._lock:
            self._items[item.id] = item
            return item

    async def adjust_stock(self, ref: str, delta: int, sold_delta: int = 0) -> bool:
        async with self._lock:
            item = self._items.get(ref)
            if item is None or item.stock + delta < 0:
                return False
            self._items[ref] = item.model_copy(update={
                "stock": item.stock + delta,
                "sold": max(item.sold + sold_delta, 0),
            })
            return True


class InMemoryOrderRepository(IOrderRepository):
    """Order store with unique payment_id / checkout session enforcement"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._by_payment: dict[str, str] = {}
        self._by_session: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        async with self._lock:
            order_id = self._by_payment.get(payment_id)
            return self._orders.get(order_id) if order_id else None

    async def get_by_session_id(self, session_id: str) -> Optional[Order]:
        async with self._lock:
            order_id = self._by_session.get(session_id)
            return self._orders.get(order_id) if order_id else None

    async def insert_if_absent(self, order: Order) -> tuple[Order, bool]:
        async with self._lock:
            for key, index in ((order.payment_id, self._by_payment), (order.checkout_session_id, self._by_session)):
                if key and key in index:
                    return self._orders[index[key]], False
            self._store(order)
            return order, True

    async def save(self, order: Order, expected_version: Optional[int] = None) -> Order:
        async with self._lock:
            if expected_version is not None:
                current = self._orders.get(order.id)
                if current is None or current.version != expected_version:
                    raise ConcurrentUpdate(
                        "Order was modified concurrently",
                        details={
                            "order_id": order.id,
                            "expected_version": expected_version,
                            "version": current.version if current else None,
                        },
                    )
                order = order.model_copy(update={"version": expected_version + 1})
            self._store(order)
            return order

    def _store(self, order: Order) -> None:
        self._orders[order.id] = order
        if order.payment_id:
            self._by_payment[order.payment_id] = order.id
        if order.checkout_session_id:
            self._by_session[order.checkout_session_id] = order.id

    async def list_by_user(self, user_id: str) -> list[Order]:
        async with self._lock:
            orders = [o for o in self._orders.values() if o.user_id == user_id]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def list_all(
        self, status: Optional[OrderStatus] = None, skip: int = 0, limit: int = 20
    ) -> tuple[list[Order], int]:
        async with self._lock:
            orders = [o for o in self._orders.values() if status is None or o.status == status]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders[skip:skip + limit], len(orders)

    async def find_unfinished(self, older_than: datetime, limit: int = 10) -> list[Order]:
        async with self._lock:
            stuck = [
                o for o in self._orders.values()
                if o.is_paid and not o.fulfillment.complete and o.updated_at <= older_than
            ]
        stuck.sort(key=lambda o: o.created_at)
        return stuck[:limit]

    async def stats(self) -> dict:
        async with self._lock:
            orders = list(self._orders.values())
        counts = {status.value: 0 for status in OrderStatus}
        revenue = 0.0
        for order in orders:
            counts[order.status.value] += 1
            if order.status not in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
                revenue += order.total_amount
        return {"total_orders": len(orders), "by_status": counts, "total_revenue": round(revenue, 2)}


class InMemoryCouponRepository(ICouponRepository):

    def __init__(self):
        self._coupons: dict[str, Coupon] = {}
        self._lock = asyncio.Lock()

    async def get(self, code: str) -> Optional[Coupon]:
        async with self._lock:
            return self._coupons.get(normalize_coupon_code(code))

    async def save(self, coupon: Coupon) -> Coupon:
        async with self._lock:
            self._coupons[coupon.code] = coupon
            return coupon

    async def increment_usage(self, code: str) -> Optional[Coupon]:
        async with self._lock:
            key = normalize_coupon_code(code)
            coupon = self._coupons.get(key)
            if coupon is None:
                return None
            coupon = coupon.model_copy(update={"used_count": coupon.used_count + 1})
            self._coupons[key] = coupon
            return coupon


class InMemoryTransactionRepository(ITransactionRepository):
    """Append-only ledger"""

    def __init__(self):
        self._transactions: list[Transaction] = []
        self._lock = asyncio.Lock()

    async def append(self, transaction: Transaction) -> Transaction:
        async with self._lock:
            self._transactions.append(transaction)
            return transaction

    async def list_by_order(self, order_id: str) -> list[Transaction]:
        async with self._lock:
            return [t for t in self._transactions if t.order_id == order_id]

    async def list_by_user(self, user_id: str) -> list[Transaction]:
        async with self._lock:
            return [t for t in self._transactions if t.user_id == user_id]


class InMemoryRefundRepository(IRefundRepository):

    def __init__(self):
        self._refunds: dict[str, RefundRequest] = {}
        self._lock = asyncio.Lock()

    async def get(self, refund_id: str) -> Optional[RefundRequest]:
        async with self._lock:
            return self._refunds.get(refund_id)

    async def create_if_no_active(self, refund: RefundRequest) -> RefundRequest:
        async with self._lock:
            if any(r.order_id == refund.order_id and r.is_active for r in self._refunds.values()):
                raise RefundAlreadyRequested("A refund request is already open for this order")
            self._refunds[refund.id] = refund
            return refund

    async def save(self, refund: RefundRequest) -> RefundRequest:
        async with self._lock:
            self._refunds[refund.id] = refund
            return refund

    async def transition(
        self, refund_id: str, from_status: RefundStatus, **changes
    ) -> Optional[RefundRequest]:
        async with self._lock:
            current = self._refunds.get(refund_id)
            if current is None or current.status != from_status:
                return None
            updated = current.model_copy(update=changes)
            self._refunds[refund_id] = updated
            return updated

    async def get_active_for_order(self, order_id: str) -> Optional[RefundRequest]:
        async with self._lock:
            for refund in self._refunds.values():
                if refund.order_id == order_id and refund.is_active:
                    return refund
            return None

    async def list_by_order(self, order_id: str) -> list[RefundRequest]:
        async with self._lock:
            refunds = [r for r in self._refunds.values() if r.order_id == order_id]
        return sorted(refunds, key=lambda r: r.created_at)


class InMemoryPendingCheckoutRepository(IPendingCheckoutRepository):

    def __init__(self):
        self._pending: dict[str, PendingCheckout] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> Optional[PendingCheckout]:
        async with self._lock:
            return self._pending.get(session_id)

    async def get_by_ref(self, checkout_ref: str) -> Optional[PendingCheckout]:
        async with self._lock:
            for pending in self._pending.values():
                if pending.checkout_ref == checkout_ref:
                    return pending
            return None

    async def save(self, pending: PendingCheckout) -> PendingCheckout:
        async with self._lock:
            self._pending[pending.session_id] = pending
            return pending

    async def mark(
        self, session_id: str, status: PendingCheckoutStatus, only_if_open: bool = True
    ) -> Optional[PendingCheckout]:
        async with self._lock:
            pending = self._pending.get(session_id)
            if pending is None:
                return None
            if only_if_open and pending.status != PendingCheckoutStatus.OPEN:
                return pending
            pending = pending.model_copy(update={"status": status, "updated_at": utcnow()})
            self._pending[session_id] = pending
            return pending

    async def list_open_before(self, cutoff: datetime, limit: int = 100) -> list[PendingCheckout]:
        async with self._lock:
            stale = [
                p for p in self._pending.values()
                if p.status == PendingCheckoutStatus.OPEN and p.created_at <= cutoff
            ]
        return stale[:limit]


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    async def get_by_entity(self, entity_type: str, entity_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return [e for e in self._logs if e.entity_type == entity_type and e.entity_id == entity_id]
