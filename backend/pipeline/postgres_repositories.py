"""
PostgreSQL repositories (asyncpg).

Each record is stored as a JSONB document beside the columns that carry a
uniqueness guarantee or an atomic delta:

- orders.payment_id / checkout_session_id are UNIQUE; insert_if_absent uses
  ON CONFLICT DO NOTHING and returns the existing row on conflict
- catalog_items.stock is changed with a bounded UPDATE (stock + delta >= 0)
- coupons.used_count is incremented in place
- refund_requests has a partial unique index over active statuses

`db` is the database.Database pool manager (or anything with the same
execute / fetch_one / fetch_all / fetch_value coroutines).
"""

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg
import structlog

from database import Database, log_event
from pipeline.errors import ConcurrentUpdate, RefundAlreadyRequested
from pipeline.repositories import (
    IAuditLog,
    ICatalogRepository,
    ICouponRepository,
    IOrderRepository,
    IPendingCheckoutRepository,
    IRefundRepository,
    ITransactionRepository,
)
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


logger = structlog.get_logger().bind(component="postgres_repositories")


def _doc(value: Any) -> dict:
    return json.loads(value) if isinstance(value, str) else dict(value)


# =============================================================================
# CATALOG
# =============================================================================

class PostgresCatalogRepository(ICatalogRepository):

    def __init__(self, kind: ProductKind, db=Database):
        self.kind = kind
        self.db = db

    @staticmethod
    def _row_to_item(row) -> CatalogItem:
        return CatalogItem(
            id=row["id"],
            kind=ProductKind(row["kind"]),
            name=row["name"],
            price=float(row["price"]),
            stock=row["stock"],
            sold=row["sold"],
            image=row["image"],
        )

    async def get(self, ref: str) -> Optional[CatalogItem]:
        row = await self.db.fetch_one(
            "SELECT * FROM catalog_items WHERE kind = $1 AND id = $2",
            self.kind.value, ref,
        )
        return self._row_to_item(row) if row else None

    async def save(self, item: CatalogItem) -> CatalogItem:
        await self.db.execute(
            """
            INSERT INTO catalog_items (kind, id, name, price, stock, sold, image)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (kind, id) DO UPDATE
            SET name = EXCLUDED.name, price = EXCLUDED.price, stock = EXCLUDED.stock,
                sold = EXCLUDED.sold, image = EXCLUDED.image
            """,
            self.kind.value, item.id, item.name, item.price, item.stock, item.sold, item.image,
        )
        return item

    async def adjust_stock(self, ref: str, delta: int, sold_delta: int = 0) -> bool:
        result = await self.db.execute(
            """
            UPDATE catalog_items
            SET stock = stock + $3, sold = GREATEST(sold + $4, 0)
            WHERE kind = $1 AND id = $2 AND stock + $3 >= 0
            """,
            self.kind.value, ref, delta, sold_delta,
        )
        return result == "UPDATE 1"


# =============================================================================
# ORDERS
# =============================================================================

class PostgresOrderRepository(IOrderRepository):

    def __init__(self, db=Database):
        self.db = db

    @staticmethod
    def _row_to_order(row) -> Optional[Order]:
        return Order.model_validate(_doc(row["data"])) if row else None

    @staticmethod
    def _params(order: Order) -> tuple:
        return (
            order.id,
            order.order_number,
            order.user_id,
            order.payment_id,
            order.checkout_session_id,
            order.status.value,
            order.is_paid,
            order.fulfillment.complete,
            order.total_amount,
            order.model_dump_json(),
            order.created_at,
            order.updated_at,
            order.version,
        )

    async def get(self, order_id: str) -> Optional[Order]:
        return self._row_to_order(await self.db.fetch_one("SELECT data FROM orders WHERE id = $1", order_id))

    async def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        return self._row_to_order(
            await self.db.fetch_one("SELECT data FROM orders WHERE payment_id = $1", payment_id))

    async def get_by_session_id(self, session_id: str) -> Optional[Order]:
        return self._row_to_order(
            await self.db.fetch_one("SELECT data FROM orders WHERE checkout_session_id = $1", session_id))

    async def insert_if_absent(self, order: Order) -> tuple[Order, bool]:
        inserted = await self.db.fetch_value(
            """
            INSERT INTO orders
            (id, order_number, user_id, payment_id, checkout_session_id, status,
             is_paid, fulfillment_complete, total_amount, data, created_at, updated_at, version)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            ON CONFLICT DO NOTHING
            RETURNING id
            """,
            *self._params(order),
        )
        if inserted:
            return order, True

        existing = None
        if order.payment_id:
            existing = await self.get_by_payment_id(order.payment_id)
        if existing is None and order.checkout_session_id:
            existing = await self.get_by_session_id(order.checkout_session_id)
        if existing is None:
            existing = await self.get(order.id)
        logger.info("order_insert_conflict", payment_id=order.payment_id, existing_id=existing.id if existing else None)
        return existing, False

    async def save(self, order: Order, expected_version: Optional[int] = None) -> Order:
        if expected_version is None:
            await self.db.execute(
                """
                INSERT INTO orders
                (id, order_number, user_id, payment_id, checkout_session_id, status,
                 is_paid, fulfillment_complete, total_amount, data, created_at, updated_at, version)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                ON CONFLICT (id) DO UPDATE
                SET status = EXCLUDED.status,
                    payment_id = EXCLUDED.payment_id,
                    is_paid = EXCLUDED.is_paid,
                    fulfillment_complete = EXCLUDED.fulfillment_complete,
                    total_amount = EXCLUDED.total_amount,
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at,
                    version = EXCLUDED.version
                """,
                *self._params(order),
            )
            return order

        order = order.model_copy(update={"version": expected_version + 1})
        updated = await self.db.fetch_value(
            """
            UPDATE orders
            SET status = $2,
                payment_id = $3,
                is_paid = $4,
                fulfillment_complete = $5,
                total_amount = $6,
                data = $7,
                updated_at = $8,
                version = $9
            WHERE id = $1 AND version = $10
            RETURNING id
            """,
            order.id,
            order.status.value,
            order.payment_id,
            order.is_paid,
            order.fulfillment.complete,
            order.total_amount,
            order.model_dump_json(),
            order.updated_at,
            order.version,
            expected_version,
        )
        if not updated:
            raise ConcurrentUpdate(
                "Order was modified concurrently",
                details={"order_id": order.id, "expected_version": expected_version},
            )
        return order

    async def list_by_user(self, user_id: str) -> list[Order]:
        rows = await self.db.fetch_all(
            "SELECT data FROM orders WHERE user_id = $1 ORDER BY created_at DESC", user_id)
        return [self._row_to_order(row) for row in rows]

    async def list_all(
        self, status: Optional[OrderStatus] = None, skip: int = 0, limit: int = 20
    ) -> tuple[list[Order], int]:
        if status is not None:
            rows = await self.db.fetch_all(
                "SELECT data FROM orders WHERE status = $1 ORDER BY created_at DESC OFFSET $2 LIMIT $3",
                status.value, skip, limit,
            )
            total = await self.db.fetch_value("SELECT COUNT(*) FROM orders WHERE status = $1", status.value)
        else:
            rows = await self.db.fetch_all(
                "SELECT data FROM orders ORDER BY created_at DESC OFFSET $1 LIMIT $2", skip, limit)
            total = await self.db.fetch_value("SELECT COUNT(*) FROM orders")
        return [self._row_to_order(row) for row in rows], int(total or 0)

    async def find_unfinished(self, older_than: datetime, limit: int = 10) -> list[Order]:
        rows = await self.db.fetch_all(
            """
            SELECT data FROM orders
            WHERE is_paid AND NOT fulfillment_complete AND updated_at <= $1
            ORDER BY created_at
            LIMIT $2
            """,
            older_than, limit,
        )
        return [self._row_to_order(row) for row in rows]

    async def stats(self) -> dict:
        rows = await self.db.fetch_all(
            """
            SELECT status, COUNT(*) AS count,
                   COALESCE(SUM(total_amount) FILTER (WHERE status NOT IN ('cancelled', 'refunded')), 0) AS revenue
            FROM orders
            GROUP BY status
            """
        )
        counts = {status.value: 0 for status in OrderStatus}
        revenue = 0.0
        for row in rows:
            counts[row["status"]] = row["count"]
            revenue += float(row["revenue"])
        return {"total_orders": sum(counts.values()), "by_status": counts, "total_revenue": round(revenue, 2)}


# =============================================================================
# COUPONS
# =============================================================================

class PostgresCouponRepository(ICouponRepository):

    def __init__(self, db=Database):
        self.db = db

    @staticmethod
    def _row_to_coupon(row) -> Optional[Coupon]:
        if not row:
            return None
        data = _doc(row["data"])
        data["used_count"] = row["used_count"]
        return Coupon.model_validate(data)

    async def get(self, code: str) -> Optional[Coupon]:
        return self._row_to_coupon(await self.db.fetch_one(
            "SELECT used_count, data FROM coupons WHERE code = $1", normalize_coupon_code(code)))

    async def save(self, coupon: Coupon) -> Coupon:
        await self.db.execute(
            """
            INSERT INTO coupons (code, used_count, data) VALUES ($1, $2, $3)
            ON CONFLICT (code) DO UPDATE SET used_count = EXCLUDED.used_count, data = EXCLUDED.data
            """,
            coupon.code, coupon.used_count, coupon.model_dump_json(),
        )
        return coupon

    async def increment_usage(self, code: str) -> Optional[Coupon]:
        return self._row_to_coupon(await self.db.fetch_one(
            "UPDATE coupons SET used_count = used_count + 1 WHERE code = $1 RETURNING used_count, data",
            normalize_coupon_code(code),
        ))


# =============================================================================
# TRANSACTIONS
# =============================================================================

class PostgresTransactionRepository(ITransactionRepository):

    def __init__(self, db=Database):
        self.db = db

    async def append(self, transaction: Transaction) -> Transaction:
        await self.db.execute(
            """
            INSERT INTO transactions (id, user_id, order_id, amount, data, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            transaction.id, transaction.user_id, transaction.order_id, transaction.amount,
            transaction.model_dump_json(), transaction.created_at,
        )
        return transaction

    async def list_by_order(self, order_id: str) -> list[Transaction]:
        rows = await self.db.fetch_all(
            "SELECT data FROM transactions WHERE order_id = $1 ORDER BY created_at", order_id)
        return [Transaction.model_validate(_doc(row["data"])) for row in rows]

    async def list_by_user(self, user_id: str) -> list[Transaction]:
        rows = await self.db.fetch_all(
            "SELECT data FROM transactions WHERE user_id = $1 ORDER BY created_at", user_id)
        return [Transaction.model_validate(_doc(row["data"])) for row in rows]


# =============================================================================
# REFUND REQUESTS
# =============================================================================

class PostgresRefundRepository(IRefundRepository):

    def __init__(self, db=Database):
        self.db = db

    @staticmethod
    def _row_to_refund(row) -> Optional[RefundRequest]:
        return RefundRequest.model_validate(_doc(row["data"])) if row else None

    async def get(self, refund_id: str) -> Optional[RefundRequest]:
        return self._row_to_refund(
            await self.db.fetch_one("SELECT data FROM refund_requests WHERE id = $1", refund_id))

    async def create_if_no_active(self, refund: RefundRequest) -> RefundRequest:
        try:
            await self.db.execute(
                """
                INSERT INTO refund_requests (id, order_id, status, data, created_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                refund.id, refund.order_id, refund.status.value, refund.model_dump_json(), refund.created_at,
            )
        except asyncpg.UniqueViolationError:
            raise RefundAlreadyRequested("A refund request is already open for this order")
        return refund

    async def save(self, refund: RefundRequest) -> RefundRequest:
        await self.db.execute(
            """
            INSERT INTO refund_requests (id, order_id, status, data, created_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (id) DO UPDATE SET status = EXCLUDED.status, data = EXCLUDED.data
            """,
            refund.id, refund.order_id, refund.status.value, refund.model_dump_json(), refund.created_at,
        )
        return refund

    async def transition(
        self, refund_id: str, from_status: RefundStatus, **changes
    ) -> Optional[RefundRequest]:
        current = await self.get(refund_id)
        if current is None or current.status != from_status:
            return None
        updated = current.model_copy(update=changes)
        moved = await self.db.fetch_value(
            """
            UPDATE refund_requests
            SET status = $3, data = $4
            WHERE id = $1 AND status = $2
            RETURNING id
            """,
            refund_id, from_status.value, updated.status.value, updated.model_dump_json(),
        )
        return updated if moved else None

    async def get_active_for_order(self, order_id: str) -> Optional[RefundRequest]:
        return self._row_to_refund(await self.db.fetch_one(
            """
            SELECT data FROM refund_requests
            WHERE order_id = $1 AND status IN ('pending', 'approved', 'processing')
            """,
            order_id,
        ))

    async def list_by_order(self, order_id: str) -> list[RefundRequest]:
        rows = await self.db.fetch_all(
            "SELECT data FROM refund_requests WHERE order_id = $1 ORDER BY created_at", order_id)
        return [self._row_to_refund(row) for row in rows]


# =============================================================================
# PENDING CHECKOUTS
# =============================================================================

class PostgresPendingCheckoutRepository(IPendingCheckoutRepository):

    def __init__(self, db=Database):
        self.db = db

    @staticmethod
    def _row_to_pending(row) -> Optional[PendingCheckout]:
        if not row:
            return None
        data = _doc(row["data"])
        data["status"] = row["status"]
        return PendingCheckout.model_validate(data)

    async def get(self, session_id: str) -> Optional[PendingCheckout]:
        return self._row_to_pending(await self.db.fetch_one(
            "SELECT status, data FROM pending_checkouts WHERE session_id = $1", session_id))

    async def get_by_ref(self, checkout_ref: str) -> Optional[PendingCheckout]:
        return self._row_to_pending(await self.db.fetch_one(
            "SELECT status, data FROM pending_checkouts WHERE checkout_ref = $1", checkout_ref))

    async def save(self, pending: PendingCheckout) -> PendingCheckout:
        await self.db.execute(
            """
            INSERT INTO pending_checkouts (session_id, checkout_ref, status, data, created_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (session_id) DO UPDATE SET status = EXCLUDED.status, data = EXCLUDED.data
            """,
            pending.session_id, pending.checkout_ref, pending.status.value,
            pending.model_dump_json(), pending.created_at,
        )
        return pending

    async def mark(
        self, session_id: str, status: PendingCheckoutStatus, only_if_open: bool = True
    ) -> Optional[PendingCheckout]:
        guard = "AND status = 'open'" if only_if_open else ""
        await self.db.execute(
            f"""
            UPDATE pending_checkouts
            SET status = $2, data = jsonb_set(data, '{{updated_at}}', to_jsonb($3::text))
            WHERE session_id = $1 {guard}
            """,
            session_id, status.value, utcnow().isoformat(),
        )
        return await self.get(session_id)

    async def list_open_before(self, cutoff: datetime, limit: int = 100) -> list[PendingCheckout]:
        rows = await self.db.fetch_all(
            """
            SELECT status, data FROM pending_checkouts
            WHERE status = 'open' AND created_at <= $1
            ORDER BY created_at
            LIMIT $2
            """,
            cutoff, limit,
        )
        return [self._row_to_pending(row) for row in rows]


# =============================================================================
# AUDIT LOG (The Black Box)
# =============================================================================

class PostgresAuditLog(IAuditLog):
    """Audit entries persisted to system_events"""

    def __init__(self, db=Database):
        self.db = db

    async def append(self, entry: AuditLogEntry) -> None:
        await log_event(
            correlation_id=entry.correlation_id,
            event_type=entry.event_type.value,
            payload=entry.model_dump(mode="json"),
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            actor=entry.actor,
            event_id=entry.log_id,
            timestamp=entry.timestamp,
        )

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        rows = await self.db.fetch_all(
            "SELECT payload FROM system_events WHERE correlation_id = $1 ORDER BY timestamp", correlation_id)
        return [AuditLogEntry.model_validate(_doc(row["payload"])) for row in rows]

    async def get_by_entity(self, entity_type: str, entity_id: str) -> list[AuditLogEntry]:
        rows = await self.db.fetch_all(
            """
            SELECT payload FROM system_events
            WHERE entity_type = $1 AND entity_id = $2
            ORDER BY timestamp
            """,
            entity_type, entity_id,
        )
        return [AuditLogEntry.model_validate(_doc(row["payload"])) for row in rows]
