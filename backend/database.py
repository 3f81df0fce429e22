"""
Database Module - The Black Box
================================
PostgreSQL persistence for the HandyLand order & payment pipeline.

This module provides:
- AsyncPG connection pool for PostgreSQL
- Commerce schema migrations (catalog, orders, coupons, transactions,
  refund requests, pending checkouts)
- The Black Box (system_events) for the unified audit trail

Records are stored as JSONB documents next to the columns that need
indexing or atomic updates (payment_id, stock, used_count, status).
"""

import os
import json
from uuid import uuid4
from datetime import datetime
from typing import Dict, Any, Optional, List, Literal
from contextlib import asynccontextmanager

import structlog
import asyncpg

# Configure logger
logger = structlog.get_logger().bind(component="database")


# =============================================================================
# CONFIGURATION
# =============================================================================

class DatabaseConfig:
    """Database configuration from environment"""

    # Empty means the service runs on the in-memory repositories
    DATABASE_URL = os.getenv("DATABASE_URL", "")
    MIN_POOL_SIZE = int(os.getenv("DB_MIN_POOL_SIZE", "2"))
    MAX_POOL_SIZE = int(os.getenv("DB_MAX_POOL_SIZE", "10"))


config = DatabaseConfig()


Severity = Literal["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False
    _dsn: Optional[str] = None

    @classmethod
    async def initialize(cls, dsn: Optional[str] = None):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        cls._dsn = dsn or cls._dsn or config.DATABASE_URL
        try:
            cls._pool = await asyncpg.create_pool(
                cls._dsn,
                min_size=config.MIN_POOL_SIZE,
                max_size=config.MAX_POOL_SIZE,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            # Run migrations on startup
            await cls._run_migrations()

        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            await cls.initialize()

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        """Execute a query"""
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        """Fetch a single row"""
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        """Fetch all rows"""
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def fetch_value(cls, query: str, *args) -> Any:
        """Fetch the first column of the first row"""
        async with cls.acquire() as conn:
            return await conn.fetchval(query, *args)

    @classmethod
    async def health_check(cls) -> bool:
        if not cls._initialized:
            return False
        try:
            return await cls.fetch_value("SELECT 1") == 1
        except Exception as e:
            logger.warning("database_health_check_failed", error=str(e))
            return False

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        migrations = [
            # Catalog (one row per product kind + id)
            """
            CREATE TABLE IF NOT EXISTS catalog_items (
                kind VARCHAR(20) NOT NULL,
                id VARCHAR(64) NOT NULL,
                name TEXT NOT NULL,
                price NUMERIC(12, 2) NOT NULL,
                stock INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
                sold INTEGER NOT NULL DEFAULT 0,
                image TEXT,
                PRIMARY KEY (kind, id)
            )
            """,

            # Orders
            """
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(64) PRIMARY KEY,
                order_number VARCHAR(32) NOT NULL,
                user_id VARCHAR(64),
                payment_id VARCHAR(255) UNIQUE,
                checkout_session_id VARCHAR(255) UNIQUE,
                status VARCHAR(20) NOT NULL,
                is_paid BOOLEAN NOT NULL DEFAULT FALSE,
                fulfillment_complete BOOLEAN NOT NULL DEFAULT TRUE,
                total_amount NUMERIC(12, 2) NOT NULL,
                data JSONB NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                version INTEGER NOT NULL DEFAULT 1
            )
            """,

            # Coupons (used_count kept outside the document for delta updates)
            """
            CREATE TABLE IF NOT EXISTS coupons (
                code VARCHAR(64) PRIMARY KEY,
                used_count INTEGER NOT NULL DEFAULT 0,
                data JSONB NOT NULL
            )
            """,

            # Transactions (append-only)
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id VARCHAR(64) PRIMARY KEY,
                user_id VARCHAR(64) NOT NULL,
                order_id VARCHAR(64) NOT NULL,
                amount NUMERIC(12, 2) NOT NULL,
                data JSONB NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
            """,

            # Refund requests
            """
            CREATE TABLE IF NOT EXISTS refund_requests (
                id VARCHAR(64) PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL,
                status VARCHAR(20) NOT NULL,
                data JSONB NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
            """,

            # Pending checkouts (hand-off from checkout to fulfillment)
            """
            CREATE TABLE IF NOT EXISTS pending_checkouts (
                session_id VARCHAR(255) PRIMARY KEY,
                checkout_ref VARCHAR(64) NOT NULL UNIQUE,
                status VARCHAR(20) NOT NULL,
                data JSONB NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
            """,

            # THE BLACK BOX: Unified event log
            """
            CREATE TABLE IF NOT EXISTS system_events (
                id VARCHAR(64) PRIMARY KEY,
                correlation_id VARCHAR(255),
                timestamp TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc'),
                event_type VARCHAR(50) NOT NULL,
                entity_type VARCHAR(50),
                entity_id VARCHAR(255),
                actor VARCHAR(50),
                payload JSONB NOT NULL DEFAULT '{}',
                severity VARCHAR(10) DEFAULT 'INFO'
            )
            """,

            # Optimistic concurrency on order writes
            "ALTER TABLE orders ADD COLUMN IF NOT EXISTS version INTEGER NOT NULL DEFAULT 1",

            # Create indexes
            "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id)",
            "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
            "CREATE INDEX IF NOT EXISTS idx_orders_created ON orders(created_at DESC)",
            """
            CREATE INDEX IF NOT EXISTS idx_orders_unfinished
            ON orders(updated_at) WHERE is_paid AND NOT fulfillment_complete
            """,
            "CREATE INDEX IF NOT EXISTS idx_transactions_order ON transactions(order_id)",
            "CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id)",
            "CREATE INDEX IF NOT EXISTS idx_refunds_order ON refund_requests(order_id)",
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_refunds_active_per_order
            ON refund_requests(order_id) WHERE status IN ('pending', 'approved', 'processing')
            """,
            "CREATE INDEX IF NOT EXISTS idx_pending_status ON pending_checkouts(status, created_at)",
            "CREATE INDEX IF NOT EXISTS idx_events_correlation ON system_events(correlation_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_entity ON system_events(entity_type, entity_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_timestamp ON system_events(timestamp DESC)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                try:
                    await conn.execute(migration)
                except asyncpg.DuplicateObjectError as e:
                    logger.warning("migration_skipped", error=str(e))

        logger.info("database_migrations_complete")


# =============================================================================
# THE BLACK BOX: Event Logging
# =============================================================================

async def log_event(
    correlation_id: Optional[str],
    event_type: str,
    payload: Dict[str, Any],
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor: Optional[str] = None,
    severity: Severity = "INFO",
    event_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> str:
    """
    Unified event logging for the pipeline.

    Every audit entry (order created, payment confirmed, status change,
    refund, webhook receipt) lands here.

    Args:
        correlation_id: Checkout session or order id the event belongs to
        event_type: Audit event type value, e.g. "payment.confirmed"
        payload: Event-specific data
        entity_type: "order", "payment", "webhook", "refund", "checkout_session"
        entity_id: Id of the entity
        actor: "system", "webhook", "user", "admin"
        severity: DEBUG, INFO, WARN, ERROR, CRITICAL

    Returns:
        Event ID
    """
    event_id = event_id or str(uuid4())

    await Database.execute(
        """
        INSERT INTO system_events
        (id, correlation_id, timestamp, event_type, entity_type, entity_id, actor, payload, severity)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
        ON CONFLICT (id) DO NOTHING
        """,
        event_id,
        correlation_id,
        timestamp or datetime.utcnow(),
        event_type,
        entity_type,
        entity_id,
        actor,
        json.dumps(payload, default=str),
        severity
    )

    return event_id


# =============================================================================
# INITIALIZATION
# =============================================================================

async def init_database(dsn: Optional[str] = None):
    """Initialize database on app startup"""
    await Database.initialize(dsn)


async def close_database():
    """Close database on app shutdown"""
    await Database.close()
