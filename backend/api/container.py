"""
Service container.

Builds every pipeline component once at process start from ServerConfig:
PostgreSQL or in-memory repositories, Redis or in-process fulfillment lock,
RabbitMQ or in-memory event bus, SendGrid or logging email, Stripe or mock
gateway. Routes only ever see the container.
"""

import os
from typing import Optional

import structlog

from database import close_database, init_database
from pipeline.audit import AuditTrail
from pipeline.cart import CartValidator
from pipeline.checkout import CheckoutOrchestrator
from pipeline.coupons import CouponEngine
from pipeline.event_bus_adapter import IEventBus, create_event_bus
from pipeline.fulfillment import PaymentConfirmationHandler
from pipeline.gateway import IPaymentGateway, create_payment_gateway
from pipeline.inventory import InventoryLedger
from pipeline.locks import IFulfillmentLock, InProcessFulfillmentLock, RedisFulfillmentLock
from pipeline.order_state import OrderStateMachine
from pipeline.orders import OrderService
from pipeline.postgres_repositories import (
    PostgresAuditLog,
    PostgresCatalogRepository,
    PostgresCouponRepository,
    PostgresOrderRepository,
    PostgresPendingCheckoutRepository,
    PostgresRefundRepository,
    PostgresTransactionRepository,
)
from pipeline.refunds import RefundWorkflow
from pipeline.repositories import (
    CatalogRegistry,
    InMemoryAuditLog,
    InMemoryCatalogRepository,
    InMemoryCouponRepository,
    InMemoryOrderRepository,
    InMemoryPendingCheckoutRepository,
    InMemoryRefundRepository,
    InMemoryTransactionRepository,
)
from pipeline.settings import CommerceSettings, settings as commerce_settings
from pipeline.webhooks import PaymentWebhookProcessor
from schemas.commerce import ProductKind
from services.email import IEmailSender, create_email_sender
from services.notifications import EmailNotifier, RealtimeNotifier, register_notifiers
from services.realtime import WebSocketManager
from tasks.fulfillment_sweeper import FulfillmentSweeper, SweeperConfig

logger = structlog.get_logger().bind(component="container")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "5000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Auth
    JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
    JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

    # Backends (empty = in-process fallback)
    DATABASE_URL = os.getenv("DATABASE_URL", "")
    REDIS_URL = os.getenv("REDIS_URL", "")
    RABBITMQ_URL = os.getenv("RABBITMQ_URL", "")

    # Email
    SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY", "")
    EMAIL_FROM = os.getenv("EMAIL_FROM", "orders@handyland.local")

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown server setting: {key}")
            setattr(self, key, value)


# =============================================================================
# CONTAINER
# =============================================================================

class ServiceContainer:

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        commerce: Optional[CommerceSettings] = None,
        gateway: Optional[IPaymentGateway] = None,
        event_bus: Optional[IEventBus] = None,
        lock: Optional[IFulfillmentLock] = None,
        email_sender: Optional[IEmailSender] = None,
        sweeper_config: Optional[SweeperConfig] = None,
    ):
        self.config = config or ServerConfig()
        self.commerce = commerce or commerce_settings
        self.uses_database = bool(self.config.DATABASE_URL)

        # Persistence
        if self.uses_database:
            self.catalogs = CatalogRegistry({
                kind: PostgresCatalogRepository(kind) for kind in ProductKind
            })
            self.order_repo = PostgresOrderRepository()
            self.coupon_repo = PostgresCouponRepository()
            self.transaction_repo = PostgresTransactionRepository()
            self.refund_repo = PostgresRefundRepository()
            self.pending_repo = PostgresPendingCheckoutRepository()
            self.audit_log = PostgresAuditLog()
        else:
            self.catalogs = CatalogRegistry({
                kind: InMemoryCatalogRepository(kind) for kind in ProductKind
            })
            self.order_repo = InMemoryOrderRepository()
            self.coupon_repo = InMemoryCouponRepository()
            self.transaction_repo = InMemoryTransactionRepository()
            self.refund_repo = InMemoryRefundRepository()
            self.pending_repo = InMemoryPendingCheckoutRepository()
            self.audit_log = InMemoryAuditLog()

        # Infrastructure
        self.gateway = gateway or create_payment_gateway(self.commerce)
        self.event_bus = event_bus or create_event_bus(self.config.RABBITMQ_URL or None)
        if lock is not None:
            self.lock = lock
        elif self.config.REDIS_URL:
            self.lock = RedisFulfillmentLock.from_url(self.config.REDIS_URL)
        else:
            self.lock = InProcessFulfillmentLock()
        self.email_sender = email_sender or create_email_sender(self.config.SENDGRID_API_KEY, self.config.EMAIL_FROM)
        self.ws_manager = WebSocketManager()

        # Pipeline
        self.audit = AuditTrail(self.audit_log)
        self.inventory = InventoryLedger(self.catalogs)
        self.coupons = CouponEngine(self.coupon_repo)
        self.validator = CartValidator(self.catalogs)
        self.checkout = CheckoutOrchestrator(
            gateway=self.gateway,
            validator=self.validator,
            coupons=self.coupons,
            pending=self.pending_repo,
            audit=self.audit,
            config=self.commerce,
        )
        self.confirmation = PaymentConfirmationHandler(
            gateway=self.gateway,
            orders=self.order_repo,
            transactions=self.transaction_repo,
            pending=self.pending_repo,
            inventory=self.inventory,
            coupons=self.coupons,
            lock=self.lock,
            audit=self.audit,
            catalogs=self.catalogs,
            event_bus=self.event_bus,
        )
        self.state = OrderStateMachine(
            orders=self.order_repo,
            inventory=self.inventory,
            audit=self.audit,
            event_bus=self.event_bus,
            config=self.commerce,
            lock=self.lock,
        )
        self.orders = OrderService(
            orders=self.order_repo,
            validator=self.validator,
            coupons=self.coupons,
            inventory=self.inventory,
            state=self.state,
            audit=self.audit,
            event_bus=self.event_bus,
        )
        self.refunds = RefundWorkflow(
            gateway=self.gateway,
            orders=self.order_repo,
            refunds=self.refund_repo,
            transactions=self.transaction_repo,
            audit=self.audit,
            event_bus=self.event_bus,
            lock=self.lock,
        )
        self.webhooks = PaymentWebhookProcessor(
            gateway=self.gateway,
            confirmation=self.confirmation,
            refunds=self.refunds,
            pending=self.pending_repo,
            audit=self.audit,
        )

        # Fan-out
        self.email_notifier = EmailNotifier(self.email_sender, admin_email=self.commerce.ADMIN_EMAIL)
        self.realtime_notifier = RealtimeNotifier(self.ws_manager)

        # Safety net
        self.sweeper = FulfillmentSweeper(
            confirmation=self.confirmation,
            orders=self.order_repo,
            pending=self.pending_repo,
            audit=self.audit,
            sweeper_config=sweeper_config,
        )

    async def start(self):
        if self.uses_database:
            await init_database(self.config.DATABASE_URL)
        await self.event_bus.connect()
        await register_notifiers(self.event_bus, self.email_notifier, self.realtime_notifier)
        self.sweeper.start()
        logger.info("container_started",
                    gateway=self.gateway.name,
                    database=self.uses_database,
                    distributed_lock=isinstance(self.lock, RedisFulfillmentLock),
                    event_bus=type(self.event_bus).__name__)

    async def stop(self):
        await self.sweeper.stop()
        await self.event_bus.disconnect()
        await self.email_sender.close()
        if isinstance(self.lock, RedisFulfillmentLock):
            await self.lock.close()
        if self.uses_database:
            await close_database()
        logger.info("container_stopped")
