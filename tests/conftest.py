"""Pytest fixtures for the order pipeline tests."""

import asyncio
import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from api.auth import create_access_token
from api.container import ServerConfig, ServiceContainer
from pipeline.checkout import CheckoutRequest
from pipeline.event_bus_adapter import InMemoryEventBus
from pipeline.gateway import MockPaymentGateway
from pipeline.locks import InProcessFulfillmentLock
from schemas.commerce import CatalogItem, Coupon, DiscountType, ProductKind, utcnow
from services.email import LoggingEmailSender
from tasks.fulfillment_sweeper import SweeperConfig

WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "test-jwt-secret-with-enough-bytes-for-hs256"

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
ADMIN_ID = "admin-1"


class DisabledSweeperConfig(SweeperConfig):
    ENABLED = False


def build_container() -> ServiceContainer:
    config = ServerConfig(
        JWT_SECRET=JWT_SECRET,
        DATABASE_URL="",
        REDIS_URL="",
        RABBITMQ_URL="",
        SENDGRID_API_KEY="",
    )
    return ServiceContainer(
        config=config,
        gateway=MockPaymentGateway(webhook_secret=WEBHOOK_SECRET),
        event_bus=InMemoryEventBus(),
        lock=InProcessFulfillmentLock(),
        email_sender=LoggingEmailSender(),
        sweeper_config=DisabledSweeperConfig(),
    )


async def seed(container: ServiceContainer):
    products = container.catalogs.for_kind(ProductKind.PRODUCT)
    accessories = container.catalogs.for_kind(ProductKind.ACCESSORY)
    await products.save(CatalogItem(id="iphone-13", kind=ProductKind.PRODUCT, name="iPhone 13", price=500.0, stock=5))
    await products.save(CatalogItem(id="pixel-7", kind=ProductKind.PRODUCT, name="Pixel 7", price=40.0, stock=10))
    await accessories.save(CatalogItem(id="case-1", kind=ProductKind.ACCESSORY, name="Phone Case", price=20.0, stock=3))

    await container.coupon_repo.save(Coupon(code="SAVE10", discount_type=DiscountType.PERCENTAGE, amount=10))
    await container.coupon_repo.save(Coupon(code="FIVEOFF", discount_type=DiscountType.FIXED, amount=5, min_order_amount=50))
    await container.coupon_repo.save(Coupon(code="OLD", amount=10, valid_until=utcnow() - timedelta(days=1)))
    await container.coupon_repo.save(Coupon(code="PAUSED", amount=10, is_active=False))
    await container.coupon_repo.save(Coupon(code="ONCE", amount=10, usage_limit=1, used_count=1))


async def stock_of(container: ServiceContainer, ref: str, kind: ProductKind = ProductKind.PRODUCT) -> int:
    item = await container.catalogs.get(kind, ref)
    return item.stock


# =============================================================================
# PAYLOADS
# =============================================================================

def address_payload(**overrides) -> dict:
    address = {
        "full_name": "Jane Doe",
        "email": "jane@example.com",
        "phone": "+491701234567",
        "street": "Hauptstrasse 1",
        "city": "Berlin",
        "zip_code": "10115",
        "country": "Germany",
    }
    address.update(overrides)
    return address


def checkout_payload(items=None, coupon_code=None, terms_accepted=True) -> dict:
    return {
        "items": items or [{"product_ref": "iphone-13", "product_type": "Product", "quantity": 1}],
        "shipping_address": address_payload(),
        "coupon_code": coupon_code,
        "terms_accepted": terms_accepted,
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Stripe-Signature header for a raw body"""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def webhook_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> str:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})


def auth_headers(user_id: str = USER_ID, role: str = "user", email: str = "jane@example.com") -> dict:
    token = create_access_token(user_id, JWT_SECRET, role=role, email=email, name="Jane Doe")
    return {"Authorization": f"Bearer {token}"}


# =============================================================================
# SERVICE FIXTURES
# =============================================================================

@pytest.fixture
async def container():
    """Started in-memory container with a seeded catalog and coupons"""
    container = build_container()
    await seed(container)
    await container.start()
    yield container
    await container.stop()


@pytest.fixture
def outbox(container):
    return container.email_sender.outbox


@pytest.fixture
def make_checkout(container):
    """Create a checkout session; returns the CheckoutResult"""
    async def _make(items=None, coupon_code=None, user_id=USER_ID, user_email=None):
        request = CheckoutRequest.model_validate(checkout_payload(items=items, coupon_code=coupon_code))
        return await container.checkout.create_session(request, user_id=user_id, user_email=user_email)
    return _make


@pytest.fixture
def paid_order(container, make_checkout):
    """Checkout, pay and confirm; returns the fulfilled order"""
    async def _paid(items=None, coupon_code=None, user_id=USER_ID, payment_intent="pi_test_1"):
        result = await make_checkout(items=items, coupon_code=coupon_code, user_id=user_id)
        await container.gateway.complete_session(result.session_id, payment_intent=payment_intent)
        confirmation = await container.confirmation.confirm_from_client(result.session_id)
        return confirmation.order
    return _paid


# =============================================================================
# HTTP FIXTURES
# =============================================================================

@pytest.fixture
def api_container():
    container = build_container()
    asyncio.run(seed(container))
    return container


@pytest.fixture
def client(api_container):
    """TestClient running the app lifespan over the seeded container"""
    from api.server import create_app

    with TestClient(create_app(api_container)) as client:
        yield client


@pytest.fixture
def user_headers():
    return auth_headers()


@pytest.fixture
def other_user_headers():
    return auth_headers(OTHER_USER_ID, email="john@example.com")


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN_ID, role="admin", email="admin@example.com")
