"""
Order Service
=============
Direct (non-gateway) order creation, owner-scoped reads, admin listing and
the entry points into the order state machine.
"""

import math
import uuid
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from pipeline.audit import AuditTrail
from pipeline.cart import CartValidator
from pipeline.coupons import CouponEngine, CouponQuote
from pipeline.errors import Forbidden, NotFound, ValidationError
from pipeline.event_bus_adapter import EventPublisherMixin, IEventBus
from pipeline.inventory import InventoryLedger
from pipeline.order_state import OrderStateMachine, StatusUpdate
from pipeline.pricing import compute_totals
from pipeline.repositories import IOrderRepository, InMemoryOrderRepository
from schemas.commerce import (
    AuditEventType,
    CartLine,
    FulfillmentProgress,
    Order,
    OrderStatus,
    PaymentMethod,
    ShippingAddress,
    StatusHistoryEntry,
    utcnow,
)
from schemas.event_definitions import OrderCreatedEvent


class DirectOrderRequest(BaseModel):
    items: list[CartLine] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = PaymentMethod.CASH
    coupon_code: Optional[str] = None
    shipping_fee: Optional[float] = Field(None, ge=0)
    total_amount: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None


class CouponQuoteRequest(BaseModel):
    code: str
    cart_total: Optional[float] = Field(None, ge=0)
    items: Optional[list[CartLine]] = None


class OrderPage(BaseModel):
    orders: list[Order]
    total: int
    page: int
    pages: int


class OrderService(EventPublisherMixin):

    def __init__(
        self,
        orders: Optional[IOrderRepository] = None,
        validator: Optional[CartValidator] = None,
        coupons: Optional[CouponEngine] = None,
        inventory: Optional[InventoryLedger] = None,
        state: Optional[OrderStateMachine] = None,
        audit: Optional[AuditTrail] = None,
        event_bus: Optional[IEventBus] = None,
    ):
        self.orders = orders or InMemoryOrderRepository()
        self.inventory = inventory or InventoryLedger()
        self.validator = validator or CartValidator(self.inventory.catalogs)
        self.coupons = coupons or CouponEngine()
        self.audit = audit or AuditTrail()
        self.init_event_bus(event_bus)
        self.state = state or OrderStateMachine(self.orders, self.inventory, self.audit, event_bus)
        self._logger = structlog.get_logger().bind(component="order_service")

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_direct(self, request: DirectOrderRequest, user_id: str) -> Order:
        """
        Cash/offline order: stock is reserved all-or-nothing up front and the
        coupon is redeemed immediately, since no payment confirmation follows.
        """
        cart = await self.validator.validate(request.items)

        quote = None
        if request.coupon_code and request.coupon_code.strip():
            quote = await self.coupons.validate(request.coupon_code, cart.subtotal)

        totals = compute_totals(cart.subtotal, quote.discount if quote else 0.0, request.shipping_fee)
        if request.total_amount is not None and abs(request.total_amount - totals.total) > 0.01:
            raise ValidationError(
                "Order total does not match item prices",
                details={"expected": totals.total, "submitted": request.total_amount},
            )

        order_id = str(uuid.uuid4())
        now = utcnow()
        order = Order(
            id=order_id,
            order_number=Order.generate_order_number(order_id, now),
            user_id=user_id,
            items=cart.items,
            total_amount=totals.total,
            tax=totals.tax,
            shipping_fee=totals.shipping_fee,
            discount_amount=totals.discount,
            coupon_code=quote.code if quote else None,
            shipping_address=request.shipping_address,
            payment_method=request.payment_method,
            notes=request.notes,
            status_history=[StatusHistoryEntry(status=OrderStatus.PENDING, timestamp=now, note="Order created")],
            fulfillment=FulfillmentProgress(
                transaction_recorded=True, stock_applied=True, coupon_redeemed=True),
            created_at=now,
            updated_at=now,
        )
        if abs(order.expected_total() - order.total_amount) > 0.01:
            raise ValidationError("Order total integrity check failed")

        await self.inventory.reserve_all(order.items)
        try:
            order = await self.orders.save(order)
        except Exception:
            await self.inventory.restore(order.items)
            self._logger.error("order_save_failed", order_id=order.id, compensated="stock")
            raise

        if quote:
            await self.coupons.redeem(quote.code)

        await self.audit.emit(
            event_type=AuditEventType.ORDER_CREATED,
            entity_type="order",
            entity_id=order.id,
            correlation_id=order.id,
            new_state={"status": order.status.value, "order_number": order.order_number},
            metadata={"payment_method": order.payment_method.value, "total": order.total_amount},
            actor="user",
        )
        await self.publish_event(OrderCreatedEvent.for_order(order, source="direct"))
        order = await self.orders.update_fulfillment(order.id, confirmation_sent=True)

        self._logger.info("direct_order_created", order_id=order.id, order_number=order.order_number,
                          user_id=user_id, total=order.total_amount)
        return order

    async def quote_coupon(self, request: CouponQuoteRequest) -> CouponQuote:
        if request.items:
            cart = await self.validator.validate(request.items)
            cart_total = cart.subtotal
        elif request.cart_total is not None:
            cart_total = request.cart_total
        else:
            raise ValidationError("Cart total or items are required")
        return await self.coupons.validate(request.code, cart_total)

    # =========================================================================
    # READ
    # =========================================================================

    async def get(self, order_id: str, user_id: Optional[str] = None, is_admin: bool = False) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFound("Order not found")
        if not is_admin and (user_id is None or order.user_id != user_id):
            raise Forbidden("Not authorized to access this order")
        return order

    async def list_for_user(self, user_id: str) -> list[Order]:
        return await self.orders.list_by_user(user_id)

    async def list_all(self, status: Optional[OrderStatus] = None, page: int = 1, limit: int = 20) -> OrderPage:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        orders, total = await self.orders.list_all(status=status, skip=(page - 1) * limit, limit=limit)
        return OrderPage(orders=orders, total=total, page=page, pages=math.ceil(total / limit) if total else 0)

    async def stats(self) -> dict:
        return await self.orders.stats()

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def cancel(self, order_id: str, user_id: str, note: Optional[str] = None) -> Order:
        order = await self.get(order_id, user_id)
        return await self.state.cancel_by_customer(order, note)

    async def admin_update(self, order_id: str, update: StatusUpdate) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFound("Order not found")
        return await self.state.apply(order, update, actor="admin")
