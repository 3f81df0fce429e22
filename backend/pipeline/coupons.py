"""
Coupon Engine - discount validation and usage accounting.
"""

from typing import Optional

import structlog
from pydantic import BaseModel

from pipeline.errors import (
    CouponExpired,
    CouponInactive,
    CouponInvalid,
    CouponLimitReached,
    MinimumNotMet,
    ValidationError,
)
from pipeline.repositories import ICouponRepository, InMemoryCouponRepository
from schemas.commerce import Coupon, DiscountType, normalize_coupon_code, utcnow


class CouponQuote(BaseModel):
    """Result of validating a coupon against a cart total"""
    code: str
    discount: float
    discount_type: DiscountType
    amount: float


class CouponEngine:
    """
    Validates codes and computes the discount. `redeem` is a bare usage
    increment: callers must invoke it once per fulfilled order.
    """

    def __init__(self, coupons: Optional[ICouponRepository] = None):
        self.coupons = coupons or InMemoryCouponRepository()
        self._logger = structlog.get_logger().bind(component="coupon_engine")

    async def validate(self, code: str, cart_total: float) -> CouponQuote:
        if not code or not code.strip():
            raise ValidationError("Coupon code is required")
        if cart_total < 0:
            raise ValidationError("Cart total must not be negative")

        normalized = normalize_coupon_code(code)
        coupon = await self.coupons.get(normalized)
        if coupon is None:
            raise CouponInvalid("Invalid coupon code")
        if not coupon.is_active:
            raise CouponInactive("Coupon is inactive")
        if coupon.valid_until is not None and coupon.valid_until < utcnow():
            raise CouponExpired("Coupon has expired")
        if coupon.exhausted:
            raise CouponLimitReached("Coupon usage limit reached")
        if cart_total < coupon.min_order_amount:
            raise MinimumNotMet(
                f"Minimum order amount of {coupon.min_order_amount:.2f} not met",
                details={"min_order_amount": coupon.min_order_amount},
            )

        discount = self.compute_discount(coupon, cart_total)
        self._logger.info("coupon_validated", code=normalized, cart_total=cart_total, discount=discount)
        return CouponQuote(
            code=normalized,
            discount=discount,
            discount_type=coupon.discount_type,
            amount=coupon.amount,
        )

    @staticmethod
    def compute_discount(coupon: Coupon, cart_total: float) -> float:
        if coupon.discount_type == DiscountType.FIXED:
            discount = coupon.amount
        else:
            discount = cart_total * coupon.amount / 100
        if coupon.max_discount is not None:
            discount = min(discount, coupon.max_discount)
        return round(min(max(discount, 0.0), cart_total), 2)

    async def redeem(self, code: str) -> Optional[Coupon]:
        coupon = await self.coupons.increment_usage(code)
        if coupon is None:
            self._logger.warning("coupon_redeem_missing", code=normalize_coupon_code(code))
        else:
            self._logger.info("coupon_redeemed", code=coupon.code, used_count=coupon.used_count)
        return coupon
