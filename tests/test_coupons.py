"""Tests for coupon validation and usage accounting."""

from datetime import timedelta

import pytest

from pipeline.coupons import CouponEngine
from pipeline.errors import (
    CouponExpired,
    CouponInactive,
    CouponInvalid,
    CouponLimitReached,
    MinimumNotMet,
    ValidationError,
)
from pipeline.repositories import InMemoryCouponRepository
from schemas.commerce import Coupon, DiscountType, utcnow


@pytest.fixture
async def engine():
    repo = InMemoryCouponRepository()
    await repo.save(Coupon(code="SAVE10", discount_type=DiscountType.PERCENTAGE, amount=10))
    await repo.save(Coupon(code="HALF", discount_type=DiscountType.PERCENTAGE, amount=50, max_discount=25))
    await repo.save(Coupon(code="FIVEOFF", discount_type=DiscountType.FIXED, amount=5, min_order_amount=50))
    await repo.save(Coupon(code="BIGFIXED", discount_type=DiscountType.FIXED, amount=50))
    await repo.save(Coupon(code="OLD", amount=10, valid_until=utcnow() - timedelta(minutes=1)))
    await repo.save(Coupon(code="FUTURE", amount=10, valid_until=utcnow() + timedelta(days=3)))
    await repo.save(Coupon(code="PAUSED", amount=10, is_active=False))
    await repo.save(Coupon(code="ONCE", amount=10, usage_limit=1, used_count=1))
    return CouponEngine(repo)


class TestCouponValidation:
    async def test_percentage_discount(self, engine):
        quote = await engine.validate("SAVE10", 200.0)
        assert quote.code == "SAVE10"
        assert quote.discount == 20.0
        assert quote.discount_type == DiscountType.PERCENTAGE

    async def test_code_is_case_insensitive(self, engine):
        quote = await engine.validate("  save10 ", 100.0)
        assert quote.code == "SAVE10"
        assert quote.discount == 10.0

    async def test_fixed_discount(self, engine):
        quote = await engine.validate("FIVEOFF", 80.0)
        assert quote.discount == 5.0

    async def test_max_discount_caps_percentage(self, engine):
        quote = await engine.validate("HALF", 200.0)
        assert quote.discount == 25.0

    async def test_discount_never_exceeds_cart_total(self, engine):
        quote = await engine.validate("BIGFIXED", 30.0)
        assert quote.discount == 30.0

    async def test_discount_is_rounded_to_cents(self, engine):
        quote = await engine.validate("SAVE10", 33.33)
        assert quote.discount == 3.33

    async def test_unknown_code(self, engine):
        with pytest.raises(CouponInvalid):
            await engine.validate("NOPE", 100.0)

    async def test_inactive_coupon(self, engine):
        with pytest.raises(CouponInactive):
            await engine.validate("PAUSED", 100.0)

    async def test_expired_coupon(self, engine):
        with pytest.raises(CouponExpired):
            await engine.validate("OLD", 100.0)

    async def test_future_expiry_is_valid(self, engine):
        quote = await engine.validate("FUTURE", 100.0)
        assert quote.discount == 10.0

    async def test_usage_limit_reached(self, engine):
        with pytest.raises(CouponLimitReached):
            await engine.validate("ONCE", 100.0)

    async def test_minimum_order_amount(self, engine):
        with pytest.raises(MinimumNotMet) as exc:
            await engine.validate("FIVEOFF", 49.99)
        assert exc.value.details["min_order_amount"] == 50

    async def test_empty_code(self, engine):
        with pytest.raises(ValidationError):
            await engine.validate("   ", 100.0)

    async def test_specific_errors_are_coupon_errors(self, engine):
        for code in ("PAUSED", "OLD", "ONCE"):
            with pytest.raises(CouponInvalid):
                await engine.validate(code, 100.0)


class TestCouponRedeem:
    async def test_redeem_increments_usage(self, engine):
        coupon = await engine.redeem("save10")
        assert coupon.used_count == 1
        coupon = await engine.redeem("SAVE10")
        assert coupon.used_count == 2

    async def test_redeem_unknown_code(self, engine):
        assert await engine.redeem("NOPE") is None

    async def test_limited_coupon_exhausts(self):
        repo = InMemoryCouponRepository()
        await repo.save(Coupon(code="TWICE", amount=10, usage_limit=2))
        engine = CouponEngine(repo)
        await engine.redeem("TWICE")
        await engine.validate("TWICE", 100.0)
        await engine.redeem("TWICE")
        with pytest.raises(CouponLimitReached):
            await engine.validate("TWICE", 100.0)
