"""
Order totals: gross pricing, tax is informational.

    total = subtotal + shipping_fee - discount
    tax   = subtotal * TAX_RATE
"""

from typing import Optional

from pydantic import BaseModel

from pipeline.settings import settings


class PriceBreakdown(BaseModel):
    subtotal: float
    shipping_fee: float
    tax: float
    discount: float
    total: float


def shipping_fee_for(subtotal: float, override: Optional[float] = None) -> float:
    if override is not None:
        return round(max(override, 0.0), 2)
    if subtotal >= settings.FREE_SHIPPING_THRESHOLD:
        return 0.0
    return settings.FLAT_SHIPPING_FEE


def compute_totals(
    subtotal: float,
    discount: float = 0.0,
    shipping_override: Optional[float] = None,
) -> PriceBreakdown:
    shipping = shipping_fee_for(subtotal, shipping_override)
    discount = round(min(max(discount, 0.0), subtotal), 2)
    return PriceBreakdown(
        subtotal=round(subtotal, 2),
        shipping_fee=shipping,
        tax=round(subtotal * settings.TAX_RATE, 2),
        discount=discount,
        total=round(max(subtotal + shipping - discount, 0.0), 2),
    )


def to_minor_units(amount: float) -> int:
    """Euros to cents"""
    return int(round(amount * 100))
