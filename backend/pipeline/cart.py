"""
Cart/Stock Validator - resolves client cart lines against the catalogs.

Read-only: names, prices and images come from the catalog record, never from
the client. Availability is checked here but only reserved later by the
Inventory Ledger.
"""

from typing import Optional

import structlog
from pydantic import BaseModel

from pipeline.errors import InsufficientStock, NotFound, ValidationError
from pipeline.repositories import CatalogRegistry
from schemas.commerce import CartLine, OrderItem


class ValidatedCart(BaseModel):
    items: list[OrderItem]

    @property
    def subtotal(self) -> float:
        return round(sum(item.price * item.quantity for item in self.items), 2)


class CartValidator:

    def __init__(self, catalogs: Optional[CatalogRegistry] = None):
        self.catalogs = catalogs or CatalogRegistry()
        self._logger = structlog.get_logger().bind(component="cart_validator")

    async def validate(self, lines: list[CartLine]) -> ValidatedCart:
        if not lines:
            raise ValidationError("No items provided")

        items = []
        for line in lines:
            record = await self.catalogs.get(line.product_type, line.product_ref)
            if record is None:
                raise NotFound(
                    f"{line.product_type.value} not found: {line.product_ref}",
                    details={"product_ref": line.product_ref, "product_type": line.product_type.value},
                )
            if line.quantity > record.stock:
                raise InsufficientStock(
                    f"Insufficient stock for {record.name}. Available: {record.stock}",
                    details={"product_ref": record.id, "available": record.stock, "requested": line.quantity},
                )
            items.append(OrderItem(
                product_ref=record.id,
                product_type=line.product_type,
                name=record.name,
                price=record.price,
                quantity=line.quantity,
                image=record.image,
            ))

        cart = ValidatedCart(items=items)
        self._logger.info("cart_validated", lines=len(items), subtotal=cart.subtotal)
        return cart
