"""
Inventory Ledger - the only component that changes catalog stock.

All changes are signed deltas applied through the catalog repositories.
Decrements are bounded so stock never drops below zero; a rejected decrement
is reported back to the caller instead of silently overselling.
"""

from typing import Optional

import structlog
from pydantic import BaseModel

from pipeline.errors import InsufficientStock
from pipeline.repositories import CatalogRegistry
from schemas.commerce import OrderItem, ProductKind


class StockShortfall(BaseModel):
    product_ref: str
    product_type: ProductKind
    requested: int


class InventoryLedger:

    def __init__(self, catalogs: Optional[CatalogRegistry] = None):
        self.catalogs = catalogs or CatalogRegistry()
        self._logger = structlog.get_logger().bind(component="inventory_ledger")

    async def decrement(self, kind: ProductKind, ref: str, quantity: int) -> bool:
        """stock -= quantity, sold += quantity, unless stock would go negative"""
        ok = await self.catalogs.adjust_stock(kind, ref, -quantity, sold_delta=quantity)
        if not ok:
            self._logger.warning("stock_decrement_rejected", product_ref=ref, kind=kind.value, quantity=quantity)
        return ok

    async def apply_order(self, items: list[OrderItem]) -> list[StockShortfall]:
        """
        Deduct every line of a paid order. Lines that cannot be fully
        deducted are returned; the others stay applied.
        """
        shortfalls = []
        for item in items:
            if not await self.decrement(item.product_type, item.product_ref, item.quantity):
                shortfalls.append(StockShortfall(
                    product_ref=item.product_ref,
                    product_type=item.product_type,
                    requested=item.quantity,
                ))
        self._logger.info("order_stock_applied", lines=len(items), shortfalls=len(shortfalls))
        return shortfalls

    async def reserve_all(self, items: list[OrderItem]) -> None:
        """
        All-or-nothing deduction for direct orders: on the first rejected line
        the lines already taken are put back and InsufficientStock is raised.
        """
        taken: list[OrderItem] = []
        for item in items:
            if not await self.decrement(item.product_type, item.product_ref, item.quantity):
                for done in reversed(taken):
                    await self.catalogs.adjust_stock(done.product_type, done.product_ref, done.quantity, sold_delta=-done.quantity)
                raise InsufficientStock(
                    f"Insufficient stock for {item.name}",
                    details={"product_ref": item.product_ref, "requested": item.quantity},
                )
            taken.append(item)

    async def restore(self, items: list[OrderItem]) -> None:
        """Put back every line's quantity (compensation for a cancelled order)"""
        for item in items:
            if not await self.catalogs.adjust_stock(
                item.product_type, item.product_ref, item.quantity, sold_delta=-item.quantity
            ):
                self._logger.warning("stock_restore_skipped", product_ref=item.product_ref, reason="catalog_item_missing")
        self._logger.info("order_stock_restored", lines=len(items))
