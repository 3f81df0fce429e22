"""Tests for cart validation, pricing and the inventory ledger."""

import pytest

from pipeline.cart import CartValidator
from pipeline.errors import InsufficientStock, NotFound, ValidationError
from pipeline.inventory import InventoryLedger
from pipeline.pricing import compute_totals, shipping_fee_for, to_minor_units
from pipeline.repositories import CatalogRegistry
from schemas.commerce import CartLine, CatalogItem, OrderItem, ProductKind


@pytest.fixture
async def catalogs():
    registry = CatalogRegistry()
    await registry.for_kind(ProductKind.PRODUCT).save(
        CatalogItem(id="iphone-13", kind=ProductKind.PRODUCT, name="iPhone 13", price=500.0, stock=5, image="/img/ip13.png"))
    await registry.for_kind(ProductKind.PRODUCT).save(
        CatalogItem(id="pixel-7", kind=ProductKind.PRODUCT, name="Pixel 7", price=40.0, stock=2))
    await registry.for_kind(ProductKind.ACCESSORY).save(
        CatalogItem(id="case-1", kind=ProductKind.ACCESSORY, name="Phone Case", price=19.99, stock=3))
    return registry


def line(ref, qty, kind=ProductKind.PRODUCT):
    return CartLine(product_ref=ref, product_type=kind, quantity=qty)


def item(ref, qty, price=10.0, kind=ProductKind.PRODUCT):
    return OrderItem(product_ref=ref, product_type=kind, name=ref, price=price, quantity=qty)


class TestCartValidator:
    async def test_prices_come_from_catalog(self, catalogs):
        cart = await CartValidator(catalogs).validate([line("iphone-13", 2), line("case-1", 1, ProductKind.ACCESSORY)])
        assert [i.price for i in cart.items] == [500.0, 19.99]
        assert cart.items[0].name == "iPhone 13"
        assert cart.items[0].image == "/img/ip13.png"
        assert cart.subtotal == 1019.99

    async def test_client_price_fields_are_ignored(self, catalogs):
        raw = {"product_ref": "iphone-13", "product_type": "Product", "quantity": 1, "price": 1.0}
        cart = await CartValidator(catalogs).validate([CartLine.model_validate(raw)])
        assert cart.subtotal == 500.0

    async def test_unknown_product(self, catalogs):
        with pytest.raises(NotFound):
            await CartValidator(catalogs).validate([line("nokia-3310", 1)])

    async def test_kind_selects_catalog(self, catalogs):
        with pytest.raises(NotFound):
            await CartValidator(catalogs).validate([line("case-1", 1, ProductKind.PRODUCT)])

    async def test_insufficient_stock(self, catalogs):
        with pytest.raises(InsufficientStock) as exc:
            await CartValidator(catalogs).validate([line("pixel-7", 3)])
        assert exc.value.details["available"] == 2

    async def test_validation_does_not_touch_stock(self, catalogs):
        await CartValidator(catalogs).validate([line("pixel-7", 2)])
        assert (await catalogs.get(ProductKind.PRODUCT, "pixel-7")).stock == 2

    async def test_empty_cart(self, catalogs):
        with pytest.raises(ValidationError):
            await CartValidator(catalogs).validate([])


class TestPricing:
    def test_flat_shipping_below_threshold(self):
        totals = compute_totals(40.0)
        assert totals.shipping_fee == 5.99
        assert totals.total == 45.99

    def test_free_shipping_at_threshold(self):
        assert shipping_fee_for(100.0) == 0.0

    def test_shipping_override(self):
        assert compute_totals(40.0, shipping_override=0).shipping_fee == 0.0

    def test_tax_is_informational(self):
        totals = compute_totals(500.0, discount=50.0)
        assert totals.tax == 95.0
        assert totals.total == 450.0

    def test_discount_capped_at_subtotal(self):
        totals = compute_totals(20.0, discount=35.0, shipping_override=0)
        assert totals.discount == 20.0
        assert totals.total == 0.0

    def test_minor_units(self):
        assert to_minor_units(19.99) == 1999
        assert to_minor_units(0.1 + 0.2) == 30


class TestInventoryLedger:
    async def test_decrement_updates_stock_and_sold(self, catalogs):
        ledger = InventoryLedger(catalogs)
        assert await ledger.decrement(ProductKind.PRODUCT, "iphone-13", 2)
        record = await catalogs.get(ProductKind.PRODUCT, "iphone-13")
        assert record.stock == 3
        assert record.sold == 2

    async def test_decrement_is_bounded(self, catalogs):
        ledger = InventoryLedger(catalogs)
        assert not await ledger.decrement(ProductKind.PRODUCT, "pixel-7", 3)
        assert (await catalogs.get(ProductKind.PRODUCT, "pixel-7")).stock == 2

    async def test_apply_order_reports_shortfalls(self, catalogs):
        ledger = InventoryLedger(catalogs)
        shortfalls = await ledger.apply_order([item("iphone-13", 1), item("pixel-7", 5)])
        assert [s.product_ref for s in shortfalls] == ["pixel-7"]
        assert (await catalogs.get(ProductKind.PRODUCT, "iphone-13")).stock == 4
        assert (await catalogs.get(ProductKind.PRODUCT, "pixel-7")).stock == 2

    async def test_reserve_all_rolls_back(self, catalogs):
        ledger = InventoryLedger(catalogs)
        with pytest.raises(InsufficientStock):
            await ledger.reserve_all([item("iphone-13", 2), item("pixel-7", 5)])
        record = await catalogs.get(ProductKind.PRODUCT, "iphone-13")
        assert record.stock == 5
        assert record.sold == 0

    async def test_restore_puts_stock_back(self, catalogs):
        ledger = InventoryLedger(catalogs)
        items = [item("iphone-13", 2), item("case-1", 1, kind=ProductKind.ACCESSORY)]
        await ledger.reserve_all(items)
        await ledger.restore(items)
        assert (await catalogs.get(ProductKind.PRODUCT, "iphone-13")).stock == 5
        assert (await catalogs.get(ProductKind.ACCESSORY, "case-1")).stock == 3

    async def test_restore_skips_missing_items(self, catalogs):
        await InventoryLedger(catalogs).restore([item("discontinued", 1)])
