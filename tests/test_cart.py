"""
Tests for the in-memory cart store.
"""

import pytest

from aroundyou.cart import CART_NOT_FOUND, ITEM_NOT_IN_CART, InMemoryCartStore
from conftest import make_item, make_shop


@pytest.fixture
def shop():
    return make_shop("shop-a", "Gulberg Mart")


@pytest.fixture
def oreo():
    return make_item("a-oreo-mini", "shop-a", "Oreo Mini", price_cents=5000)


@pytest.fixture
def rio():
    return make_item("a-rio", "shop-a", "Rio Biscuit", price_cents=3000)


class TestAddItem:
    """Adding is additive per line."""

    @pytest.mark.asyncio
    async def test_new_cart(self, cart_store, shop, oreo):
        cart = await cart_store.add_item(shop, oreo, 2)

        assert cart.shop_id == "shop-a"
        assert cart.shop_name == "Gulberg Mart"
        assert cart.total_items == 2
        assert cart.total_price_cents == 10000

    @pytest.mark.asyncio
    async def test_same_item_accumulates(self, cart_store, shop, oreo):
        await cart_store.add_item(shop, oreo, 2)
        cart = await cart_store.add_item(shop, oreo, 3)

        assert len(cart.items) == 1
        assert cart.items[0].quantity == 5

    @pytest.mark.asyncio
    async def test_one_cart_per_shop(self, cart_store, shop, oreo):
        other_shop = make_shop("shop-b", "Model Town Store")
        await cart_store.add_item(shop, oreo, 1)
        await cart_store.add_item(other_shop, make_item("b-rio", "shop-b", "Rio"), 1)

        carts = await cart_store.get_all_carts()
        assert [cart.shop_id for cart in carts] == ["shop-a", "shop-b"]

    @pytest.mark.asyncio
    async def test_quantity_must_be_positive(self, cart_store, shop, oreo):
        with pytest.raises(ValueError):
            await cart_store.add_item(shop, oreo, 0)

    @pytest.mark.asyncio
    async def test_returned_carts_are_copies(self, cart_store, shop, oreo):
        cart = await cart_store.add_item(shop, oreo, 1)
        cart.items[0].quantity = 99
        stored = await cart_store.get_cart("shop-a")
        assert stored.items[0].quantity == 1


class TestRemoveAndUpdate:
    """Partial removal, line removal and empty carts."""

    @pytest.mark.asyncio
    async def test_partial_remove(self, cart_store, shop, oreo):
        await cart_store.add_item(shop, oreo, 5)
        cart = await cart_store.remove_item("shop-a", "a-oreo-mini", 2)
        assert cart.items[0].quantity == 3

    @pytest.mark.asyncio
    async def test_remove_last_line_deletes_cart(self, cart_store, shop, oreo):
        await cart_store.add_item(shop, oreo, 2)
        assert await cart_store.remove_item("shop-a", "a-oreo-mini") is None
        assert await cart_store.get_cart("shop-a") is None
        assert await cart_store.get_all_carts() == []

    @pytest.mark.asyncio
    async def test_remove_more_than_held(self, cart_store, shop, oreo, rio):
        await cart_store.add_item(shop, oreo, 2)
        await cart_store.add_item(shop, rio, 1)
        cart = await cart_store.remove_item("shop-a", "a-oreo-mini", 10)
        assert [line.item_id for line in cart.items] == ["a-rio"]

    @pytest.mark.asyncio
    async def test_update_quantity(self, cart_store, shop, oreo):
        await cart_store.add_item(shop, oreo, 2)
        cart = await cart_store.update_quantity("shop-a", "a-oreo-mini", 7)
        assert cart.total_items == 7

    @pytest.mark.asyncio
    async def test_update_to_zero_removes(self, cart_store, shop, oreo):
        await cart_store.add_item(shop, oreo, 2)
        assert await cart_store.update_quantity("shop-a", "a-oreo-mini", 0) is None

    @pytest.mark.asyncio
    async def test_missing_cart(self, cart_store):
        with pytest.raises(LookupError, match=CART_NOT_FOUND):
            await cart_store.remove_item("shop-x", "a-oreo-mini")

    @pytest.mark.asyncio
    async def test_missing_line(self, cart_store, shop, oreo):
        await cart_store.add_item(shop, oreo, 1)
        with pytest.raises(LookupError, match=ITEM_NOT_IN_CART):
            await cart_store.update_quantity("shop-a", "a-rio", 3)


class TestSnapshot:
    @pytest.mark.asyncio
    async def test_export_and_load(self, shop, oreo):
        store = InMemoryCartStore()
        await store.add_item(shop, oreo, 3)

        restored = InMemoryCartStore()
        restored.load_snapshot(store.export_snapshot())

        cart = await restored.get_cart("shop-a")
        assert cart.total_items == 3
        assert cart.items[0].name == "Oreo Mini"

    @pytest.mark.asyncio
    async def test_empty_carts_dropped_on_load(self):
        store = InMemoryCartStore()
        store.load_snapshot([{"shop_id": "shop-a", "shop_name": "Gulberg Mart", "items": []}])
        assert await store.get_all_carts() == []
