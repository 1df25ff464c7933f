"""
In-memory cart store.

One cart per shop. A cart disappears as soon as its last line is removed, so
callers never see an empty cart for a shop.
"""

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from aroundyou.models import CartLine, CatalogItem, Shop, ShopCart

logger = logging.getLogger(__name__)

CART_NOT_FOUND = "Cart not found for this shop"
ITEM_NOT_IN_CART = "Item not found in cart"


class InMemoryCartStore:
    """
    Per-shop carts held in process memory.

    All methods return copies; mutate carts only through the store.
    """

    def __init__(self):
        self._carts: "OrderedDict[str, ShopCart]" = OrderedDict()

    async def get_cart(self, shop_id: str) -> Optional[ShopCart]:
        cart = self._carts.get(shop_id)
        return cart.model_copy(deep=True) if cart is not None else None

    async def get_all_carts(self) -> List[ShopCart]:
        return [cart.model_copy(deep=True) for cart in self._carts.values()]

    async def add_item(self, shop: Shop, item: CatalogItem, quantity: int) -> ShopCart:
        """
        Add ``quantity`` units of ``item``. Adding an item already in the cart
        increases its quantity.
        """
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")

        cart = self._carts.get(shop.id)
        lines = [line.model_copy() for line in cart.items] if cart else []
        existing = next((line for line in lines if line.item_id == item.id), None)
        if existing is not None:
            existing.quantity += quantity
        else:
            lines.append(CartLine(
                item_id=item.id,
                name=item.name,
                price_cents=item.price_cents,
                quantity=quantity,
                image_url=item.image_url,
            ))

        updated = ShopCart(
            shop_id=shop.id,
            shop_name=shop.name,
            shop_address=shop.address,
            items=lines,
        )
        self._carts[shop.id] = updated
        logger.debug("Cart %s now has %d items", shop.id, updated.total_items)
        return updated.model_copy(deep=True)

    async def update_quantity(self, shop_id: str, item_id: str, quantity: int) -> Optional[ShopCart]:
        """
        Set a line's quantity. Zero or less removes the line.

        Raises:
            LookupError: If the shop has no cart or the item is not in it
        """
        cart, lines, line = self._locate(shop_id, item_id)
        if quantity <= 0:
            lines.remove(line)
        else:
            line.quantity = quantity
        return self._replace(cart, lines)

    async def remove_item(self, shop_id: str, item_id: str, quantity: Optional[int] = None) -> Optional[ShopCart]:
        """
        Remove ``quantity`` units, or the whole line when ``quantity`` is
        omitted or not smaller than the line quantity.

        Raises:
            LookupError: If the shop has no cart or the item is not in it
        """
        cart, lines, line = self._locate(shop_id, item_id)
        if quantity is None or quantity >= line.quantity:
            lines.remove(line)
        else:
            line.quantity -= quantity
        return self._replace(cart, lines)

    async def delete_cart(self, shop_id: str) -> None:
        self._carts.pop(shop_id, None)

    def export_snapshot(self) -> List[Dict[str, Any]]:
        return [cart.model_dump(mode="json") for cart in self._carts.values()]

    def load_snapshot(self, snapshot: List[Dict[str, Any]]) -> None:
        """Replace all carts with ``snapshot``; empty carts are dropped."""
        carts = [ShopCart.model_validate(entry) for entry in snapshot]
        self._carts = OrderedDict((cart.shop_id, cart) for cart in carts if cart.items)

    def _locate(self, shop_id: str, item_id: str):
        cart = self._carts.get(shop_id)
        if cart is None:
            raise LookupError(CART_NOT_FOUND)
        lines = [line.model_copy() for line in cart.items]
        line = next((entry for entry in lines if entry.item_id == item_id), None)
        if line is None:
            raise LookupError(ITEM_NOT_IN_CART)
        return cart, lines, line

    def _replace(self, cart: ShopCart, lines: List[CartLine]) -> Optional[ShopCart]:
        if not lines:
            del self._carts[cart.shop_id]
            logger.debug("Cart %s is empty and was removed", cart.shop_id)
            return None
        updated = ShopCart(
            shop_id=cart.shop_id,
            shop_name=cart.shop_name,
            shop_address=cart.shop_address,
            items=lines,
        )
        self._carts[cart.shop_id] = updated
        return updated.model_copy(deep=True)
