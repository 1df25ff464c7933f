"""
Narrow interfaces to everything outside the core.

The dialogue engine, dispatcher and search pipeline depend only on these
protocols; the OpenAI, SQLite, ChromaDB and in-memory classes elsewhere in the
package are reference implementations.
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from aroundyou.models import (
    CatalogItem, Coordinates, Message, ModelChunk, OrderOutcome, OrderRequest,
    ScoredItem, SearchIntent, Shop, ShopCart, UserPreference
)


@runtime_checkable
class ChatModel(Protocol):
    """Tool-calling model."""

    def stream_completion(
        self,
        messages: Sequence[Message],
        tools: List[Dict[str, Any]],
        system_prompt: str,
        stream: bool = True,
    ) -> AsyncIterator[ModelChunk]:
        """
        Request the next assistant message.

        Yields text fragments as they arrive. A tool selection is yielded once,
        as the final chunk.
        """
        ...


@runtime_checkable
class IntentExtractor(Protocol):
    async def extract(self, query: str) -> SearchIntent:
        """Turn a raw query into a search intent with one model call."""
        ...


@runtime_checkable
class ShopDirectory(Protocol):
    async def find_shops(self, coordinates: Coordinates, limit: int) -> List[Shop]:
        """Shops serviceable at ``coordinates``, nearest first."""
        ...

    async def get_shop(self, shop_id: str) -> Optional[Shop]:
        ...

    async def get_item(self, shop_id: str, item_id: str) -> Optional[CatalogItem]:
        ...

    async def items_in_categories(self, shop_id: str, names: List[str]) -> List[CatalogItem]:
        """Active items of a shop in categories matching any of ``names``."""
        ...

    async def search_items_by_text(self, shop_id: str, query: str, limit: int) -> List[CatalogItem]:
        """Active items of a shop whose name contains ``query``."""
        ...


@runtime_checkable
class ItemSimilaritySearch(Protocol):
    async def search_items(
        self,
        shop_id: str,
        query_variants: List[str],
        limit: int,
    ) -> List[ScoredItem]:
        """Items of one shop scored against the query variants."""
        ...


@runtime_checkable
class PreferenceSource(Protocol):
    async def preferences_for(self, query: str) -> List[UserPreference]:
        """Remembered shopper preferences relevant to ``query``."""
        ...


@runtime_checkable
class CartStore(Protocol):
    """
    Per-shop carts. Every mutation returns the resulting cart for that shop,
    or None once the shop's cart no longer exists.
    """

    async def get_cart(self, shop_id: str) -> Optional[ShopCart]:
        ...

    async def get_all_carts(self) -> List[ShopCart]:
        ...

    async def add_item(self, shop: Shop, item: CatalogItem, quantity: int) -> ShopCart:
        ...

    async def update_quantity(self, shop_id: str, item_id: str, quantity: int) -> Optional[ShopCart]:
        ...

    async def remove_item(self, shop_id: str, item_id: str, quantity: Optional[int] = None) -> Optional[ShopCart]:
        ...

    async def delete_cart(self, shop_id: str) -> None:
        ...


@runtime_checkable
class OrderPlacement(Protocol):
    async def place_order(self, request: OrderRequest) -> OrderOutcome:
        """
        Place an order. Business-rule rejections come back as ``success=False``;
        a missing ``address_id`` means the user's default address.
        """
        ...
