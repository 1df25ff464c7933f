"""
Shared fixtures and fakes for the AroundYou test suite.

Provides:
- Scripted tool-calling model (text fragments, tool calls, errors, gates)
- Counting intent extractor around the keyword extractor
- In-memory shop directory, item similarity search, preferences and order placement
- A two-shop catalog near Gulberg, Lahore
- Temporary SQLite database
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Union

import pytest

from aroundyou.cart import InMemoryCartStore
from aroundyou.database import DatabaseManager
from aroundyou.dispatcher import FunctionDispatcher
from aroundyou.intent import KeywordIntentExtractor
from aroundyou.models import (
    CatalogItem, Coordinates, Message, ModelChunk, OrderOutcome, OrderRequest,
    PlacedOrder, ScoredItem, SearchIntent, Shop, ToolCall, UserContext, UserPreference
)
from aroundyou.progress import ProgressBroadcaster
from aroundyou.search import IntelligentSearchPipeline

GULBERG = Coordinates(latitude=31.5204, longitude=74.3587)
DEFAULT_ADDRESS_ID = "3f6c1a52-8d4e-4c1b-9f2a-6b7d2e9c1a40"


# =============================================================================
# Builders
# =============================================================================

def make_shop(shop_id: str, name: str, delivery_fee: Optional[float] = 50.0, is_open: bool = True) -> Shop:
    return Shop(
        id=shop_id,
        name=name,
        address=f"{name}, Lahore",
        latitude=31.52,
        longitude=74.35,
        delivery_fee=delivery_fee,
        is_open=is_open,
    )


def make_item(
    item_id: str,
    shop_id: str,
    name: str,
    price_cents: int = 5000,
    category: Optional[str] = "Bakery & Biscuits",
    stock_quantity: Optional[int] = 20,
    is_active: bool = True
) -> CatalogItem:
    return CatalogItem(
        id=item_id,
        shop_id=shop_id,
        name=name,
        category=category,
        price_cents=price_cents,
        stock_quantity=stock_quantity,
        is_active=is_active,
    )


def text_chunks(*fragments: str) -> List[ModelChunk]:
    return [ModelChunk(text=fragment) for fragment in fragments]


def tool_chunk(name: str, arguments: str = "{}", call_id: Optional[str] = None) -> List[ModelChunk]:
    call = ToolCall(name=name, arguments=arguments)
    if call_id:
        call.id = call_id
    return [ModelChunk(tool_call=call)]


# =============================================================================
# Fakes
# =============================================================================

class ScriptedChatModel:
    """
    Plays back one scripted reply per request.

    Each script entry is a list of chunks or an exception to raise. A gate
    (``asyncio.Event``) holds the reply after its first chunk until set.
    """

    def __init__(self, replies: Sequence[Union[List[ModelChunk], Exception]], gate: Optional[asyncio.Event] = None):
        self.replies = list(replies)
        self.gate = gate
        self.requests: List[Dict[str, Any]] = []

    async def stream_completion(self, messages, tools, system_prompt, stream=True):
        self.requests.append({
            "messages": [message.model_copy(deep=True) for message in messages],
            "tools": tools,
            "system_prompt": system_prompt,
            "stream": stream,
        })
        if not self.replies:
            raise AssertionError("No scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        for index, chunk in enumerate(reply):
            yield chunk
            if index == 0 and self.gate is not None:
                await self.gate.wait()


class SlowChatModel:
    """Never finishes; used for timeout tests."""

    async def stream_completion(self, messages, tools, system_prompt, stream=True):
        await asyncio.sleep(3600)
        yield ModelChunk(text="too late")


class CountingIntentExtractor:
    def __init__(self, delegate=None, error: Optional[Exception] = None, delay: float = 0.0):
        self.delegate = delegate or KeywordIntentExtractor()
        self.error = error
        self.delay = delay
        self.calls: List[str] = []

    async def extract(self, query: str) -> SearchIntent:
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return await self.delegate.extract(query)


class FakeShopDirectory:
    """
    In-memory shops and items.

    Category lookups return the canned ``category_items`` for a shop, so
    category expansion only adds hits where a test asks for it.
    """

    def __init__(
        self,
        shops: List[Shop],
        items: List[CatalogItem],
        error: Optional[Exception] = None,
        delay: float = 0.0,
        category_items: Optional[Dict[str, List[CatalogItem]]] = None,
        category_error: Optional[Exception] = None
    ):
        self.shops = shops
        self.items = {(item.shop_id, item.id): item for item in items}
        self.error = error
        self.delay = delay
        self.category_items = category_items or {}
        self.category_error = category_error
        self.find_calls = 0
        self.category_calls: List[Dict[str, Any]] = []
        self.text_calls: List[Dict[str, Any]] = []

    async def find_shops(self, coordinates: Coordinates, limit: int) -> List[Shop]:
        self.find_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.shops[:limit])

    async def get_shop(self, shop_id: str) -> Optional[Shop]:
        return next((shop for shop in self.shops if shop.id == shop_id), None)

    async def get_item(self, shop_id: str, item_id: str) -> Optional[CatalogItem]:
        return self.items.get((shop_id, item_id))

    async def items_in_categories(self, shop_id: str, categories: List[str]) -> List[CatalogItem]:
        self.category_calls.append({"shop_id": shop_id, "categories": list(categories)})
        if self.category_error is not None:
            raise self.category_error
        return list(self.category_items.get(shop_id, []))

    async def search_items_by_text(self, shop_id: str, query: str, limit: int) -> List[CatalogItem]:
        self.text_calls.append({"shop_id": shop_id, "query": query, "limit": limit})
        needle = query.lower()
        found = [
            item for (item_shop, _), item in self.items.items()
            if item_shop == shop_id and item.is_active
            and needle in item.name.lower()
        ]
        return found[:limit]


class FakePreferenceSource:
    def __init__(self, preferences: Optional[List[UserPreference]] = None, error: Optional[Exception] = None):
        self.preferences = preferences or []
        self.error = error
        self.queries: List[str] = []

    async def preferences_for(self, query: str) -> List[UserPreference]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return list(self.preferences)


class FakeItemSearch:
    """
    Returns canned hits per shop and tracks how many searches overlap.
    """

    def __init__(
        self,
        hits: Dict[str, List[ScoredItem]],
        errors: Optional[Dict[str, Exception]] = None,
        delay: float = 0.0,
        delays: Optional[Dict[str, float]] = None
    ):
        self.hits = hits
        self.errors = errors or {}
        self.delay = delay
        self.delays = delays or {}
        self.calls: List[Dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.cancelled: List[str] = []

    async def search_items(self, shop_id: str, query_variants: List[str], limit: int) -> List[ScoredItem]:
        self.calls.append({"shop_id": shop_id, "variants": list(query_variants), "limit": limit})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(shop_id, self.delay)
            if delay:
                await asyncio.sleep(delay)
            if shop_id in self.errors:
                raise self.errors[shop_id]
            return list(self.hits.get(shop_id, []))[:limit]
        except asyncio.CancelledError:
            self.cancelled.append(shop_id)
            raise
        finally:
            self.in_flight -= 1


class FakeOrderPlacement:
    def __init__(self, outcome: Optional[OrderOutcome] = None):
        self.outcome = outcome
        self.requests: List[OrderRequest] = []

    async def place_order(self, request: OrderRequest) -> OrderOutcome:
        self.requests.append(request)
        if self.outcome is not None:
            return self.outcome
        return OrderOutcome(success=True, order=PlacedOrder(
            order_number="AY-000001",
            shop_id=request.shop_id,
            address_id=request.address_id,
            total_cents=1000,
        ))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def shops() -> List[Shop]:
    return [
        make_shop("shop-a", "Gulberg Mart", delivery_fee=50.0),
        make_shop("shop-b", "Model Town Store", delivery_fee=100.0),
    ]


@pytest.fixture
def catalog(shops) -> List[CatalogItem]:
    return [
        make_item("a-oreo-mini", "shop-a", "Oreo Mini Chocolate Cookies", price_cents=5000, stock_quantity=40),
        make_item("a-rio", "shop-a", "Rio Strawberry Biscuit", price_cents=3000, stock_quantity=60),
        make_item("a-lays", "shop-a", "Lay's Masala Chips", price_cents=7000, category="Munchies", stock_quantity=0),
        make_item("b-oreo-mini", "shop-b", "Oreo Mini Snack Pack", price_cents=5500, stock_quantity=2),
        make_item("b-rio", "shop-b", "Rio Biscuit Family Pack", price_cents=12000, stock_quantity=22),
        make_item("b-eggs", "shop-b", "Farm Eggs", price_cents=36000, category="Dairy", is_active=False),
    ]


@pytest.fixture
def items_by_id(catalog) -> Dict[str, CatalogItem]:
    return {item.id: item for item in catalog}


@pytest.fixture
def search_hits(items_by_id) -> Dict[str, List[ScoredItem]]:
    return {
        "shop-a": [
            ScoredItem(item=items_by_id["a-oreo-mini"], similarity=0.92),
            ScoredItem(item=items_by_id["a-rio"], similarity=0.81),
            ScoredItem(item=items_by_id["a-lays"], similarity=0.2),
        ],
        "shop-b": [
            ScoredItem(item=items_by_id["b-rio"], similarity=0.88),
        ],
    }


@pytest.fixture
def intent_extractor() -> CountingIntentExtractor:
    return CountingIntentExtractor()


@pytest.fixture
def shop_directory(shops, catalog) -> FakeShopDirectory:
    return FakeShopDirectory(shops, catalog)


@pytest.fixture
def item_search(search_hits) -> FakeItemSearch:
    return FakeItemSearch(search_hits)


@pytest.fixture
def broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster()


@pytest.fixture
def pipeline(intent_extractor, shop_directory, item_search, broadcaster) -> IntelligentSearchPipeline:
    return IntelligentSearchPipeline(
        intent_extractor=intent_extractor,
        shop_directory=shop_directory,
        item_search=item_search,
        broadcaster=broadcaster,
        timeout=1.0,
        min_similarity=0.5,
    )


@pytest.fixture
def cart_store() -> InMemoryCartStore:
    return InMemoryCartStore()


@pytest.fixture
def order_placement() -> FakeOrderPlacement:
    return FakeOrderPlacement()


@pytest.fixture
def user_context() -> UserContext:
    return UserContext(coordinates=GULBERG, default_address_id=DEFAULT_ADDRESS_ID)


@pytest.fixture
def dispatcher(pipeline, shop_directory, cart_store, order_placement, user_context) -> FunctionDispatcher:
    return FunctionDispatcher(
        pipeline=pipeline,
        shop_directory=shop_directory,
        cart_store=cart_store,
        order_placement=order_placement,
        user_context=user_context,
        timeout=1.0,
    )


@pytest.fixture
def test_database(tmp_path) -> DatabaseManager:
    """Create a temporary test database."""
    return DatabaseManager(str(tmp_path / "test_aroundyou.db"))


def user_messages(messages: List[Message]) -> List[str]:
    return [message.content for message in messages if message.role.value == "user"]
