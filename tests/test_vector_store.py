"""
Tests for the ChromaDB item index.

Uses an in-memory ChromaDB client and a keyword-count embedding client in
place of the OpenAI embeddings API.
"""

import uuid
from types import SimpleNamespace

import chromadb
import pytest
from chromadb.config import Settings

from aroundyou.vector_store import VectorStoreManager
from conftest import make_item

KEYWORDS = ["oreo", "rio", "lay", "cola", "milk", "biscuit"]


class KeywordEmbeddings:
    """Embeds text as keyword counts plus a small constant component."""

    def __init__(self):
        self.calls = []

    def create(self, model, input):
        self.calls.append(list(input))
        return SimpleNamespace(data=[SimpleNamespace(embedding=self.embed(text)) for text in input])

    @staticmethod
    def embed(text):
        lowered = text.lower()
        return [float(lowered.count(keyword)) for keyword in KEYWORDS] + [0.1]


@pytest.fixture
def embeddings():
    return KeywordEmbeddings()


@pytest.fixture
def store(embeddings):
    return VectorStoreManager(
        chroma_client=chromadb.EphemeralClient(settings=Settings(anonymized_telemetry=False)),
        openai_client=SimpleNamespace(embeddings=embeddings),
        embedding_model="test-embedding",
        collection_name=f"items_{uuid.uuid4().hex[:8]}",
    )


@pytest.fixture
def indexed_store(store):
    store.index_items([
        make_item("a-oreo", "shop-a", "Oreo Mini", category="Biscuits"),
        make_item("a-rio", "shop-a", "Rio Strawberry", category="Biscuits"),
        make_item("a-cola", "shop-a", "Coca-Cola 1.5L", category="Beverages", stock_quantity=None),
        make_item("a-milk", "shop-a", "Nestle Milk", category="Dairy", is_active=False),
        make_item("b-oreo", "shop-b", "Oreo Original", category="Biscuits"),
    ])
    return store


class TestIndexing:
    def test_index_and_count(self, indexed_store, embeddings):
        assert indexed_store.get_item_count() == 5
        assert len(embeddings.calls) == 1

    def test_document_text(self, store):
        item = make_item("a-rio", "shop-a", "Rio Strawberry", price_cents=3000, category="Biscuits")
        item.description = "Cream biscuits"
        assert store.item_to_document(item) == (
            "Item: Rio Strawberry\nCategory: Biscuits\nPrice: PKR 30.00\nDescription: Cream biscuits"
        )

    def test_empty_index(self, store):
        assert store.index_items([]) == 0

    def test_reindexing_upserts(self, indexed_store):
        indexed_store.index_items([make_item("a-oreo", "shop-a", "Oreo Mini", price_cents=6000)])
        assert indexed_store.get_item_count() == 5

    def test_clear_collection(self, indexed_store):
        indexed_store.clear_collection()
        assert indexed_store.get_item_count() == 0


class TestQuery:
    """Searches are scoped to one shop and skip inactive items."""

    def test_best_match_first(self, indexed_store):
        hits = indexed_store.query_shop("shop-a", ["oreo"], 5)

        assert hits[0].item.id == "a-oreo"
        assert all(hit.item.shop_id == "shop-a" for hit in hits)
        assert "a-milk" not in [hit.item.id for hit in hits]
        similarities = [hit.similarity for hit in hits]
        assert similarities == sorted(similarities, reverse=True)
        assert all(0 <= similarity <= 1 for similarity in similarities)

    def test_variants_embedded_together(self, indexed_store, embeddings):
        hits = indexed_store.query_shop("shop-a", ["oreo", "rio", "  "], 5)

        assert embeddings.calls[-1] == ["oreo", "rio"]
        top_two = {hit.item.id for hit in hits[:2]}
        assert top_two == {"a-oreo", "a-rio"}
        assert len({hit.item.id for hit in hits}) == len(hits)

    def test_limit(self, indexed_store):
        assert len(indexed_store.query_shop("shop-a", ["biscuit"], 1)) == 1

    def test_no_variants(self, indexed_store, embeddings):
        calls_before = len(embeddings.calls)
        assert indexed_store.query_shop("shop-a", ["", " "], 5) == []
        assert len(embeddings.calls) == calls_before

    def test_metadata_round_trip(self, indexed_store):
        hits = indexed_store.query_shop("shop-a", ["cola"], 1)
        item = hits[0].item
        assert item.id == "a-cola"
        assert item.stock_quantity is None
        assert item.category == "Beverages"
        assert item.description is None

    @pytest.mark.asyncio
    async def test_async_search(self, indexed_store):
        hits = await indexed_store.search_items("shop-b", ["oreo"], 5)
        assert [hit.item.id for hit in hits] == ["b-oreo"]
