"""
Item similarity search on ChromaDB.

Catalog items are embedded with the OpenAI embeddings API and stored in one
persistent collection, tagged with their shop id so each search can be
restricted to a single shop's catalog.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import chromadb
import openai
from chromadb.config import Settings

from aroundyou import config
from aroundyou.database import DatabaseManager
from aroundyou.models import CatalogItem, ScoredItem

logger = logging.getLogger(__name__)

# Collection name for shop items
ITEMS_COLLECTION = "shop_items"
EMBEDDING_BATCH_SIZE = 20


class VectorStoreManager:
    """
    Manages the ChromaDB collection of shop item embeddings.

    Implements the item similarity search collaborator: ``search_items``
    embeds every query variant in one request and keeps each item's best
    cosine similarity across the variants.
    """

    def __init__(
        self,
        persist_directory: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        embedding_model: Optional[str] = None,
        chroma_client: Optional[Any] = None,
        openai_client: Optional[openai.OpenAI] = None,
        collection_name: str = ITEMS_COLLECTION
    ):
        """
        Initialize the vector store manager.

        Args:
            persist_directory: Path to store vector database
            api_key: OpenAI/OpenRouter API key
            base_url: API base URL (OpenRouter by default)
            embedding_model: Model to use for embeddings
            chroma_client: Prebuilt ChromaDB client (e.g. an ``EphemeralClient``)
            openai_client: Prebuilt OpenAI client
            collection_name: Name of the item collection
        """
        self.persist_directory = persist_directory or config.VECTOR_STORE_PATH
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.collection_name = collection_name

        if openai_client is None:
            api_key = api_key or config.OPENAI_API_KEY
            if not api_key:
                raise ValueError("OPENAI_API_KEY environment variable is required")
            openai_client = openai.OpenAI(api_key=api_key, base_url=base_url or config.OPENAI_BASE_URL)
        self.openai_client = openai_client

        if chroma_client is None:
            chroma_client = chromadb.PersistentClient(
                path=self.persist_directory,
                settings=Settings(anonymized_telemetry=False)
            )
        self.chroma_client = chroma_client

        self.collection = self.chroma_client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"}
        )

    def generate_embeddings_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for multiple texts in one request.

        Args:
            texts: List of texts to embed

        Returns:
            List of embedding vectors, in input order
        """
        response = self.openai_client.embeddings.create(
            model=self.embedding_model,
            input=texts
        )
        return [item.embedding for item in response.data]

    def item_to_document(self, item: CatalogItem) -> str:
        """Text representation of an item used for its embedding."""
        parts = [f"Item: {item.name}"]
        if item.category:
            parts.append(f"Category: {item.category}")
        parts.append(f"Price: PKR {item.price_cents / 100:.2f}")
        if item.description:
            parts.append(f"Description: {item.description}")
        return "\n".join(parts)

    @staticmethod
    def _item_metadata(item: CatalogItem) -> Dict[str, Any]:
        # ChromaDB metadata values cannot be None
        return {
            "item_id": item.id,
            "shop_id": item.shop_id,
            "name": item.name,
            "description": item.description or "",
            "category": item.category or "",
            "price_cents": item.price_cents,
            "image_url": item.image_url or "",
            "is_active": item.is_active,
            "stock_quantity": -1 if item.stock_quantity is None else item.stock_quantity,
        }

    @staticmethod
    def _metadata_to_item(metadata: Dict[str, Any]) -> CatalogItem:
        stock = metadata.get("stock_quantity", -1)
        return CatalogItem(
            id=metadata["item_id"],
            shop_id=metadata["shop_id"],
            name=metadata["name"],
            description=metadata.get("description") or None,
            category=metadata.get("category") or None,
            price_cents=int(metadata.get("price_cents", 0)),
            image_url=metadata.get("image_url") or None,
            is_active=bool(metadata.get("is_active", True)),
            stock_quantity=None if stock is None or stock < 0 else int(stock),
        )

    def index_items(self, items: List[CatalogItem]) -> int:
        """
        Embed and upsert catalog items.

        Args:
            items: Items to index

        Returns:
            Number of items indexed
        """
        if not items:
            logger.info("No items to index")
            return 0

        documents = [self.item_to_document(item) for item in items]
        embeddings: List[List[float]] = []
        for i in range(0, len(documents), EMBEDDING_BATCH_SIZE):
            embeddings.extend(self.generate_embeddings_batch(documents[i:i + EMBEDDING_BATCH_SIZE]))
            logger.info("Embedded %d/%d items", min(i + EMBEDDING_BATCH_SIZE, len(documents)), len(documents))

        # Upsert to collection (updates if exists, inserts if not)
        self.collection.upsert(
            ids=[item.id for item in items],
            documents=documents,
            embeddings=embeddings,
            metadatas=[self._item_metadata(item) for item in items]
        )
        return len(items)

    def query_shop(self, shop_id: str, query_variants: List[str], limit: int) -> List[ScoredItem]:
        """
        Similarity search within one shop.

        Args:
            shop_id: Shop whose items are searched
            query_variants: Query strings; each item keeps its best match
            limit: Maximum number of items returned

        Returns:
            Scored items, best first
        """
        variants = [variant for variant in query_variants if variant and variant.strip()]
        if not variants or limit < 1:
            return []

        results = self.collection.query(
            query_embeddings=self.generate_embeddings_batch(variants),
            n_results=limit,
            where={"$and": [{"shop_id": shop_id}, {"is_active": True}]},
            include=["metadatas", "distances"]
        )

        best: Dict[str, ScoredItem] = {}
        for ids, metadatas, distances in zip(results["ids"], results["metadatas"], results["distances"]):
            for item_id, metadata, distance in zip(ids, metadatas, distances):
                # Cosine distance -> similarity
                similarity = 1 - distance
                existing = best.get(item_id)
                if existing is None or similarity > existing.similarity:
                    best[item_id] = ScoredItem(item=self._metadata_to_item(metadata), similarity=similarity)

        ranked = sorted(best.values(), key=lambda hit: hit.similarity, reverse=True)
        return ranked[:limit]

    async def search_items(self, shop_id: str, query_variants: List[str], limit: int) -> List[ScoredItem]:
        return await asyncio.to_thread(self.query_shop, shop_id, query_variants, limit)

    def get_item_count(self) -> int:
        """Get the number of items in the vector store."""
        return self.collection.count()

    def clear_collection(self):
        """Remove all items from the collection."""
        self.chroma_client.delete_collection(self.collection_name)
        self.collection = self.chroma_client.create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"}
        )


def initialize_vector_store(
    catalog_path: Optional[str] = None,
    vector_store_path: Optional[str] = None,
    database: Optional[DatabaseManager] = None,
    force_reinitialize: bool = False
) -> VectorStoreManager:
    """
    Load the catalog into SQLite and index its items.

    Args:
        catalog_path: Path to the catalog JSON file
        vector_store_path: Path for vector store persistence
        database: Database to load into (default database if omitted)
        force_reinitialize: If True, clear and rebuild the store

    Returns:
        Initialized VectorStoreManager
    """
    database = database or DatabaseManager()
    manager = VectorStoreManager(persist_directory=vector_store_path)

    current_count = manager.get_item_count()
    if current_count > 0 and not force_reinitialize:
        logger.info("Vector store already contains %d items", current_count)
        return manager

    if force_reinitialize:
        logger.info("Clearing existing vector store")
        manager.clear_collection()

    database.load_catalog(catalog_path)
    manager.index_items(database.list_items())
    return manager


def get_vector_store() -> VectorStoreManager:
    """Get the vector store manager with default settings."""
    return VectorStoreManager()


if __name__ == "__main__":
    import argparse

    from aroundyou.logging_config import setup_logging

    parser = argparse.ArgumentParser(description="Load the shop catalog and build the item vector store")
    parser.add_argument(
        "--catalog",
        type=str,
        default=config.CATALOG_PATH,
        help="Path to catalog JSON file"
    )
    parser.add_argument(
        "--vector-store",
        type=str,
        default=config.VECTOR_STORE_PATH,
        help="Path for vector store persistence"
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Force reinitialization of vector store"
    )
    parser.add_argument(
        "--test-search",
        type=str,
        help="Test search query after initialization"
    )
    parser.add_argument(
        "--shop",
        type=str,
        help="Shop id to run the test search in"
    )

    args = parser.parse_args()
    setup_logging()

    print("=" * 50)
    print("Initializing Item Vector Store")
    print("=" * 50)

    manager = initialize_vector_store(
        catalog_path=args.catalog,
        vector_store_path=args.vector_store,
        force_reinitialize=args.force
    )

    print(f"\nVector store initialized with {manager.get_item_count()} items")

    if args.test_search and args.shop:
        print(f"\nTesting search in {args.shop} with query: '{args.test_search}'")
        for i, hit in enumerate(manager.query_shop(args.shop, [args.test_search], 3), 1):
            print(f"\n--- Result {i} ---")
            print(f"Item: {hit.item.name}")
            print(f"Price: PKR {hit.item.price_cents / 100:.2f}")
            print(f"Similarity: {hit.similarity:.3f}")
