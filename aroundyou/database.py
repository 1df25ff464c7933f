"""
SQLite catalog and order persistence.

Stores shops, their items, delivery addresses, shopper preferences and
orders, and enforces the order business rules (open shop, delivery address,
delivery landmark, item availability). ``CatalogDirectory``,
``SqliteOrderPlacement`` and ``SqlitePreferenceSource`` expose the database
through the async collaborator interfaces.
"""

import asyncio
import json
import logging
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from aroundyou import config
from aroundyou.delivery import haversine_km
from aroundyou.models import (
    Address, CatalogItem, Coordinates, DeliveryLogic, OrderOutcome, OrderRequest,
    OrderStatus, PlacedOrder, Shop, UserPreference
)

logger = logging.getLogger(__name__)

DEFAULT_DELIVERY_RADIUS_KM = 5.0

LANDMARK_REQUIRED = "Please provide a nearby landmark so the rider can easily find you."
NO_ADDRESS = "No delivery address found. Please add an address first."

_LANDMARK_PATTERN = re.compile(r"(?:landmark|near|nearby)[:\s]+([^,\.]+)", re.IGNORECASE)
_WORD = re.compile(r"[a-z0-9']+")


def category_matches(category: Optional[str], names: List[str]) -> bool:
    """True if ``category`` contains, or is contained in, any lower-cased name."""
    if not category:
        return False
    category = category.lower()
    return any(name in category or category in name for name in names)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def extract_landmark(instructions: Optional[str]) -> Optional[str]:
    """
    Find a delivery landmark in free-form instructions.

    "landmark: blue mosque", "near the park" and "nearby X" are recognized.
    Short instructions (under 100 characters) without a marker are taken as
    the landmark itself.
    """
    if not instructions or not instructions.strip():
        return None
    match = _LANDMARK_PATTERN.search(instructions)
    if match and match.group(1).strip():
        return match.group(1).strip()
    if len(instructions) < 100:
        return instructions.strip()
    return None


class DatabaseManager:
    """
    Manages SQLite connections and catalog/order operations.

    Uses parameterized queries and a connection per operation, so a manager
    can be shared with worker threads.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Args:
            db_path: Path to SQLite database file. Uses DATABASE_PATH if not provided.
        """
        self.db_path = Path(db_path or config.DATABASE_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self):
        """Create database tables if they don't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS shops (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    address TEXT,
                    latitude REAL,
                    longitude REAL,
                    delivery_fee REAL CHECK(delivery_fee IS NULL OR delivery_fee >= 0),
                    delivery_logic TEXT,
                    delivery_radius_km REAL NOT NULL DEFAULT 5.0,
                    is_open INTEGER NOT NULL DEFAULT 1
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS shop_items (
                    id TEXT PRIMARY KEY,
                    shop_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    category TEXT,
                    price_cents INTEGER NOT NULL CHECK(price_cents >= 0),
                    image_url TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    stock_quantity INTEGER CHECK(stock_quantity IS NULL OR stock_quantity >= 0),
                    FOREIGN KEY (shop_id) REFERENCES shops(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS addresses (
                    id TEXT PRIMARY KEY,
                    street_address TEXT NOT NULL,
                    city TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    landmark TEXT,
                    is_default INTEGER NOT NULL DEFAULT 0
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id TEXT PRIMARY KEY,
                    order_number TEXT NOT NULL UNIQUE,
                    shop_id TEXT NOT NULL,
                    address_id TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    payment_method TEXT NOT NULL DEFAULT 'cash',
                    total_cents INTEGER NOT NULL CHECK(total_cents >= 0),
                    special_instructions TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (shop_id) REFERENCES shops(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS order_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_id TEXT NOT NULL,
                    item_id TEXT NOT NULL,
                    item_name TEXT NOT NULL,
                    quantity INTEGER NOT NULL CHECK(quantity >= 1),
                    unit_price_cents INTEGER NOT NULL CHECK(unit_price_cents >= 0),
                    subtotal_cents INTEGER NOT NULL CHECK(subtotal_cents >= 0),
                    FOREIGN KEY (order_id) REFERENCES orders(id)
                        ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS user_preferences (
                    entity_name TEXT PRIMARY KEY,
                    preference_value TEXT NOT NULL,
                    confidence REAL NOT NULL DEFAULT 1.0
                        CHECK(confidence >= 0 AND confidence <= 1)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_shop_items_shop_id
                ON shop_items(shop_id)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_order_items_order_id
                ON order_items(order_id)
            """)

    # =========================================================================
    # Catalog
    # =========================================================================

    def add_shop(self, shop: Shop, delivery_radius_km: float = DEFAULT_DELIVERY_RADIUS_KM) -> str:
        """Insert or update a shop and return its id."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO shops (
                    id, name, address, latitude, longitude,
                    delivery_fee, delivery_logic, delivery_radius_km, is_open
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    address = excluded.address,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    delivery_fee = excluded.delivery_fee,
                    delivery_logic = excluded.delivery_logic,
                    delivery_radius_km = excluded.delivery_radius_km,
                    is_open = excluded.is_open
            """, (
                shop.id,
                shop.name,
                shop.address,
                shop.latitude,
                shop.longitude,
                shop.delivery_fee,
                shop.delivery_logic.model_dump_json() if shop.delivery_logic else None,
                delivery_radius_km,
                int(shop.is_open)
            ))
        return shop.id

    def add_item(self, item: CatalogItem) -> str:
        """Insert or replace a shop item and return its id."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO shop_items (
                    id, shop_id, name, description, category,
                    price_cents, image_url, is_active, stock_quantity
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                item.id,
                item.shop_id,
                item.name,
                item.description,
                item.category,
                item.price_cents,
                item.image_url,
                int(item.is_active),
                item.stock_quantity
            ))
        return item.id

    def get_shop(self, shop_id: str) -> Optional[Shop]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM shops WHERE id = ?", (shop_id,)).fetchone()
            return self._row_to_shop(row) if row else None

    def get_item(self, shop_id: str, item_id: str) -> Optional[CatalogItem]:
        """Look up an item; items belonging to another shop are not returned."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM shop_items WHERE id = ? AND shop_id = ?",
                (item_id, shop_id)
            ).fetchone()
            return self._row_to_item(row) if row else None

    def list_items(self, shop_id: Optional[str] = None) -> List[CatalogItem]:
        with self._get_connection() as conn:
            if shop_id is None:
                rows = conn.execute("SELECT * FROM shop_items ORDER BY shop_id, name").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM shop_items WHERE shop_id = ? ORDER BY name", (shop_id,)
                ).fetchall()
            return [self._row_to_item(row) for row in rows]

    def find_shops_near(self, latitude: float, longitude: float, limit: int = 10) -> List[Shop]:
        """
        Open shops whose delivery radius covers the given point, nearest first.

        Args:
            latitude: User latitude
            longitude: User longitude
            limit: Maximum number of shops to return
        """
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM shops
                WHERE is_open = 1 AND latitude IS NOT NULL AND longitude IS NOT NULL
            """).fetchall()

        candidates: List[Tuple[float, Shop]] = []
        for row in rows:
            distance = haversine_km(latitude, longitude, row['latitude'], row['longitude'])
            if distance <= row['delivery_radius_km']:
                candidates.append((distance, self._row_to_shop(row)))

        candidates.sort(key=lambda entry: entry[0])
        return [shop for _, shop in candidates[:limit]]

    def get_items_in_categories(self, shop_id: str, names: List[str]) -> List[CatalogItem]:
        """
        Active items of a shop whose category matches any of ``names``.

        A category matches when either name contains the other, ignoring case,
        so "Biscuits" matches "Bakery & Biscuits" and "chips" matches "Chips & Crisps".
        """
        wanted = [name.strip().lower() for name in names if name and name.strip()]
        if not wanted:
            return []

        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM shop_items
                WHERE shop_id = ? AND is_active = 1 AND category IS NOT NULL
                ORDER BY name
            """, (shop_id,)).fetchall()

        return [
            self._row_to_item(row) for row in rows
            if category_matches(row['category'], wanted)
        ]

    def search_items_by_text(self, shop_id: str, query: str, limit: int = 5) -> List[CatalogItem]:
        """Active items of a shop whose name contains ``query``, ignoring case."""
        query = query.strip()
        if not query:
            return []
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM shop_items
                WHERE shop_id = ? AND is_active = 1 AND name LIKE ? ESCAPE '\\'
                ORDER BY name
                LIMIT ?
            """, (shop_id, f"%{_escape_like(query)}%", limit)).fetchall()
            return [self._row_to_item(row) for row in rows]

    # =========================================================================
    # Preferences
    # =========================================================================

    def save_preference(self, preference: UserPreference) -> str:
        """Insert or update a preference keyed by entity name."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO user_preferences (entity_name, preference_value, confidence)
                VALUES (?, ?, ?)
                ON CONFLICT(entity_name) DO UPDATE SET
                    preference_value = excluded.preference_value,
                    confidence = excluded.confidence
            """, (preference.entity_name, preference.preference_value.value, preference.confidence))
        return preference.entity_name

    def find_preferences(self, query: str, limit: int = 10) -> List[UserPreference]:
        """
        Preferences whose entity shares a word with ``query``, most confident first.
        """
        words = set(_WORD.findall(query.lower()))
        if not words:
            return []
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM user_preferences ORDER BY confidence DESC, entity_name"
            ).fetchall()

        matches = [
            UserPreference(
                entity_name=row['entity_name'],
                preference_value=row['preference_value'],
                confidence=row['confidence']
            )
            for row in rows
            if words & set(_WORD.findall(row['entity_name']))
        ]
        return matches[:limit]

    # =========================================================================
    # Addresses
    # =========================================================================

    def add_address(self, address: Address) -> str:
        """Save an address. A new default address replaces the previous default."""
        with self._get_connection() as conn:
            if address.is_default:
                conn.execute("UPDATE addresses SET is_default = 0")
            conn.execute("""
                INSERT OR REPLACE INTO addresses (
                    id, street_address, city, latitude, longitude, landmark, is_default
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                address.id,
                address.street_address,
                address.city,
                address.latitude,
                address.longitude,
                address.landmark,
                int(address.is_default)
            ))
        return address.id

    def get_address(self, address_id: str) -> Optional[Address]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM addresses WHERE id = ?", (address_id,)).fetchone()
            return self._row_to_address(row) if row else None

    def get_default_address(self) -> Optional[Address]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM addresses WHERE is_default = 1 LIMIT 1"
            ).fetchone()
            return self._row_to_address(row) if row else None

    # =========================================================================
    # Orders
    # =========================================================================

    def create_order(self, request: OrderRequest) -> OrderOutcome:
        """
        Validate and persist an order.

        Business-rule violations are returned as ``OrderOutcome(success=False)``
        with a user-facing reason; a missing landmark uses ``LANDMARK_REQUIRED``.

        Args:
            request: Order request built from a shop cart

        Returns:
            The outcome, with the placed order on success
        """
        shop = self.get_shop(request.shop_id)
        if shop is None:
            return OrderOutcome(success=False, reason="Shop not found")
        if not shop.is_open:
            return OrderOutcome(success=False, reason="This shop is currently closed.")

        if request.address_id:
            address = self.get_address(request.address_id)
        else:
            address = self.get_default_address()
        if address is None:
            return OrderOutcome(success=False, reason=NO_ADDRESS)

        landmark = (address.landmark or "").strip() or extract_landmark(request.special_instructions)
        if not landmark:
            return OrderOutcome(success=False, reason=LANDMARK_REQUIRED)

        with self._get_connection() as conn:
            cursor = conn.cursor()

            lines = []
            unavailable = []
            for line in request.items:
                row = cursor.execute(
                    "SELECT * FROM shop_items WHERE id = ? AND shop_id = ?",
                    (line.item_id, request.shop_id)
                ).fetchone()
                if row is None:
                    unavailable.append(line.item_id)
                    continue
                item = self._row_to_item(row)
                if not item.available or (
                    item.stock_quantity is not None and item.stock_quantity < line.quantity
                ):
                    unavailable.append(item.name)
                    continue
                lines.append((item, line.quantity))

            if unavailable:
                return OrderOutcome(
                    success=False,
                    reason=(
                        f"Some items are no longer available: {', '.join(unavailable)}. "
                        "Please remove them from your cart."
                    )
                )

            now = datetime.now(timezone.utc)
            count = cursor.execute("SELECT COUNT(*) FROM orders").fetchone()[0]
            order = PlacedOrder(
                order_number=f"AY-{count + 1:06d}",
                shop_id=request.shop_id,
                address_id=address.id,
                status=OrderStatus.PENDING,
                total_cents=sum(item.price_cents * quantity for item, quantity in lines),
                special_instructions=request.special_instructions,
                created_at=now,
            )

            cursor.execute("""
                INSERT INTO orders (
                    id, order_number, shop_id, address_id, status, payment_method,
                    total_cents, special_instructions, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                order.id,
                order.order_number,
                order.shop_id,
                order.address_id,
                order.status.value,
                request.payment_method,
                order.total_cents,
                order.special_instructions,
                now.isoformat(),
                now.isoformat()
            ))

            for item, quantity in lines:
                cursor.execute("""
                    INSERT INTO order_items (
                        order_id, item_id, item_name, quantity,
                        unit_price_cents, subtotal_cents
                    ) VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    order.id,
                    item.id,
                    item.name,
                    quantity,
                    item.price_cents,
                    item.price_cents * quantity
                ))
                if item.stock_quantity is not None:
                    cursor.execute(
                        "UPDATE shop_items SET stock_quantity = stock_quantity - ? WHERE id = ?",
                        (quantity, item.id)
                    )

        logger.info("Order %s placed for shop %s", order.order_number, order.shop_id)
        return OrderOutcome(success=True, order=order)

    def get_order_by_id(self, order_id: str) -> Optional[PlacedOrder]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
            return self._row_to_order(row) if row else None

    # =========================================================================
    # Seeding
    # =========================================================================

    def load_catalog(self, file_path: Optional[str] = None) -> Tuple[int, int]:
        """
        Load shops, items, addresses and preferences from a JSON catalog file.

        The file holds ``{"shops": [{..., "items": [...]}], "addresses": [...],
        "preferences": [...]}``.

        Returns:
            (shop count, item count)
        """
        path = Path(file_path or config.CATALOG_PATH)
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        shop_count = item_count = 0
        for shop_data in data.get("shops", []):
            shop_data = dict(shop_data)
            items = shop_data.pop("items", [])
            radius = shop_data.pop("delivery_radius_km", DEFAULT_DELIVERY_RADIUS_KM)
            shop = Shop(**shop_data)
            self.add_shop(shop, delivery_radius_km=radius)
            shop_count += 1
            for item_data in items:
                self.add_item(CatalogItem(shop_id=shop.id, **item_data))
                item_count += 1

        for address_data in data.get("addresses", []):
            self.add_address(Address(**address_data))

        for preference_data in data.get("preferences", []):
            self.save_preference(UserPreference(**preference_data))

        logger.info("Loaded %d shops and %d items from %s", shop_count, item_count, path)
        return shop_count, item_count

    # =========================================================================
    # Row mapping
    # =========================================================================

    @staticmethod
    def _row_to_shop(row: sqlite3.Row) -> Shop:
        return Shop(
            id=row['id'],
            name=row['name'],
            address=row['address'],
            latitude=row['latitude'],
            longitude=row['longitude'],
            delivery_fee=row['delivery_fee'],
            delivery_logic=DeliveryLogic.model_validate_json(row['delivery_logic']) if row['delivery_logic'] else None,
            is_open=bool(row['is_open'])
        )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> CatalogItem:
        return CatalogItem(
            id=row['id'],
            shop_id=row['shop_id'],
            name=row['name'],
            description=row['description'],
            category=row['category'],
            price_cents=row['price_cents'],
            image_url=row['image_url'],
            is_active=bool(row['is_active']),
            stock_quantity=row['stock_quantity']
        )

    @staticmethod
    def _row_to_address(row: sqlite3.Row) -> Address:
        return Address(
            id=row['id'],
            street_address=row['street_address'],
            city=row['city'],
            latitude=row['latitude'],
            longitude=row['longitude'],
            landmark=row['landmark'],
            is_default=bool(row['is_default'])
        )

    @staticmethod
    def _row_to_order(row: sqlite3.Row) -> PlacedOrder:
        return PlacedOrder(
            id=row['id'],
            order_number=row['order_number'],
            shop_id=row['shop_id'],
            address_id=row['address_id'],
            status=OrderStatus(row['status']),
            total_cents=row['total_cents'],
            special_instructions=row['special_instructions'],
            created_at=datetime.fromisoformat(row['created_at'])
        )


def get_database() -> DatabaseManager:
    """Get the default database manager instance."""
    return DatabaseManager()


# =============================================================================
# Async collaborator adapters
# =============================================================================

class CatalogDirectory:
    """Shop directory backed by a ``DatabaseManager``."""

    def __init__(self, database: DatabaseManager):
        self.database = database

    async def find_shops(self, coordinates: Coordinates, limit: int) -> List[Shop]:
        return await asyncio.to_thread(
            self.database.find_shops_near, coordinates.latitude, coordinates.longitude, limit
        )

    async def get_shop(self, shop_id: str) -> Optional[Shop]:
        return await asyncio.to_thread(self.database.get_shop, shop_id)

    async def get_item(self, shop_id: str, item_id: str) -> Optional[CatalogItem]:
        return await asyncio.to_thread(self.database.get_item, shop_id, item_id)

    async def items_in_categories(self, shop_id: str, names: List[str]) -> List[CatalogItem]:
        return await asyncio.to_thread(self.database.get_items_in_categories, shop_id, names)

    async def search_items_by_text(self, shop_id: str, query: str, limit: int) -> List[CatalogItem]:
        return await asyncio.to_thread(self.database.search_items_by_text, shop_id, query, limit)


class SqliteOrderPlacement:
    """Order placement backed by a ``DatabaseManager``."""

    def __init__(self, database: DatabaseManager):
        self.database = database

    async def place_order(self, request: OrderRequest) -> OrderOutcome:
        return await asyncio.to_thread(self.database.create_order, request)


class SqlitePreferenceSource:
    """Shopper preferences backed by a ``DatabaseManager``."""

    def __init__(self, database: DatabaseManager, limit: int = 10):
        self.database = database
        self.limit = limit

    async def preferences_for(self, query: str) -> List[UserPreference]:
        return await asyncio.to_thread(self.database.find_preferences, query, self.limit)
