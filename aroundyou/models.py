"""
Pydantic models for the conversational commerce core.

Defines the dialogue types (messages, tool calls, snapshots), the intelligent
search types (intent, progress steps, scored results), and the cart and order
types exchanged with collaborators, with validators for the business rules
each type carries.
"""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Dialogue
# =============================================================================

class MessageRole(str, Enum):
    """Enumeration for message roles in the turn log."""
    USER = "user"
    ASSISTANT = "assistant"
    FUNCTION = "function"
    SYSTEM = "system"


class ToolCall(BaseModel):
    """
    A structured operation selection made by the model instead of free text.

    Attributes:
        id: Identifier pairing the call with its function-role answer
        name: Registry name of the selected operation
        arguments: Raw JSON argument payload as produced by the model
    """
    id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:24]}", description="Tool call id")
    name: str = Field(..., min_length=1, description="Function name")
    arguments: str = Field(default="{}", description="JSON argument payload")


class Message(BaseModel):
    """
    One turn-log entry.

    Attributes:
        role: Who produced the message
        content: Text content (None for a pure tool call)
        name: Function name, required on function-role messages
        tool_call: Tool selection, assistant messages only
        tool_call_id: Id of the tool call a function-role message answers
        tool_result: Structured result behind a function-role message
        streaming_complete: False while the assistant reply is still streaming
        timestamp: Creation time (UTC)
    """
    role: MessageRole
    content: Optional[str] = Field(None, description="Message content")
    name: Optional[str] = Field(None, description="Function name for function results")
    tool_call: Optional[ToolCall] = Field(None, description="Tool call selected by the model")
    tool_call_id: Optional[str] = Field(None, description="Tool call this result answers")
    tool_result: Optional[Dict[str, Any]] = Field(None, description="Structured function result")
    streaming_complete: bool = Field(default=True, description="Whether streaming has finished")
    timestamp: datetime = Field(default_factory=_utcnow, description="Message timestamp")

    @model_validator(mode='after')
    def validate_role_fields(self) -> 'Message':
        """Function results must be named; only the assistant may call tools."""
        if self.role == MessageRole.FUNCTION and not self.name:
            raise ValueError("function messages require a name")
        if self.tool_call is not None and self.role != MessageRole.ASSISTANT:
            raise ValueError("only assistant messages may carry a tool call")
        return self


class ConversationState(BaseModel):
    """
    Snapshot of a conversation for persistence.

    Round-tripping through ``model_dump(mode="json")`` and ``model_validate``
    is loss-free.
    """
    version: int = Field(default=1, ge=1, description="Snapshot format version")
    messages: List[Message] = Field(default_factory=list, description="Ordered turn log")
    system_prompt: str = Field(default="", description="Standing system instructions")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")


class ModelChunk(BaseModel):
    """One fragment streamed back by the tool-calling model."""
    text: Optional[str] = None
    tool_call: Optional[ToolCall] = None


class TurnResult(BaseModel):
    """Outcome of one model turn (``send_message`` or ``continue_conversation``)."""
    text: Optional[str] = None
    tool_call: Optional[ToolCall] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    generation: int = 0
    stale: bool = False

    @property
    def success(self) -> bool:
        return self.error is None


# =============================================================================
# Location and user context
# =============================================================================

class Coordinates(BaseModel):
    """A WGS84 position."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class UserContext(BaseModel):
    """What the dispatcher knows about the shopper outside the conversation."""
    coordinates: Optional[Coordinates] = Field(None, description="Current location")
    default_address_id: Optional[str] = Field(None, description="Saved default delivery address")
    landmark: Optional[str] = Field(None, description="Landmark for the current address")


class PreferenceValue(str, Enum):
    """How the shopper feels about an entity."""
    PREFERS = "prefers"
    AVOIDS = "avoids"
    ALLERGIC = "allergic"


class UserPreference(BaseModel):
    """A remembered shopper preference, e.g. prefers "olpers"."""
    entity_name: str = Field(..., min_length=1, description="Brand, item or ingredient")
    preference_value: PreferenceValue
    confidence: float = Field(default=1.0, ge=0, le=1)

    @field_validator('entity_name')
    @classmethod
    def normalize_entity(cls, v: str) -> str:
        return v.strip().lower()

    def matches(self, item: "CatalogItem") -> bool:
        """True if the item's name or description mentions the entity."""
        name = item.name.lower()
        description = (item.description or "").lower()
        return self.entity_name in name or name in self.entity_name or self.entity_name in description


# =============================================================================
# Intelligent search
# =============================================================================

class ExtractedItem(BaseModel):
    """
    A normalized product request parsed from free-form text.

    Attributes:
        name: Item name as understood
        brand: Brand, when one was named or implied
        category: Category the item most likely lives in
        quantity: Requested quantity (at least 1)
        search_terms: Variants to search for this item
    """
    name: str = Field(..., min_length=1, description="Item name")
    brand: Optional[str] = Field(None, description="Brand name")
    category: Optional[str] = Field(None, description="Category name")
    quantity: int = Field(default=1, ge=1, description="Requested quantity")
    search_terms: List[str] = Field(default_factory=list, description="Search variants")

    @field_validator('quantity', mode='before')
    @classmethod
    def normalize_quantity(cls, v: Any) -> int:
        """Zero, negative, missing or non-numeric quantities mean 1."""
        try:
            quantity = int(float(v))
        except (TypeError, ValueError, OverflowError):
            return 1
        return quantity if quantity > 0 else 1

    @model_validator(mode='after')
    def default_search_terms(self) -> 'ExtractedItem':
        if not self.search_terms:
            self.search_terms = [self.name]
        return self


class SearchIntent(BaseModel):
    """Output of the intent-extraction step."""
    primary_query: str = Field(..., min_length=1, description="Canonical search string")
    expanded_queries: List[str] = Field(default_factory=list, description="Brand/synonym/category variants")
    categories: List[str] = Field(default_factory=list)
    brands: List[str] = Field(default_factory=list)
    item_types: List[str] = Field(default_factory=list)
    extracted_items: List[ExtractedItem] = Field(default_factory=list)
    reasoning: str = Field(default="", description="Model reasoning kept for transparency")

    @classmethod
    def fallback(cls, query: str, reasoning: str) -> 'SearchIntent':
        """Intent that searches the raw query as a single item."""
        return cls(
            primary_query=query,
            expanded_queries=[query],
            extracted_items=[ExtractedItem(name=query, search_terms=[query], quantity=1)],
            reasoning=reasoning,
        )

    def query_variants(self) -> List[str]:
        """Primary query followed by expanded queries, de-duplicated case-insensitively."""
        seen = set()
        variants = []
        for query in [self.primary_query, *self.expanded_queries]:
            key = query.strip().lower()
            if key and key not in seen:
                seen.add(key)
                variants.append(query.strip())
        return variants


class StepId(str, Enum):
    """The five canonical search stages, in execution order."""
    UNDERSTAND_INTENT = "understand_intent"
    FIND_SHOPS = "find_shops"
    SEMANTIC_SEARCH = "semantic_search"
    EXPANDING_SEARCH = "expanding_search"
    RANKING = "ranking"


STEP_ORDER: List[StepId] = list(StepId)


class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


class SearchStep(BaseModel):
    id: StepId
    label: str
    status: StepStatus = StepStatus.PENDING
    details: Optional[Dict[str, Any]] = None


class SearchProgress(BaseModel):
    """Ordered snapshot of all five search steps."""
    steps: List[SearchStep]
    current_step_id: Optional[StepId] = None
    primary_query: Optional[str] = None
    expanded_queries: List[str] = Field(default_factory=list)

    @field_validator('steps')
    @classmethod
    def validate_canonical_steps(cls, v: List[SearchStep]) -> List[SearchStep]:
        if [step.id for step in v] != STEP_ORDER:
            raise ValueError("progress must list the five canonical steps in order")
        return v

    def statuses(self) -> List[StepStatus]:
        return [step.status for step in self.steps]

    def step(self, step_id: StepId) -> SearchStep:
        return self.steps[STEP_ORDER.index(StepId(step_id))]


class DeliveryTier(BaseModel):
    """Fee charged up to a distance from the shop."""
    max_distance_m: float = Field(..., gt=0, description="Upper bound of the tier in metres")
    fee: float = Field(..., ge=0, description="Fee in PKR")


class DeliveryLogic(BaseModel):
    """
    A shop's distance-based delivery pricing.

    Tiers are matched in order of distance. Past the last tier every started
    ``beyond_tier_distance_unit`` metres adds ``beyond_tier_fee_per_unit``.
    Fees never exceed ``max_delivery_fee``.
    """
    distance_tiers: List[DeliveryTier] = Field(default_factory=list)
    max_delivery_fee: float = Field(..., ge=0)
    beyond_tier_distance_unit: float = Field(default=1000.0, gt=0)
    beyond_tier_fee_per_unit: float = Field(default=0.0, ge=0)

    @field_validator('distance_tiers')
    @classmethod
    def sort_tiers(cls, v: List[DeliveryTier]) -> List[DeliveryTier]:
        return sorted(v, key=lambda tier: tier.max_distance_m)


class Shop(BaseModel):
    """A shop that can deliver to the user."""
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    delivery_fee: Optional[float] = Field(None, ge=0, description="Base delivery fee in PKR")
    delivery_logic: Optional[DeliveryLogic] = Field(None, description="Distance-based fee rules")
    is_open: bool = True


class CatalogItem(BaseModel):
    """A merchant item in a shop's catalog."""
    id: str = Field(..., min_length=1)
    shop_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    price_cents: int = Field(..., ge=0, description="Price in paisa")
    image_url: Optional[str] = None
    is_active: bool = True
    stock_quantity: Optional[int] = Field(None, ge=0, description="Units in stock, None if untracked")

    @property
    def available(self) -> bool:
        return self.is_active and self.stock_quantity != 0


class ScoredItem(BaseModel):
    """A catalog item with its similarity to the query."""
    item: CatalogItem
    similarity: float = Field(..., ge=0, le=1)

    @field_validator('similarity', mode='before')
    @classmethod
    def clamp_similarity(cls, v: Any) -> float:
        return min(1.0, max(0.0, float(v)))


class ShopSearchResult(BaseModel):
    """One shop's ranked slice of a search."""
    shop: Shop
    items: List[ScoredItem] = Field(default_factory=list, description="Top items surfaced")
    total_items: int = Field(default=0, ge=0, description="True number of matches")
    relevance_score: float = Field(default=0.0, ge=0)
    category_matches: List[str] = Field(default_factory=list)


class SearchResponse(BaseModel):
    results: List[ShopSearchResult] = Field(default_factory=list)
    intent: SearchIntent
    reasoning: str = ""
    total_found: int = 0


class SearchOutcome(BaseModel):
    """What the pipeline hands back to the dispatcher."""
    response: Optional[SearchResponse] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    progress: SearchProgress

    @property
    def success(self) -> bool:
        return self.error is None


# =============================================================================
# Function calls
# =============================================================================

class FunctionCallRequest(BaseModel):
    """A tool call handed to the dispatcher."""
    name: str = Field(..., min_length=1)
    arguments: str = Field(default="{}")
    call_id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:24]}")
    generation: int = 0

    @classmethod
    def from_tool_call(cls, tool_call: ToolCall, generation: int = 0) -> 'FunctionCallRequest':
        return cls(
            name=tool_call.name,
            arguments=tool_call.arguments,
            call_id=tool_call.id,
            generation=generation,
        )


class FunctionResult(BaseModel):
    """Normalized outcome of a dispatched function call."""
    name: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, name: str, data: Dict[str, Any]) -> 'FunctionResult':
        return cls(name=name, data=data)

    @classmethod
    def failure(
        cls,
        name: str,
        error: str,
        kind: str = "error",
        data: Optional[Dict[str, Any]] = None
    ) -> 'FunctionResult':
        return cls(name=name, error=error, error_kind=kind, data=data)

    def to_payload(self) -> Dict[str, Any]:
        """Model-facing JSON payload."""
        payload: Dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["result"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        return payload

    def model_content(self) -> str:
        """JSON text shown to the model. Progress steps are UI-only and omitted."""
        payload = self.to_payload()
        data = payload.get("result")
        if isinstance(data, dict) and "steps" in data:
            payload["result"] = {key: value for key, value in data.items() if key != "steps"}
        return json.dumps(payload, default=str)


class AssistantReply(BaseModel):
    """Result of one user turn, including any dispatch rounds."""
    text: Optional[str] = None
    function_results: List[FunctionResult] = Field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    stale: bool = False


# =============================================================================
# Cart
# =============================================================================

class CartLine(BaseModel):
    item_id: str = Field(..., min_length=1)
    name: str
    price_cents: int = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image_url: Optional[str] = None


class ShopCart(BaseModel):
    """
    One shop's cart.

    Totals are recalculated from the lines whenever a cart is built.
    """
    shop_id: str = Field(..., min_length=1)
    shop_name: str
    shop_address: Optional[str] = None
    items: List[CartLine] = Field(default_factory=list)
    total_items: int = 0
    total_price_cents: int = 0

    @model_validator(mode='after')
    def calculate_totals(self) -> 'ShopCart':
        self.total_items = sum(line.quantity for line in self.items)
        self.total_price_cents = sum(line.quantity * line.price_cents for line in self.items)
        return self

    def find_line(self, item_id: str) -> Optional[CartLine]:
        return next((line for line in self.items if line.item_id == item_id), None)

    def summary(self) -> Dict[str, Any]:
        """Payload shape used in function results."""
        return {
            "shopId": self.shop_id,
            "shopName": self.shop_name,
            "shopAddress": self.shop_address,
            "totalItems": self.total_items,
            "totalPrice": self.total_price_cents,
            "items": [
                {
                    "id": line.item_id,
                    "name": line.name,
                    "quantity": line.quantity,
                    "price_cents": line.price_cents,
                }
                for line in self.items
            ],
        }


# =============================================================================
# Orders
# =============================================================================

class OrderStatus(str, Enum):
    """Enumeration for order status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Address(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    street_address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    landmark: Optional[str] = None
    is_default: bool = False


class OrderLine(BaseModel):
    item_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class OrderRequest(BaseModel):
    """Order placement request built from a shop cart."""
    shop_id: str = Field(..., min_length=1)
    address_id: Optional[str] = None
    items: List[OrderLine] = Field(..., min_length=1)
    payment_method: str = Field(default="cash")
    special_instructions: Optional[str] = None


class PlacedOrder(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_number: str
    shop_id: str
    address_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    total_cents: int = Field(..., ge=0)
    special_instructions: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


LANDMARK_MARKER = "landmark"


class OrderOutcome(BaseModel):
    """Result from the order placement collaborator."""
    success: bool
    order: Optional[PlacedOrder] = None
    reason: Optional[str] = None

    @property
    def landmark_required(self) -> bool:
        """True when the rejection is the delivery-landmark rule."""
        return (
            not self.success
            and self.reason is not None
            and LANDMARK_MARKER in self.reason.lower()
        )
