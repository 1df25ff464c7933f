"""
Function schema registry.

The closed catalog of commerce operations the tool-calling model may select.
Each entry's pydantic arguments model is the only authority on what the
dispatcher accepts, and the model-facing JSON schema is generated from it.
"""

import json
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator, model_validator

from aroundyou.errors import MalformedFunctionArguments, UnknownFunctionError

SCHEMA_VERSION = "2024-06-01"

DEFAULT_MAX_SHOPS = 10
DEFAULT_ITEMS_PER_SHOP = 10
DEFAULT_SHOP_SEARCH_LIMIT = 5


# =============================================================================
# Argument Models
# =============================================================================

class FunctionArguments(BaseModel):
    """Base for all argument models: closed, camelCase on the wire."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @model_validator(mode='before')
    @classmethod
    def drop_null_values(cls, data: Any) -> Any:
        """An explicit null means 'use the default'."""
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


def _require_text(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be empty")
    return value


def _shop_id():
    return Field(..., alias="shopId", description="The id of the shop")


def _item_id():
    return Field(..., alias="itemId", description="The id of the shop item")


# Integer parameters are strict so JSON booleans are not read as 0/1
class IntelligentSearchArgs(FunctionArguments):
    query: str = Field(
        ...,
        description="The user's request in natural language, including any quantities "
                    "(e.g. 'lays', 'cold drink', 'order 2 oreo mini, 3 rio biscuit')"
    )
    max_shops: StrictInt = Field(
        default=DEFAULT_MAX_SHOPS, ge=1, le=50, alias="maxShops",
        description="Maximum number of shops to search (default: 10)"
    )
    items_per_shop: StrictInt = Field(
        default=DEFAULT_ITEMS_PER_SHOP, ge=1, le=50, alias="itemsPerShop",
        description="Maximum number of items to return per shop (default: 10)"
    )

    @field_validator('query')
    @classmethod
    def not_blank(cls, v: str) -> str:
        return _require_text(v)


class SearchItemsInShopArgs(FunctionArguments):
    shop_id: str = _shop_id()
    query: str = Field(..., description="What to look for (e.g. 'coca cola', 'wavy chips')")
    limit: StrictInt = Field(
        default=DEFAULT_SHOP_SEARCH_LIMIT, ge=1, le=50,
        description="Maximum number of items to return (default: 5)"
    )

    @field_validator('shop_id', 'query')
    @classmethod
    def not_blank(cls, v: str) -> str:
        return _require_text(v)


class CartItemArgs(FunctionArguments):
    shop_id: str = _shop_id()
    item_id: str = _item_id()
    quantity: StrictInt = Field(default=1, ge=1, description="Quantity to add (default: 1)")

    @field_validator('shop_id', 'item_id')
    @classmethod
    def not_blank(cls, v: str) -> str:
        return _require_text(v)


class AddItemsToCartArgs(FunctionArguments):
    items: List[CartItemArgs] = Field(
        ..., min_length=1, description="Items to add, each with shopId, itemId and quantity"
    )


class AddItemToCartArgs(CartItemArgs):
    pass


class RemoveItemFromCartArgs(FunctionArguments):
    shop_id: str = _shop_id()
    item_id: str = _item_id()
    quantity: Optional[StrictInt] = Field(
        default=None, ge=1, description="Units to remove. Removes the whole line when omitted."
    )

    @field_validator('shop_id', 'item_id')
    @classmethod
    def not_blank(cls, v: str) -> str:
        return _require_text(v)


class UpdateItemQuantityArgs(FunctionArguments):
    shop_id: str = _shop_id()
    item_id: str = _item_id()
    quantity: StrictInt = Field(..., description="New quantity (must be at least 1)")

    @field_validator('shop_id', 'item_id')
    @classmethod
    def not_blank(cls, v: str) -> str:
        return _require_text(v)

    @field_validator('quantity')
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("quantity must be at least 1")
        return v


class GetCartArgs(FunctionArguments):
    shop_id: str = _shop_id()

    @field_validator('shop_id')
    @classmethod
    def not_blank(cls, v: str) -> str:
        return _require_text(v)


class GetAllCartsArgs(FunctionArguments):
    pass


class PlaceOrderArgs(FunctionArguments):
    shop_id: str = _shop_id()
    address_id: Optional[str] = Field(
        default=None, alias="addressId",
        description="The delivery address id (the default address is used if omitted)"
    )
    special_instructions: Optional[str] = Field(
        default=None, alias="specialInstructions",
        description="Optional delivery instructions, e.g. a nearby landmark"
    )

    @field_validator('shop_id')
    @classmethod
    def not_blank(cls, v: str) -> str:
        return _require_text(v)


# =============================================================================
# Registry
# =============================================================================

def _inline_schema(node: Any, definitions: Dict[str, Any]) -> Any:
    """Resolve $refs, collapse Optional unions and drop titles and null defaults."""
    if isinstance(node, list):
        return [_inline_schema(value, definitions) for value in node]
    if not isinstance(node, dict):
        return node

    if "$ref" in node:
        resolved = dict(definitions[node["$ref"].rsplit("/", 1)[-1]])
        resolved.update({key: value for key, value in node.items() if key != "$ref"})
        node = resolved

    variants = [variant for variant in node.get("anyOf", []) if variant.get("type") != "null"]
    if "anyOf" in node and len(variants) == 1:
        node = {**{key: value for key, value in node.items() if key != "anyOf"}, **variants[0]}

    return {
        key: _inline_schema(value, definitions)
        for key, value in node.items()
        if key != "title" and not (key == "default" and value is None)
    }


def tool_parameters(model: Type[FunctionArguments]) -> Dict[str, Any]:
    """Model-facing JSON schema for an arguments model, with camelCase names."""
    schema = model.model_json_schema(by_alias=True)
    definitions = schema.pop("$defs", {})
    schema.pop("description", None)
    parameters = _inline_schema(schema, definitions)
    parameters.setdefault("properties", {})
    parameters.setdefault("required", [])
    return parameters


@dataclass(frozen=True)
class FunctionSpec:
    """A registry entry."""
    name: str
    description: str
    arguments_model: Type[FunctionArguments]

    @property
    def parameters(self) -> Dict[str, Any]:
        return tool_parameters(self.arguments_model)

    def to_tool(self) -> Dict[str, Any]:
        """Render in OpenAI tools format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            }
        }


_SPECS = [
    FunctionSpec(
        name="intelligentSearch",
        description="Search for items across every shop that delivers to the user. Understands brand spellings (\"lays\" finds \"Lay's\"), maps categories to products (\"chips\" finds crisps and nachos) and handles several items in one request. Results include shop ids and item ids ready for adding to the cart. This is the main search tool.",
        arguments_model=IntelligentSearchArgs,
    ),
    FunctionSpec(
        name="searchItemsInShop",
        description="Search for items inside one shop. Use when the user is already talking about a specific shop.",
        arguments_model=SearchItemsInShopArgs,
    ),
    FunctionSpec(
        name="addItemsToCart",
        description="Add several items to the cart in one call, possibly from different shops. Use after intelligentSearch to add what was found. Take each quantity from the user's words ('2 always' means 2); use 1 when none was given.",
        arguments_model=AddItemsToCartArgs,
    ),
    FunctionSpec(
        name="addItemToCart",
        description="Add a single item to the cart. Stock is checked before adding.",
        arguments_model=AddItemToCartArgs,
    ),
    FunctionSpec(
        name="removeItemFromCart",
        description="Remove an item from the cart, or reduce its quantity.",
        arguments_model=RemoveItemFromCartArgs,
    ),
    FunctionSpec(
        name="updateItemQuantity",
        description="Set the quantity of an item already in the cart.",
        arguments_model=UpdateItemQuantityArgs,
    ),
    FunctionSpec(
        name="getCart",
        description="Show the cart for one shop. Use when the user asks to see their cart for a particular shop.",
        arguments_model=GetCartArgs,
    ),
    FunctionSpec(
        name="getAllCarts",
        description="Show every cart across all shops. Use when the user asks to see their cart without naming a shop.",
        arguments_model=GetAllCartsArgs,
    ),
    FunctionSpec(
        name="placeOrder",
        description="Place an order for one shop's cart. Delivers to the user's saved address and is paid cash on delivery.",
        arguments_model=PlaceOrderArgs,
    ),
]

FUNCTION_REGISTRY: "OrderedDict[str, FunctionSpec]" = OrderedDict((spec.name, spec) for spec in _SPECS)

# Passed verbatim to the model on every turn
TOOLS: List[Dict[str, Any]] = [spec.to_tool() for spec in FUNCTION_REGISTRY.values()]


def get_function_spec(name: str) -> FunctionSpec:
    """
    Look up a registry entry.

    Raises:
        UnknownFunctionError: If ``name`` is not registered
    """
    try:
        return FUNCTION_REGISTRY[name]
    except KeyError:
        raise UnknownFunctionError(name) from None


def _describe(error: Dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    message = error.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def validate_arguments(name: str, payload: Union[str, Mapping[str, Any], None]) -> FunctionArguments:
    """
    Validate a tool-call payload against the named contract.

    Args:
        name: Registry name of the operation
        payload: Raw JSON string from the model, or an already-decoded mapping.
            An empty string is treated as ``{}``.

    Returns:
        The validated arguments model with defaults applied

    Raises:
        UnknownFunctionError: If ``name`` is not registered
        MalformedFunctionArguments: If the payload violates the contract
    """
    spec = get_function_spec(name)

    if payload is None or (isinstance(payload, str) and not payload.strip()):
        data: Any = {}
    elif isinstance(payload, str):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise MalformedFunctionArguments(name, [f"arguments are not valid JSON: {e.msg}"]) from None
    else:
        data = payload

    if not isinstance(data, Mapping):
        raise MalformedFunctionArguments(name, ["arguments must be a JSON object"])

    try:
        return spec.arguments_model.model_validate(dict(data))
    except ValidationError as e:
        raise MalformedFunctionArguments(name, [_describe(err) for err in e.errors()]) from None
