"""
Function dispatcher.

Validates a tool call against the schema registry, routes it to the search
pipeline or a collaborator, and turns every outcome into a
``FunctionResult``. ``dispatch`` never raises for expected failures.
"""

import asyncio
import logging
import re
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from aroundyou import config
from aroundyou.cart import CART_NOT_FOUND, ITEM_NOT_IN_CART
from aroundyou.collaborators import CartStore, OrderPlacement, ShopDirectory
from aroundyou.errors import (
    BusinessValidationError, CommerceError, MalformedFunctionArguments,
    UnknownFunctionError, with_timeout
)
from aroundyou.models import (
    CatalogItem, FunctionCallRequest, FunctionResult, OrderLine, OrderRequest,
    Shop, ShopCart, UserContext
)
from aroundyou.progress import step_payload
from aroundyou.schemas import (
    AddItemsToCartArgs, AddItemToCartArgs, CartItemArgs, FunctionArguments,
    GetCartArgs, IntelligentSearchArgs, PlaceOrderArgs, RemoveItemFromCartArgs,
    SearchItemsInShopArgs, UpdateItemQuantityArgs, validate_arguments
)
from aroundyou.search import IntelligentSearchPipeline, format_relevance, format_results_for_model

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCATION_UNAVAILABLE = "User location not available. Please enable location services."
CART_EMPTY = "Cart is empty"

_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE
)

Handler = Callable[[Any, FunctionCallRequest, Callable[[], bool]], Awaitable[FunctionResult]]


class _ItemRejected(Exception):
    """One batch entry cannot be added; the rest of the batch continues."""


def _scored_item_payload(shop_id: str, hit) -> Dict[str, Any]:
    return {
        "id": hit.item.id,
        "shopId": shop_id,
        "name": hit.item.name,
        "description": hit.item.description,
        "price_cents": hit.item.price_cents,
        "similarity": hit.similarity,
        "image_url": hit.item.image_url,
    }


class FunctionDispatcher:
    """
    Routes validated tool calls. One dispatch runs at a time.

    Args:
        pipeline: Search pipeline for ``intelligentSearch`` / ``searchItemsInShop``
        shop_directory: Shop and item lookup
        cart_store: Per-shop carts
        order_placement: Order placement collaborator
        user_context: Location and address details of the shopper
        timeout: Bound on every collaborator call, in seconds
    """

    def __init__(
        self,
        pipeline: IntelligentSearchPipeline,
        shop_directory: ShopDirectory,
        cart_store: CartStore,
        order_placement: OrderPlacement,
        user_context: Optional[UserContext] = None,
        timeout: Optional[float] = None
    ):
        self.pipeline = pipeline
        self.shop_directory = shop_directory
        self.cart_store = cart_store
        self.order_placement = order_placement
        self.user_context = user_context or UserContext()
        self.timeout = config.COLLABORATOR_TIMEOUT_SECONDS if timeout is None else timeout
        self._lock = asyncio.Lock()
        self._handlers: Dict[str, Handler] = {
            "intelligentSearch": self._intelligent_search,
            "searchItemsInShop": self._search_items_in_shop,
            "addItemsToCart": self._add_items_to_cart,
            "addItemToCart": self._add_item_to_cart,
            "removeItemFromCart": self._remove_item_from_cart,
            "updateItemQuantity": self._update_item_quantity,
            "getCart": self._get_cart,
            "getAllCarts": self._get_all_carts,
            "placeOrder": self._place_order,
        }

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def dispatch(
        self,
        request: FunctionCallRequest,
        is_current: Optional[Callable[[], bool]] = None
    ) -> FunctionResult:
        """
        Execute one tool call.

        Args:
            request: The tool call envelope
            is_current: Returns False once the originating turn is superseded;
                a running search stops at its next step boundary

        Returns:
            The normalized result. Unknown names and malformed arguments come
            back as failures so the model can correct itself.
        """
        async with self._lock:
            return await self._dispatch(request, is_current or (lambda: True))

    async def _dispatch(self, request: FunctionCallRequest, is_current: Callable[[], bool]) -> FunctionResult:
        try:
            arguments = validate_arguments(request.name, request.arguments)
        except UnknownFunctionError as e:
            logger.warning("Model requested unknown function %r", request.name)
            return FunctionResult.failure(request.name, str(e), e.kind)
        except MalformedFunctionArguments as e:
            logger.warning("Rejected arguments for %s: %s", request.name, "; ".join(e.violations))
            return FunctionResult.failure(request.name, str(e), e.kind, data={"violations": e.violations})

        handler = self._handlers[request.name]
        logger.info("Dispatching %s (call %s)", request.name, request.call_id)
        try:
            result = await handler(arguments, request, is_current)
        except CommerceError as e:
            result = FunctionResult.failure(request.name, str(e), e.kind)
        except LookupError as e:
            result = FunctionResult.failure(request.name, str(e.args[0]) if e.args else str(e), "not_found")
        except Exception as e:
            logger.exception("Function %s failed", request.name)
            result = FunctionResult.failure(request.name, str(e) or f"Failed to run {request.name}")

        if result.success:
            logger.info("%s succeeded", request.name)
        else:
            logger.info("%s failed (%s): %s", request.name, result.error_kind, result.error)
        return result

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        return await with_timeout(awaitable, self.timeout, operation)

    # =========================================================================
    # Search
    # =========================================================================

    async def _intelligent_search(
        self,
        args: IntelligentSearchArgs,
        request: FunctionCallRequest,
        is_current: Callable[[], bool]
    ) -> FunctionResult:
        coordinates = self.user_context.coordinates
        if coordinates is None:
            return FunctionResult.failure(request.name, LOCATION_UNAVAILABLE, BusinessValidationError.kind)

        outcome = await self.pipeline.run(
            args.query,
            coordinates,
            max_shops=args.max_shops,
            items_per_shop=args.items_per_shop,
            turn_id=request.call_id,
            is_current=is_current
        )
        steps = step_payload(outcome.progress)
        if not outcome.success or outcome.response is None:
            return FunctionResult.failure(
                request.name,
                outcome.error or "Failed to perform intelligent search",
                outcome.error_kind or "error",
                data={"steps": steps}
            )

        response = outcome.response
        return FunctionResult.ok(request.name, {
            "shops": [
                {
                    "shop": {
                        "id": result.shop.id,
                        "name": result.shop.name,
                        "address": result.shop.address,
                        "delivery_fee": result.shop.delivery_fee,
                    },
                    "items": [_scored_item_payload(result.shop.id, hit) for hit in result.items],
                    "totalItems": result.total_items,
                    "categoryMatches": result.category_matches,
                    "relevanceScore": result.relevance_score,
                    "relevance": format_relevance(result.relevance_score),
                }
                for result in response.results
            ],
            "formattedText": format_results_for_model(response),
            "reasoning": response.reasoning,
            "intent": response.intent.model_dump(mode="json"),
            "extractedItems": [item.model_dump(mode="json") for item in response.intent.extracted_items],
            "totalFound": response.total_found,
            "steps": steps,
        })

    async def _search_items_in_shop(
        self,
        args: SearchItemsInShopArgs,
        request: FunctionCallRequest,
        is_current: Callable[[], bool]
    ) -> FunctionResult:
        shop = await self._call(self.shop_directory.get_shop(args.shop_id), "Shop lookup")
        if shop is None:
            return FunctionResult.failure(request.name, "Shop not found", "not_found")

        hits = await self.pipeline.search_shop(args.shop_id, args.query, args.limit)
        return FunctionResult.ok(request.name, {
            "shop": {"id": shop.id, "name": shop.name},
            "items": [_scored_item_payload(shop.id, hit) for hit in hits],
        })

    # =========================================================================
    # Cart
    # =========================================================================

    async def _resolve(self, entry: CartItemArgs) -> Tuple[Shop, CatalogItem]:
        item = await self._call(self.shop_directory.get_item(entry.shop_id, entry.item_id), "Item lookup")
        if item is None:
            raise _ItemRejected(f"Item with ID {entry.item_id} not found")
        if not item.available:
            raise _ItemRejected(f"{item.name} is not available")
        if item.stock_quantity is not None and entry.quantity > item.stock_quantity:
            raise _ItemRejected(f"Only {item.stock_quantity} of {item.name} in stock")

        shop = await self._call(self.shop_directory.get_shop(entry.shop_id), "Shop lookup")
        if shop is None:
            raise _ItemRejected(f"Shop {entry.shop_id} not found")
        if not shop.is_open:
            raise _ItemRejected(f"{shop.name} is currently closed")
        return shop, item

    async def _add_entries(self, name: str, entries: List[CartItemArgs]) -> FunctionResult:
        """
        Add each entry independently; a failing entry does not stop the rest.
        The call fails only when nothing was added.
        """
        details: List[Dict[str, Any]] = []
        added: List[Dict[str, Any]] = []
        deltas: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        carts: "OrderedDict[str, ShopCart]" = OrderedDict()

        for entry in entries:
            outcome: Dict[str, Any] = {"itemId": entry.item_id, "shopId": entry.shop_id}
            try:
                shop, item = await self._resolve(entry)
                cart = await self._call(self.cart_store.add_item(shop, item, entry.quantity), "Cart update")
            except _ItemRejected as e:
                details.append({**outcome, "success": False, "error": str(e)})
                continue
            except CommerceError as e:
                details.append({**outcome, "success": False, "error": str(e)})
                continue
            except Exception as e:
                logger.exception("Adding %s from shop %s failed", entry.item_id, entry.shop_id)
                details.append({**outcome, "success": False, "error": str(e) or "Failed to add item"})
                continue

            details.append({**outcome, "success": True})
            added.append({
                "itemId": item.id,
                "name": item.name,
                "quantity": entry.quantity,
                "shopId": shop.id,
                "shopName": shop.name,
                "price_cents": item.price_cents,
                "image_url": item.image_url,
            })
            delta = deltas.setdefault(shop.id, {
                "shopId": shop.id,
                "shopName": shop.name,
                "addedQuantity": 0,
                "addedSubtotal": 0,
            })
            delta["addedQuantity"] += entry.quantity
            delta["addedSubtotal"] += item.price_cents * entry.quantity
            carts[shop.id] = cart

        failed = len(details) - len(added)
        summary = f"Successfully added {len(added)} item(s)"
        if failed:
            summary += f", {failed} failed"

        cart_summaries = [cart.summary() for cart in carts.values()]
        data = {
            "added": added,
            "summary": summary,
            "details": details,
            "deltas": list(deltas.values()),
            "carts": cart_summaries,
            "cart": cart_summaries[0] if cart_summaries else None,
        }

        if not added:
            errors = [detail["error"] for detail in details]
            message = errors[0] if len(errors) == 1 else "No items could be added to the cart"
            return FunctionResult.failure(name, message, BusinessValidationError.kind, data=data)
        return FunctionResult.ok(name, data)

    async def _add_items_to_cart(
        self,
        args: AddItemsToCartArgs,
        request: FunctionCallRequest,
        is_current: Callable[[], bool]
    ) -> FunctionResult:
        return await self._add_entries(request.name, args.items)

    async def _add_item_to_cart(
        self,
        args: AddItemToCartArgs,
        request: FunctionCallRequest,
        is_current: Callable[[], bool]
    ) -> FunctionResult:
        return await self._add_entries(request.name, [args])

    async def _find_line(self, shop_id: str, item_id: str):
        cart = await self._call(self.cart_store.get_cart(shop_id), "Cart lookup")
        if cart is None:
            raise LookupError(CART_NOT_FOUND)
        line = cart.find_line(item_id)
        if line is None:
            raise LookupError(ITEM_NOT_IN_CART)
        return line

    @staticmethod
    def _cart_payload(cart: Optional[ShopCart]) -> Dict[str, Any]:
        summary = cart.summary() if cart is not None else None
        return {"cart": summary, "carts": [summary] if summary else []}

    async def _remove_item_from_cart(
        self,
        args: RemoveItemFromCartArgs,
        request: FunctionCallRequest,
        is_current: Callable[[], bool]
    ) -> FunctionResult:
        line = await self._find_line(args.shop_id, args.item_id)
        removed = line.quantity if args.quantity is None else min(args.quantity, line.quantity)

        updated = await self._call(
            self.cart_store.remove_item(args.shop_id, args.item_id, args.quantity), "Cart update"
        )
        return FunctionResult.ok(request.name, {
            "message": f"Removed {removed} x {line.name} from cart",
            "removedQuantity": removed,
            **self._cart_payload(updated),
        })

    async def _update_item_quantity(
        self,
        args: UpdateItemQuantityArgs,
        request: FunctionCallRequest,
        is_current: Callable[[], bool]
    ) -> FunctionResult:
        line = await self._find_line(args.shop_id, args.item_id)
        updated = await self._call(
            self.cart_store.update_quantity(args.shop_id, args.item_id, args.quantity), "Cart update"
        )
        return FunctionResult.ok(request.name, {
            "message": f"Updated {line.name} quantity to {args.quantity}",
            "quantity": args.quantity,
            **self._cart_payload(updated),
        })

    async def _get_cart(
        self,
        args: GetCartArgs,
        request: FunctionCallRequest,
        is_current: Callable[[], bool]
    ) -> FunctionResult:
        cart = await self._call(self.cart_store.get_cart(args.shop_id), "Cart lookup")
        if cart is None or not cart.items:
            return FunctionResult.ok(request.name, {"cart": None, "carts": [], "message": CART_EMPTY})
        return FunctionResult.ok(request.name, self._cart_payload(cart))

    async def _get_all_carts(
        self,
        args: FunctionArguments,
        request: FunctionCallRequest,
        is_current: Callable[[], bool]
    ) -> FunctionResult:
        carts = await self._call(self.cart_store.get_all_carts(), "Cart lookup")
        return FunctionResult.ok(request.name, {
            "carts": [
                {
                    "shopId": cart.shop_id,
                    "shopName": cart.shop_name,
                    "itemCount": cart.total_items,
                    "totalPrice": cart.total_price_cents,
                    "items": cart.summary()["items"],
                }
                for cart in carts
            ],
            "totalCarts": len(carts),
        })

    # =========================================================================
    # Orders
    # =========================================================================

    async def _place_order(
        self,
        args: PlaceOrderArgs,
        request: FunctionCallRequest,
        is_current: Callable[[], bool]
    ) -> FunctionResult:
        cart = await self._call(self.cart_store.get_cart(args.shop_id), "Cart lookup")
        if cart is None or not cart.items:
            return FunctionResult.failure(request.name, CART_EMPTY, BusinessValidationError.kind)

        # Models sometimes invent ids like "default"; fall back to the saved address
        address_id = args.address_id if args.address_id and _UUID.match(args.address_id) else None
        if address_id is None:
            address_id = self.user_context.default_address_id

        instructions = args.special_instructions
        if not instructions and self.user_context.landmark:
            instructions = f"Landmark: {self.user_context.landmark}"

        order_request = OrderRequest(
            shop_id=args.shop_id,
            address_id=address_id,
            items=[OrderLine(item_id=line.item_id, quantity=line.quantity) for line in cart.items],
            payment_method="cash",
            special_instructions=instructions,
        )
        outcome = await self._call(self.order_placement.place_order(order_request), "Order placement")

        if not outcome.success or outcome.order is None:
            reason = outcome.reason or "Failed to place order"
            if outcome.landmark_required:
                return FunctionResult.failure(request.name, reason, BusinessValidationError.kind, data={
                    "landmarkRequired": True,
                    **self._cart_payload(cart),
                })
            return FunctionResult.failure(request.name, reason, BusinessValidationError.kind)

        try:
            await self._call(self.cart_store.delete_cart(args.shop_id), "Cart cleanup")
        except CommerceError as e:
            logger.warning("Order placed but cart %s was not cleared: %s", args.shop_id, e)

        order = outcome.order
        return FunctionResult.ok(request.name, {
            "order": {
                "id": order.id,
                "order_number": order.order_number,
                "status": order.status.value,
                "total_cents": order.total_cents,
            },
            "message": f"Order placed successfully! Order #{order.order_number}",
        })
