"""
AroundYou Shopping Assistant - Main Application

Drives full conversational turns:
1. Dialogue engine: message log and model turns (``ConversationSession``)
2. Function dispatcher: search, cart and order operations selected by the model

The model selects operations through OpenAI function calling; results are fed
back until it answers in plain text. Integrates with OpenRouter API endpoints.
"""

import asyncio
import functools
import logging
from typing import List, Optional

from aroundyou import config
from aroundyou.cart import InMemoryCartStore
from aroundyou.conversation import ConversationSession, ChunkCallback
from aroundyou.database import (
    CatalogDirectory, DatabaseManager, SqliteOrderPlacement, SqlitePreferenceSource, get_database
)
from aroundyou.dispatcher import FunctionDispatcher
from aroundyou.intent import KeywordIntentExtractor, OpenAIIntentExtractor
from aroundyou.llm import OpenAIChatModel
from aroundyou.logging_config import setup_logging
from aroundyou.models import (
    AssistantReply, Coordinates, FunctionCallRequest, FunctionResult, ShopCart, UserContext
)
from aroundyou.progress import ProgressBroadcaster
from aroundyou.search import IntelligentSearchPipeline
from aroundyou.vector_store import get_vector_store

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_ROUNDS = 8
TOOL_ROUND_LIMIT = "Too many function calls in one turn"


# =============================================================================
# System Prompt
# =============================================================================

SYSTEM_PROMPT = """You are the AroundYou shopping assistant. Shoppers order groceries and everyday items from shops near them for delivery.

1. **Finding items**:
   - Use intelligentSearch for anything the shopper wants to find or buy, e.g. "order 2 oreo mini, 3 rio biscuit"
   - Pass the shopper's words as the query; quantities are picked up automatically
   - Use searchItemsInShop when the shopper asks about one specific shop
   - Mention prices in PKR (Rs. XX) and which shop has the item

2. **Cart**:
   - Use addItemsToCart with the exact shop and item ids from search results
   - When the shopper asked for several items, add all of them in one addItemsToCart call with the requested quantities
   - Use removeItemFromCart, updateItemQuantity, getCart and getAllCarts to manage carts
   - Each shop has its own cart

3. **Orders**:
   - Confirm the shop, items and total before calling placeOrder
   - If placeOrder reports that a landmark is required, ask the shopper for a nearby landmark and retry with it in specialInstructions
   - Share the order number once the order is placed

**Guidelines:**
- Be friendly, helpful, and concise
- Never invent shop ids, item ids or prices; only use what the functions returned
- If something is unavailable, suggest the closest alternatives from the results
- Don't ask for information the shopper already gave
"""


# =============================================================================
# Shopping Assistant
# =============================================================================

class ShoppingAssistant:
    """
    Runs complete user turns: model reply, function dispatch, continuation.

    A turn ends when the model answers in plain text, fails, is superseded by
    a newer message, or exceeds ``max_tool_rounds`` function calls.
    """

    def __init__(
        self,
        session: ConversationSession,
        dispatcher: FunctionDispatcher,
        broadcaster: Optional[ProgressBroadcaster] = None,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS
    ):
        """
        Initialize the assistant.

        Args:
            session: Conversation to drive
            dispatcher: Executes the functions the model selects
            broadcaster: Search progress broadcaster (for progress consumers)
            max_tool_rounds: Upper bound on function calls per user turn
        """
        self.session = session
        self.dispatcher = dispatcher
        self.broadcaster = broadcaster
        self.max_tool_rounds = max_tool_rounds

    @classmethod
    def from_environment(
        cls,
        database: Optional[DatabaseManager] = None,
        user_context: Optional[UserContext] = None
    ) -> "ShoppingAssistant":
        """
        Wire the reference collaborators from configuration.

        Uses the OpenAI intent extractor when an API key is configured and the
        keyword extractor otherwise. The chat model and embeddings always need
        the API key.
        """
        database = database or get_database()
        directory = CatalogDirectory(database)
        broadcaster = ProgressBroadcaster()

        if config.OPENAI_API_KEY:
            intent_extractor = OpenAIIntentExtractor()
        else:
            intent_extractor = KeywordIntentExtractor()

        pipeline = IntelligentSearchPipeline(
            intent_extractor=intent_extractor,
            shop_directory=directory,
            item_search=get_vector_store(),
            broadcaster=broadcaster,
            preference_source=SqlitePreferenceSource(database),
        )

        if user_context is None:
            address = database.get_default_address()
            user_context = UserContext(
                coordinates=Coordinates(latitude=config.USER_LATITUDE, longitude=config.USER_LONGITUDE),
                default_address_id=address.id if address else None,
                landmark=address.landmark if address else None,
            )

        dispatcher = FunctionDispatcher(
            pipeline=pipeline,
            shop_directory=directory,
            cart_store=InMemoryCartStore(),
            order_placement=SqliteOrderPlacement(database),
            user_context=user_context,
        )
        session = ConversationSession(OpenAIChatModel(), system_prompt=SYSTEM_PROMPT)
        return cls(session, dispatcher, broadcaster)

    async def chat(
        self,
        user_message: str,
        on_chunk: Optional[ChunkCallback] = None,
        extra_context: Optional[str] = None
    ) -> AssistantReply:
        """
        Process a user message and return the assistant's response.

        Args:
            user_message: The user's input message
            on_chunk: Called with each streamed text fragment
            extra_context: One-off context for this turn (not stored)

        Returns:
            The final reply with every function result produced on the way
        """
        turn = await self.session.send_message(user_message, extra_context=extra_context, on_chunk=on_chunk)
        results: List[FunctionResult] = []
        rounds = 0

        while True:
            if turn.stale:
                return AssistantReply(function_results=results, error=turn.error, error_kind=turn.error_kind, stale=True)
            if not turn.success:
                return AssistantReply(function_results=results, error=turn.error, error_kind=turn.error_kind)
            if turn.tool_call is None:
                return AssistantReply(text=turn.text or "", function_results=results)

            if rounds >= self.max_tool_rounds:
                logger.warning("Stopping turn after %d function calls", rounds)
                # Answer the call so the log stays paired
                self.session.add_function_result(
                    turn.tool_call,
                    FunctionResult.failure(turn.tool_call.name, TOOL_ROUND_LIMIT, "tool_round_limit"),
                    turn.generation
                )
                return AssistantReply(
                    text=turn.text,
                    function_results=results,
                    error=TOOL_ROUND_LIMIT,
                    error_kind="tool_round_limit"
                )
            rounds += 1

            request = FunctionCallRequest.from_tool_call(turn.tool_call, turn.generation)
            result = await self.dispatcher.dispatch(
                request,
                is_current=functools.partial(self.session.is_current, turn.generation)
            )
            results.append(result)

            if not self.session.add_function_result(turn.tool_call, result, turn.generation):
                return AssistantReply(
                    function_results=results,
                    error="Superseded by a newer message",
                    error_kind="cancelled",
                    stale=True
                )
            turn = await self.session.continue_conversation(on_chunk=on_chunk)

    async def get_all_carts(self) -> List[ShopCart]:
        return await self.dispatcher.cart_store.get_all_carts()

    def set_location(self, latitude: float, longitude: float):
        self.dispatcher.user_context.coordinates = Coordinates(latitude=latitude, longitude=longitude)

    def reset_conversation(self):
        """Reset conversation history. Carts are kept."""
        self.session.clear_history()


# =============================================================================
# CLI Interface
# =============================================================================

def _print_chunk(fragment: str):
    print(fragment, end="", flush=True)


async def _cli_loop(assistant: ShoppingAssistant):
    while True:
        try:
            user_input = (await asyncio.to_thread(input, "\nYou: ")).strip()
        except (EOFError, KeyboardInterrupt):
            print("\n\nThank you for shopping with AroundYou! Goodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ['quit', 'exit']:
            print("\nThank you for shopping with AroundYou! Goodbye!")
            break

        if user_input.lower() == 'reset':
            assistant.reset_conversation()
            print("\nConversation reset. How can I help you?")
            continue

        if user_input.lower() == 'carts':
            carts = await assistant.get_all_carts()
            if not carts:
                print("\nYour carts are empty.")
            else:
                print("\n--- Your Carts ---")
                for cart in carts:
                    print(f"  {cart.shop_name}")
                    for line in cart.items:
                        print(f"    {line.quantity} x {line.name}  Rs. {line.price_cents * line.quantity / 100:.2f}")
                    print(f"  Total: Rs. {cart.total_price_cents / 100:.2f}")
                    print("-" * 30)
            continue

        print("\nAssistant: ", end="")
        reply = await assistant.chat(user_input, on_chunk=_print_chunk)
        if reply.error:
            print(f"\nError: {reply.error}")
            print("Please try again.")
        else:
            print()


def run_cli():
    """Run the assistant in command-line interface mode."""
    setup_logging(level="WARNING")

    print("=" * 60)
    print("Welcome to the AroundYou Shopping Assistant!")
    print("=" * 60)
    print("\nI can find items in shops near you, fill your carts and place orders.")
    print("Type 'quit' or 'exit' to end the conversation.")
    print("Type 'reset' to start a new conversation.")
    print("Type 'carts' to view your carts.")
    print("-" * 60)

    try:
        assistant = ShoppingAssistant.from_environment()
    except Exception as e:
        print(f"\nError initializing assistant: {e}")
        print("Make sure you have set up your environment variables correctly.")
        print("See .env.example for required configuration.")
        return

    if assistant.dispatcher.pipeline.item_search.get_item_count() == 0:
        print("\nThe item index is empty. Load the catalog first:")
        print("  python -m aroundyou.vector_store --catalog data/catalog.json")
        return

    asyncio.run(_cli_loop(assistant))


if __name__ == "__main__":
    run_cli()
