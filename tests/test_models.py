"""
Tests for the pydantic models.

Covers message role rules, extracted-item quantity normalization, search
progress shape, cart totals and the order outcome landmark marker.
"""

import json

import pytest
from pydantic import ValidationError

from aroundyou.models import (
    CartLine, ConversationState, ExtractedItem, FunctionResult, Message, MessageRole,
    OrderOutcome, ScoredItem, SearchIntent, SearchProgress, SearchStep, ShopCart,
    StepId, STEP_ORDER, ToolCall
)
from conftest import make_item


# =============================================================================
# Dialogue types
# =============================================================================

class TestMessages:
    """Role-specific message rules."""

    def test_function_message_requires_name(self):
        with pytest.raises(ValidationError):
            Message(role=MessageRole.FUNCTION, content="{}")

    def test_only_assistant_carries_tool_call(self):
        with pytest.raises(ValidationError):
            Message(role=MessageRole.USER, content="hi", tool_call=ToolCall(name="getAllCarts"))

    def test_tool_call_ids_are_generated(self):
        first = ToolCall(name="getAllCarts")
        second = ToolCall(name="getAllCarts")
        assert first.id.startswith("call_")
        assert first.id != second.id
        assert first.arguments == "{}"

    def test_conversation_state_round_trip(self):
        state = ConversationState(
            system_prompt="Be helpful",
            metadata={"channel": "cli"},
            messages=[
                Message(role=MessageRole.USER, content="find oreo"),
                Message(role=MessageRole.ASSISTANT, tool_call=ToolCall(name="intelligentSearch", arguments='{"query":"oreo"}')),
                Message(role=MessageRole.FUNCTION, name="intelligentSearch", content='{"success": true}'),
            ],
        )
        dumped = state.model_dump(mode="json")
        restored = ConversationState.model_validate(json.loads(json.dumps(dumped)))
        assert restored == state


# =============================================================================
# Search types
# =============================================================================

class TestExtractedItem:
    """Quantity and search term defaults."""

    @pytest.mark.parametrize("raw", [0, -3, None, "lots", "2.0"])
    def test_quantity_normalization(self, raw):
        item = ExtractedItem(name="Oreo", quantity=raw)
        assert item.quantity == (2 if raw == "2.0" else 1)

    def test_search_terms_default_to_name(self):
        assert ExtractedItem(name="Rio biscuit").search_terms == ["Rio biscuit"]

    def test_fallback_intent(self):
        intent = SearchIntent.fallback("chips", "Fallback: parse error")
        assert intent.primary_query == "chips"
        assert intent.expanded_queries == ["chips"]
        assert len(intent.extracted_items) == 1
        assert intent.extracted_items[0].quantity == 1

    def test_query_variants_deduplicate(self):
        intent = SearchIntent(primary_query="Oreo", expanded_queries=["oreo", " Oreo Mini ", "", "OREO MINI"])
        assert intent.query_variants() == ["Oreo", "Oreo Mini"]


class TestSearchProgressModel:
    """The progress array always lists the five canonical steps in order."""

    def test_rejects_wrong_order(self):
        steps = [SearchStep(id=step_id, label=step_id.value) for step_id in reversed(STEP_ORDER)]
        with pytest.raises(ValidationError):
            SearchProgress(steps=steps)

    def test_rejects_missing_step(self):
        steps = [SearchStep(id=step_id, label=step_id.value) for step_id in STEP_ORDER[:4]]
        with pytest.raises(ValidationError):
            SearchProgress(steps=steps)

    def test_step_lookup(self):
        progress = SearchProgress(steps=[SearchStep(id=step_id, label=step_id.value) for step_id in STEP_ORDER])
        assert progress.step(StepId.RANKING).id == StepId.RANKING
        assert progress.step("find_shops").id == StepId.FIND_SHOPS

    def test_similarity_is_clamped(self):
        item = make_item("x", "shop-a", "Oreo")
        assert ScoredItem(item=item, similarity=1.2).similarity == 1.0
        assert ScoredItem(item=item, similarity=-0.1).similarity == 0.0


# =============================================================================
# Cart and orders
# =============================================================================

class TestShopCart:
    """Totals are derived from the lines."""

    def test_totals(self):
        cart = ShopCart(shop_id="shop-a", shop_name="Gulberg Mart", items=[
            CartLine(item_id="a", name="Oreo", price_cents=5000, quantity=2),
            CartLine(item_id="b", name="Rio", price_cents=3000, quantity=3),
        ], total_items=999)
        assert cart.total_items == 5
        assert cart.total_price_cents == 19000

    def test_summary_shape(self):
        cart = ShopCart(shop_id="shop-a", shop_name="Gulberg Mart", items=[
            CartLine(item_id="a", name="Oreo", price_cents=5000, quantity=2),
        ])
        summary = cart.summary()
        assert summary["shopId"] == "shop-a"
        assert summary["totalItems"] == 2
        assert summary["totalPrice"] == 10000
        assert summary["items"] == [{"id": "a", "name": "Oreo", "quantity": 2, "price_cents": 5000}]

    def test_line_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            CartLine(item_id="a", name="Oreo", price_cents=5000, quantity=0)


class TestOrderOutcome:
    """The landmark rule is distinguishable from generic failures."""

    def test_landmark_marker(self):
        outcome = OrderOutcome(success=False, reason="Please provide a nearby Landmark for the rider")
        assert outcome.landmark_required

    def test_generic_failure(self):
        assert not OrderOutcome(success=False, reason="Shop not found").landmark_required

    def test_success_is_never_landmark(self):
        assert not OrderOutcome(success=True, reason="landmark noted").landmark_required


class TestFunctionResult:
    """Model-facing payloads."""

    def test_success_payload(self):
        result = FunctionResult.ok("getCart", {"cart": None})
        assert result.success
        assert result.to_payload() == {"success": True, "result": {"cart": None}}

    def test_failure_payload(self):
        result = FunctionResult.failure("placeOrder", "Cart is empty", "validation")
        assert not result.success
        assert result.error_kind == "validation"
        assert result.to_payload() == {"success": False, "error": "Cart is empty"}

    def test_model_content_omits_steps(self):
        result = FunctionResult.ok("intelligentSearch", {"shops": [], "steps": [{"id": "ranking"}]})
        content = json.loads(result.model_content())
        assert content == {"success": True, "result": {"shops": []}}
