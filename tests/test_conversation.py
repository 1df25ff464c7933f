"""
Tests for the dialogue engine.

Scenarios:
1. Plain text turns, streaming and per-turn context
2. Tool calls: pending state, function results, continuation
3. Failures and timeouts leave the log consistent
4. Newer messages supersede turns in flight
5. Snapshots: round trip, pending calls, corruption
"""

import asyncio
import json

import pytest

from aroundyou.conversation import (
    CONTEXT_PREFIX, STALE_TURN, SUPERSEDED_RESULT, ConversationSession, find_unpaired_tool_calls
)
from aroundyou.errors import NetworkError, SnapshotCorruptedError
from aroundyou.models import FunctionResult, Message, MessageRole, ToolCall
from aroundyou.schemas import TOOLS
from conftest import ScriptedChatModel, SlowChatModel, text_chunks, tool_chunk, user_messages


def roles(session: ConversationSession):
    return [message.role.value for message in session.messages]


async def wait_for(condition):
    while not condition():
        await asyncio.sleep(0)


# =============================================================================
# Test Scenario 1: Text turns
# =============================================================================

class TestTextTurns:
    """Replies are streamed, stored and returned."""

    @pytest.mark.asyncio
    async def test_reply_is_streamed_and_stored(self):
        model = ScriptedChatModel([text_chunks("Hello", ", how can ", "I help?")])
        session = ConversationSession(model, system_prompt="Be brief")
        fragments = []

        turn = await session.send_message("hi", on_chunk=fragments.append)

        assert turn.success
        assert turn.text == "Hello, how can I help?"
        assert fragments == ["Hello", ", how can ", "I help?"]
        assert roles(session) == ["user", "assistant"]
        assert session.messages[1].streaming_complete
        assert model.requests[0]["system_prompt"] == "Be brief"
        assert model.requests[0]["tools"] == TOOLS

    @pytest.mark.asyncio
    async def test_history_is_sent(self):
        model = ScriptedChatModel([text_chunks("One"), text_chunks("Two")])
        session = ConversationSession(model)

        await session.send_message("first")
        await session.send_message("second")

        sent = model.requests[1]["messages"]
        assert [message.content for message in sent] == ["first", "One", "second"]

    @pytest.mark.asyncio
    async def test_extra_context_is_not_stored(self):
        model = ScriptedChatModel([text_chunks("Sure")])
        session = ConversationSession(model)

        await session.send_message("find oreo", extra_context="User is in Gulberg")

        sent = model.requests[0]["messages"]
        assert sent[-1].content == f"{CONTEXT_PREFIX} User is in Gulberg"
        assert user_messages(session.messages) == ["find oreo"]

    @pytest.mark.asyncio
    async def test_stream_message(self):
        model = ScriptedChatModel([text_chunks("Rio is ", "Rs. 30")])
        session = ConversationSession(model)

        stream = session.stream_message("price of rio?")
        fragments = [fragment async for fragment in stream]
        turn = await stream.result()

        assert fragments == ["Rio is ", "Rs. 30"]
        assert turn.text == "Rio is Rs. 30"

    @pytest.mark.asyncio
    async def test_messages_are_copies(self):
        session = ConversationSession(ScriptedChatModel([text_chunks("Hi")]))
        await session.send_message("hello")
        session.messages[0].content = "changed"
        assert session.messages[0].content == "hello"

    def test_system_prompt_updates(self):
        session = ConversationSession(ScriptedChatModel([]), system_prompt="Be brief")

        session.update_system_prompt("Shopper prefers Urdu", append=True)
        assert session.system_prompt == f"Be brief\n\n{CONTEXT_PREFIX} Shopper prefers Urdu"

        session.update_system_prompt("Be friendly")
        assert session.system_prompt == "Be friendly"

        session.update_metadata(channel="cli")
        assert session.metadata == {"channel": "cli"}


# =============================================================================
# Test Scenario 2: Tool calls
# =============================================================================

class TestToolCalls:
    """The session records tool calls and waits for their results."""

    @pytest.mark.asyncio
    async def test_tool_call_round_trip(self):
        model = ScriptedChatModel([
            tool_chunk("intelligentSearch", '{"query": "oreo"}', call_id="call_1"),
            text_chunks("Gulberg Mart has Oreo Mini for Rs. 50."),
        ])
        session = ConversationSession(model)

        turn = await session.send_message("find oreo")
        assert turn.tool_call.name == "intelligentSearch"
        assert session.pending_tool_call.id == "call_1"
        assert session.messages[-1].tool_call.id == "call_1"
        assert session.messages[-1].content is None

        result = FunctionResult.ok("intelligentSearch", {"shops": [], "steps": [{"id": "ranking"}]})
        assert session.add_function_result(turn.tool_call, result, turn.generation)
        assert session.pending_tool_call is None

        function_message = session.messages[-1]
        assert function_message.role == MessageRole.FUNCTION
        assert function_message.name == "intelligentSearch"
        assert function_message.tool_call_id == "call_1"
        assert json.loads(function_message.content) == {"success": True, "result": {"shops": []}}
        assert function_message.tool_result["data"]["steps"] == [{"id": "ranking"}]

        final = await session.continue_conversation()
        assert final.text == "Gulberg Mart has Oreo Mini for Rs. 50."
        assert roles(session) == ["user", "assistant", "function", "assistant"]
        assert find_unpaired_tool_calls(session.messages) == []

    @pytest.mark.asyncio
    async def test_text_before_tool_call_is_kept(self):
        model = ScriptedChatModel([text_chunks("Let me check.") + tool_chunk("getAllCarts")])
        session = ConversationSession(model)

        turn = await session.send_message("what's in my carts?")
        assert turn.text == "Let me check."
        assert session.messages[-1].content == "Let me check."

    @pytest.mark.asyncio
    async def test_continue_while_call_pending(self):
        session = ConversationSession(ScriptedChatModel([tool_chunk("getAllCarts")]))
        await session.send_message("carts?")

        turn = await session.continue_conversation()
        assert turn.error_kind == "tool_call_pending"

    @pytest.mark.asyncio
    async def test_mismatched_result_is_rejected(self):
        session = ConversationSession(ScriptedChatModel([tool_chunk("getAllCarts", call_id="call_1")]))
        turn = await session.send_message("carts?")

        other = ToolCall(name="getAllCarts", id="call_other")
        assert not session.add_function_result(other, FunctionResult.ok("getAllCarts", {}), turn.generation)
        assert session.pending_tool_call is not None

    @pytest.mark.asyncio
    async def test_pending_call_answered_when_user_moves_on(self):
        model = ScriptedChatModel([
            tool_chunk("getAllCarts", call_id="call_1"),
            text_chunks("Sure, searching instead."),
        ])
        session = ConversationSession(model)
        first = await session.send_message("carts?")

        await session.send_message("actually, find rio")

        assert roles(session) == ["user", "assistant", "function", "user", "assistant"]
        cancelled = session.messages[2]
        assert cancelled.tool_call_id == "call_1"
        assert json.loads(cancelled.content) == {"success": False, "error": SUPERSEDED_RESULT}
        assert find_unpaired_tool_calls(session.messages) == []
        # The old turn's result arrives too late
        assert not session.add_function_result(
            first.tool_call, FunctionResult.ok("getAllCarts", {}), first.generation
        )


# =============================================================================
# Test Scenario 3: Failures
# =============================================================================

class TestFailures:
    """Failed turns leave only the user message behind."""

    @pytest.mark.asyncio
    async def test_network_error(self):
        model = ScriptedChatModel([NetworkError("Rate limit exceeded"), text_chunks("Hi again")])
        session = ConversationSession(model)

        turn = await session.send_message("hi")

        assert turn.error == "Rate limit exceeded"
        assert turn.error_kind == "network"
        assert roles(session) == ["user"]

        retry = await session.continue_conversation()
        assert retry.text == "Hi again"
        assert roles(session) == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_network(self):
        session = ConversationSession(ScriptedChatModel([RuntimeError("socket closed")]))
        turn = await session.send_message("hi")
        assert turn.error_kind == "network"
        assert turn.error == "socket closed"

    @pytest.mark.asyncio
    async def test_timeout(self):
        session = ConversationSession(SlowChatModel(), timeout=0.05)

        turn = await session.send_message("hi")

        assert turn.error_kind == "timeout"
        assert "Model request timed out" in turn.error
        assert roles(session) == ["user"]
        assert not session.busy

    @pytest.mark.asyncio
    async def test_cancelled_turn(self):
        gate = asyncio.Event()
        session = ConversationSession(ScriptedChatModel([text_chunks("Hel", "lo")], gate=gate))
        fragments = []

        task = asyncio.create_task(session.send_message("hi", on_chunk=fragments.append))
        await wait_for(lambda: any(not message.streaming_complete for message in session.messages))
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert fragments == ["Hel"]
        assert roles(session) == ["user"]
        assert not session.busy


# =============================================================================
# Test Scenario 4: Superseded turns
# =============================================================================

class TestSupersede:
    """A newer message makes older work stale."""

    @pytest.mark.asyncio
    async def test_new_message_interrupts_stream(self):
        gate = asyncio.Event()
        model = ScriptedChatModel([text_chunks("Hel", "lo", " there"), text_chunks("Rio found")], gate=gate)
        session = ConversationSession(model)
        first_fragments = []

        first = asyncio.create_task(session.send_message("hi", on_chunk=first_fragments.append))
        await wait_for(lambda: first_fragments)
        second = asyncio.create_task(session.send_message("find rio"))
        await asyncio.sleep(0)
        gate.set()

        first_turn, second_turn = await asyncio.gather(first, second)

        assert first_turn.stale
        assert first_turn.error == STALE_TURN
        assert first_turn.error_kind == "cancelled"
        assert first_fragments == ["Hel"]
        assert second_turn.text == "Rio found"
        assert user_messages(session.messages) == ["hi", "find rio"]
        assert [message.content for message in session.messages if message.role == MessageRole.ASSISTANT] == ["Rio found"]

    @pytest.mark.asyncio
    async def test_queued_stale_message_skips_model(self):
        gate = asyncio.Event()
        model = ScriptedChatModel([text_chunks("A", "B"), text_chunks("C")], gate=gate)
        session = ConversationSession(model)

        first = asyncio.create_task(session.send_message("one"))
        await wait_for(lambda: model.requests)
        second = asyncio.create_task(session.send_message("two"))
        third = asyncio.create_task(session.send_message("three"))
        await asyncio.sleep(0)
        gate.set()

        results = await asyncio.gather(first, second, third)

        assert [result.stale for result in results] == [True, True, False]
        assert len(model.requests) == 2
        assert user_messages(session.messages) == ["one", "three"]

    @pytest.mark.asyncio
    async def test_clear_history(self):
        session = ConversationSession(ScriptedChatModel([tool_chunk("getAllCarts")]), system_prompt="Be brief")
        turn = await session.send_message("carts?")

        session.clear_history()

        assert session.messages == []
        assert session.pending_tool_call is None
        assert session.system_prompt == "Be brief"
        assert not session.add_function_result(turn.tool_call, FunctionResult.ok("getAllCarts", {}), turn.generation)


# =============================================================================
# Test Scenario 5: Snapshots
# =============================================================================

def paired_log():
    call = ToolCall(name="getCart", arguments='{"shopId": "shop-a"}', id="call_1")
    return [
        Message(role=MessageRole.USER, content="show my cart"),
        Message(role=MessageRole.ASSISTANT, tool_call=call),
        Message(role=MessageRole.FUNCTION, name="getCart", tool_call_id="call_1", content='{"success": true}'),
        Message(role=MessageRole.ASSISTANT, content="Your cart has 2 items."),
    ]


def snapshot(messages, version=1):
    return {
        "version": version,
        "system_prompt": "Be brief",
        "metadata": {"channel": "cli"},
        "messages": [message.model_dump(mode="json") for message in messages],
    }


class TestSnapshots:
    """get_state / restore_state."""

    @pytest.mark.asyncio
    async def test_round_trip(self):
        model = ScriptedChatModel([
            tool_chunk("getAllCarts", call_id="call_1"),
            text_chunks("No carts yet."),
        ])
        session = ConversationSession(model, system_prompt="Be brief", metadata={"channel": "cli"})
        turn = await session.send_message("carts?")
        session.add_function_result(turn.tool_call, FunctionResult.ok("getAllCarts", {"carts": []}), turn.generation)
        await session.continue_conversation()

        state = json.loads(json.dumps(session.get_state()))
        restored = ConversationSession(ScriptedChatModel([]))
        restored.restore_state(state)

        assert restored.messages == session.messages
        assert restored.system_prompt == "Be brief"
        assert restored.metadata == {"channel": "cli"}
        assert restored.get_state() == session.get_state()

    def test_trailing_call_restored_as_pending(self):
        session = ConversationSession(ScriptedChatModel([]))
        session.restore_state(snapshot(paired_log()[:2]))

        pending = session.pending_tool_call
        assert pending.id == "call_1"
        assert session.add_function_result(pending, FunctionResult.ok("getCart", {}), session.generation)

    def test_restore_bumps_generation(self):
        session = ConversationSession(ScriptedChatModel([]))
        before = session.generation
        session.restore_state(snapshot(paired_log()))
        assert session.generation == before + 1
        assert session.pending_tool_call is None

    def test_orphan_function_result(self):
        log = paired_log()
        log.append(Message(role=MessageRole.FUNCTION, name="getCart", content="{}"))
        with pytest.raises(SnapshotCorruptedError):
            ConversationSession(ScriptedChatModel([])).restore_state(snapshot(log))

    def test_unanswered_call_mid_log(self):
        log = paired_log()
        del log[2]
        with pytest.raises(SnapshotCorruptedError):
            ConversationSession(ScriptedChatModel([])).restore_state(snapshot(log))

    def test_result_for_wrong_function(self):
        log = paired_log()
        log[2] = Message(role=MessageRole.FUNCTION, name="placeOrder", tool_call_id="call_1", content="{}")
        with pytest.raises(SnapshotCorruptedError):
            ConversationSession(ScriptedChatModel([])).restore_state(snapshot(log))

    def test_streaming_message(self):
        log = paired_log()
        log[3] = Message(role=MessageRole.ASSISTANT, content="Your ca", streaming_complete=False)
        with pytest.raises(SnapshotCorruptedError):
            ConversationSession(ScriptedChatModel([])).restore_state(snapshot(log))

    def test_unknown_version(self):
        with pytest.raises(SnapshotCorruptedError):
            ConversationSession(ScriptedChatModel([])).restore_state(snapshot(paired_log(), version=2))

    def test_invalid_payload(self):
        with pytest.raises(SnapshotCorruptedError):
            ConversationSession(ScriptedChatModel([])).restore_state({"messages": [{"role": "narrator"}]})

    def test_failed_restore_keeps_current_state(self):
        session = ConversationSession(ScriptedChatModel([]))
        session.restore_state(snapshot(paired_log()))
        with pytest.raises(SnapshotCorruptedError):
            session.restore_state(snapshot(paired_log(), version=2))
        assert len(session.messages) == 4
