"""
Dialogue engine.

``ConversationSession`` owns the message log and the standing system
instructions of one conversation and drives turns against a tool-calling
model. It never dispatches functions itself: when the model selects a tool the
turn stops with the call pending, the caller dispatches it and hands the
result back through ``add_function_result``, then resumes with
``continue_conversation``.

Every user message (and ``clear_history`` / ``restore_state``) bumps a
generation counter. Work started under an older generation is discarded when
it completes: streamed fragments stop being delivered, the reply is not
appended, and a late function result is dropped.
"""

import asyncio
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from aroundyou import config
from aroundyou.collaborators import ChatModel
from aroundyou.errors import CommerceError, NetworkError, SnapshotCorruptedError, with_timeout
from aroundyou.logging_config import session_id_var
from aroundyou.models import (
    ConversationState, FunctionResult, Message, MessageRole, ToolCall, TurnResult
)
from aroundyou.schemas import TOOLS

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1
CONTEXT_PREFIX = "Additional context:"
SUPERSEDED_RESULT = "superseded by a new message"
STALE_TURN = "Superseded by a newer message"
TOOL_CALL_PENDING = "A function call is still waiting for its result"

ChunkCallback = Callable[[str], None]


# =============================================================================
# Tool call pairing
# =============================================================================

def _answers(message: Message, call: ToolCall) -> bool:
    if message.name != call.name:
        return False
    return message.tool_call_id is None or message.tool_call_id == call.id


def _scan_tool_calls(messages: Sequence[Message]) -> Tuple[List[ToolCall], List[int], Optional[ToolCall]]:
    """
    Walk the log once.

    Returns:
        Tuple of (tool calls not answered exactly once before the next user or
        assistant message, indexes of function messages that answer nothing,
        the trailing call if the log ends while it is still unanswered)
    """
    unpaired: List[ToolCall] = []
    orphans: List[int] = []
    open_call: Optional[ToolCall] = None
    answers = 0

    for index, message in enumerate(messages):
        if message.role == MessageRole.FUNCTION:
            if open_call is not None and _answers(message, open_call):
                answers += 1
            else:
                orphans.append(index)
            continue
        if message.role == MessageRole.SYSTEM:
            continue
        if open_call is not None:
            if answers != 1:
                unpaired.append(open_call)
            open_call = None
        if message.role == MessageRole.ASSISTANT and message.tool_call is not None:
            open_call = message.tool_call
            answers = 0

    trailing = None
    if open_call is not None and answers != 1:
        unpaired.append(open_call)
        if answers == 0:
            trailing = open_call
    return unpaired, orphans, trailing


def find_unpaired_tool_calls(messages: Sequence[Message]) -> List[ToolCall]:
    """Tool calls not followed by exactly one function message of the same name."""
    unpaired, _, _ = _scan_tool_calls(messages)
    return unpaired


# =============================================================================
# Streaming
# =============================================================================

_DONE = object()


class TurnStream:
    """
    Text fragments of one turn as an async iterator.

    Iterate to receive fragments as they arrive; ``await stream.result()`` for
    the final ``TurnResult``. Iteration ends when the turn ends, whether it
    produced text, a tool call or an error.
    """

    def __init__(self, start: Callable[[ChunkCallback], Awaitable[TurnResult]]):
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._finished = False
        self._task = asyncio.ensure_future(self._run(start))

    async def _run(self, start: Callable[[ChunkCallback], Awaitable[TurnResult]]) -> TurnResult:
        try:
            return await start(self._queue.put_nowait)
        finally:
            self._queue.put_nowait(_DONE)

    def __aiter__(self) -> "TurnStream":
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        fragment = await self._queue.get()
        if fragment is _DONE:
            self._finished = True
            raise StopAsyncIteration
        return fragment

    async def result(self) -> TurnResult:
        return await self._task


# =============================================================================
# Session
# =============================================================================

class ConversationSession:
    """
    One conversation with a tool-calling model.

    Turns are serialized: ``send_message`` and ``continue_conversation`` hold
    the session lock while the model request is in flight. The message log is
    only changed through the public methods.

    Args:
        model: Tool-calling model
        system_prompt: Standing instructions sent with every turn
        tools: Tool definitions sent with every turn (the function registry by default)
        stream: Request a streamed reply
        timeout: Bound on each model request, in seconds
        metadata: Free-form metadata stored in snapshots
        session_id: Identifier used in log records
    """

    def __init__(
        self,
        model: ChatModel,
        system_prompt: str = "",
        tools: Optional[List[Dict[str, Any]]] = None,
        stream: bool = True,
        timeout: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None
    ):
        self.model = model
        self.tools = TOOLS if tools is None else tools
        self.stream = stream
        self.timeout = config.MODEL_TIMEOUT_SECONDS if timeout is None else timeout
        self.session_id = session_id or uuid.uuid4().hex[:12]

        self._state = ConversationState(
            version=SNAPSHOT_VERSION,
            system_prompt=system_prompt or "",
            metadata=dict(metadata or {}),
        )
        self._lock = asyncio.Lock()
        self._generation = 0
        self._pending: Optional[ToolCall] = None

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    @property
    def messages(self) -> List[Message]:
        return [message.model_copy(deep=True) for message in self._state.messages]

    @property
    def system_prompt(self) -> str:
        return self._state.system_prompt

    @property
    def metadata(self) -> Dict[str, Any]:
        return dict(self._state.metadata)

    @property
    def pending_tool_call(self) -> Optional[ToolCall]:
        """The tool call awaiting its function result, if any."""
        return self._pending.model_copy() if self._pending is not None else None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # -------------------------------------------------------------------------
    # Turns
    # -------------------------------------------------------------------------

    async def send_message(
        self,
        text: str,
        extra_context: Optional[str] = None,
        on_chunk: Optional[ChunkCallback] = None
    ) -> TurnResult:
        """
        Append a user message and request the assistant's reply.

        Args:
            text: User message
            extra_context: Sent to the model as an extra "Additional context"
                message for this turn only; not stored in the log
            on_chunk: Called with each streamed text fragment

        Returns:
            TurnResult with the reply text or tool call. Model and network
            failures are returned as ``error`` / ``error_kind``.
        """
        # Bumped before waiting for the lock so a turn or dispatch in flight
        # becomes stale immediately
        self._generation += 1
        generation = self._generation

        async with self._lock:
            if not self.is_current(generation):
                return self._stale(generation)

            with self._session_context():
                if self._pending is not None:
                    logger.info("Cancelling pending %s call for new message", self._pending.name)
                    self._append_function_result(
                        self._pending,
                        FunctionResult.failure(self._pending.name, SUPERSEDED_RESULT, "cancelled")
                    )

                self._state.messages.append(Message(role=MessageRole.USER, content=text))
                transient: List[Message] = []
                if extra_context:
                    transient.append(Message(
                        role=MessageRole.USER,
                        content=f"{CONTEXT_PREFIX} {extra_context}"
                    ))
                return await self._request_turn(generation, on_chunk, transient)

    async def continue_conversation(self, on_chunk: Optional[ChunkCallback] = None) -> TurnResult:
        """Request the next assistant message after a function result was added."""
        generation = self._generation

        async with self._lock:
            if not self.is_current(generation):
                return self._stale(generation)
            if self._pending is not None:
                return TurnResult(error=TOOL_CALL_PENDING, error_kind="tool_call_pending", generation=generation)

            with self._session_context():
                return await self._request_turn(generation, on_chunk, [])

    def stream_message(self, text: str, extra_context: Optional[str] = None) -> TurnStream:
        """
        ``send_message`` as an async iterator of text fragments.

        Must be called from a running event loop.
        """
        return TurnStream(lambda emit: self.send_message(text, extra_context=extra_context, on_chunk=emit))

    def add_function_result(self, tool_call: ToolCall, result: FunctionResult, generation: int) -> bool:
        """
        Answer the pending tool call.

        Args:
            tool_call: The call being answered
            result: Dispatcher outcome
            generation: Generation of the turn that produced ``tool_call``

        Returns:
            False if the result is stale or does not match the pending call;
            nothing is appended in that case
        """
        if not self.is_current(generation):
            logger.info("Discarding stale %s result (generation %d, now %d)",
                        tool_call.name, generation, self._generation)
            return False
        if self._pending is None or self._pending.id != tool_call.id:
            logger.warning("Discarding %s result: no matching pending call", tool_call.name)
            return False

        self._append_function_result(self._pending, result)
        return True

    async def _request_turn(
        self,
        generation: int,
        on_chunk: Optional[ChunkCallback],
        transient: List[Message]
    ) -> TurnResult:
        history = list(self._state.messages) + transient
        placeholder = Message(role=MessageRole.ASSISTANT, content="", streaming_complete=False)
        self._state.messages.append(placeholder)

        try:
            tool_call = await with_timeout(
                self._drain(history, generation, placeholder, on_chunk),
                self.timeout,
                "Model request"
            )
        except asyncio.CancelledError:
            self._discard(placeholder)
            raise
        except CommerceError as e:
            self._discard(placeholder)
            if not self.is_current(generation):
                return self._stale(generation)
            logger.warning("Model turn failed: %s", e)
            return TurnResult(error=str(e), error_kind=e.kind, generation=generation)
        except Exception as e:
            self._discard(placeholder)
            if not self.is_current(generation):
                return self._stale(generation)
            logger.exception("Model turn failed")
            return TurnResult(error=str(e) or "Model request failed", error_kind=NetworkError.kind, generation=generation)

        if not self.is_current(generation):
            self._discard(placeholder)
            return self._stale(generation)

        placeholder.streaming_complete = True
        if tool_call is not None:
            placeholder.tool_call = tool_call
            placeholder.content = placeholder.content or None
            self._pending = tool_call
            logger.info("Model selected %s", tool_call.name)

        return TurnResult(
            text=placeholder.content or None,
            tool_call=tool_call.model_copy() if tool_call is not None else None,
            generation=generation,
        )

    async def _drain(
        self,
        history: List[Message],
        generation: int,
        placeholder: Message,
        on_chunk: Optional[ChunkCallback]
    ) -> Optional[ToolCall]:
        tool_call: Optional[ToolCall] = None
        stream = self.model.stream_completion(history, self.tools, self._state.system_prompt, stream=self.stream)
        try:
            async for chunk in stream:
                if not self.is_current(generation):
                    break
                if chunk.text:
                    placeholder.content = (placeholder.content or "") + chunk.text
                    if on_chunk is not None:
                        on_chunk(chunk.text)
                if chunk.tool_call is not None and tool_call is None:
                    tool_call = chunk.tool_call
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return tool_call

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def get_state(self) -> Dict[str, Any]:
        """JSON-compatible snapshot of the conversation."""
        return self._state.model_dump(mode="json")

    def restore_state(self, state: Union[ConversationState, Dict[str, Any]]) -> None:
        """
        Replace the conversation with a snapshot.

        A snapshot ending in an unanswered tool call is restored with that
        call pending.

        Raises:
            SnapshotCorruptedError: If the snapshot does not validate or its
                tool calls are not properly answered
        """
        try:
            if isinstance(state, ConversationState):
                restored = state.model_copy(deep=True)
            else:
                restored = ConversationState.model_validate(state)
        except ValidationError as e:
            raise SnapshotCorruptedError(f"Invalid conversation snapshot: {e}") from e

        if restored.version != SNAPSHOT_VERSION:
            raise SnapshotCorruptedError(f"Unsupported snapshot version {restored.version}")
        if any(not message.streaming_complete for message in restored.messages):
            raise SnapshotCorruptedError("Snapshot was taken while a reply was streaming")

        unpaired, orphans, trailing = _scan_tool_calls(restored.messages)
        if orphans:
            raise SnapshotCorruptedError(f"Function result at position {orphans[0]} answers no tool call")
        broken = [call for call in unpaired if call is not trailing]
        if broken:
            raise SnapshotCorruptedError(f"Tool call {broken[0].name} ({broken[0].id}) is not answered exactly once")

        self._generation += 1
        self._state = restored
        self._pending = trailing
        logger.info("Restored conversation with %d messages", len(restored.messages))

    def update_system_prompt(self, text: str, append: bool = False) -> None:
        """
        Change the standing instructions for subsequent turns.

        With ``append=True`` the text is added as "Additional context" after
        the current instructions.
        """
        if append:
            addition = f"{CONTEXT_PREFIX} {text}"
            current = self._state.system_prompt
            self._state.system_prompt = f"{current}\n\n{addition}" if current else addition
        else:
            self._state.system_prompt = text

    def update_metadata(self, **values: Any) -> None:
        self._state.metadata.update(values)

    def clear_history(self) -> None:
        """Empty the message log; system instructions and metadata are kept."""
        self._generation += 1
        self._state.messages = []
        self._pending = None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _append_function_result(self, tool_call: ToolCall, result: FunctionResult) -> None:
        self._state.messages.append(Message(
            role=MessageRole.FUNCTION,
            name=tool_call.name,
            tool_call_id=tool_call.id,
            content=result.model_content(),
            tool_result=result.model_dump(mode="json"),
        ))
        self._pending = None

    def _discard(self, placeholder: Message) -> None:
        self._state.messages = [message for message in self._state.messages if message is not placeholder]

    def _stale(self, generation: int) -> TurnResult:
        logger.debug("Turn of generation %d superseded", generation)
        return TurnResult(error=STALE_TURN, error_kind="cancelled", generation=generation, stale=True)

    @contextmanager
    def _session_context(self):
        token = session_id_var.set(self.session_id)
        try:
            yield
        finally:
            session_id_var.reset(token)
