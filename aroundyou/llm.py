"""
OpenAI-compatible tool-calling model.

Adapts the dialogue engine's message log to the chat completions API (OpenAI
or OpenRouter endpoints) and streams the reply back as ``ModelChunk``s.
Provider errors are translated into the package's error taxonomy.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import openai

from aroundyou import config
from aroundyou.errors import CallTimeoutError, CommerceError, NetworkError
from aroundyou.models import Message, MessageRole, ModelChunk, ToolCall

logger = logging.getLogger(__name__)


def translate_openai_error(error: Exception) -> CommerceError:
    """Map an openai SDK exception onto ``NetworkError`` / ``CallTimeoutError``."""
    if isinstance(error, openai.APITimeoutError):
        return CallTimeoutError("Model request")
    if isinstance(error, openai.RateLimitError):
        return NetworkError("Rate limit exceeded. Please try again in a moment.")
    if isinstance(error, openai.AuthenticationError):
        return NetworkError("Invalid API key. Please check your OPENAI_API_KEY configuration.")
    if isinstance(error, openai.APIConnectionError):
        return NetworkError(f"Could not reach the model provider: {error}")
    return NetworkError(f"OpenAI API error: {error}")


def to_openai_messages(messages: Sequence[Message], system_prompt: str) -> List[Dict[str, Any]]:
    """
    Convert the turn log to chat completion messages.

    Function-role messages become ``tool`` messages answering the assistant
    ``tool_calls`` entry with the same id.
    """
    converted: List[Dict[str, Any]] = []
    if system_prompt:
        converted.append({"role": "system", "content": system_prompt})

    for message in messages:
        if message.role == MessageRole.ASSISTANT:
            entry: Dict[str, Any] = {"role": "assistant", "content": message.content}
            if message.tool_call is not None:
                entry["tool_calls"] = [{
                    "id": message.tool_call.id,
                    "type": "function",
                    "function": {
                        "name": message.tool_call.name,
                        "arguments": message.tool_call.arguments,
                    }
                }]
            converted.append(entry)
        elif message.role == MessageRole.FUNCTION:
            content = message.content
            if content is None:
                content = json.dumps(message.tool_result or {})
            if message.tool_call_id:
                converted.append({"role": "tool", "tool_call_id": message.tool_call_id, "content": content})
            else:
                converted.append({"role": "function", "name": message.name, "content": content})
        else:
            converted.append({"role": message.role.value, "content": message.content or ""})

    return converted


class OpenAIChatModel:
    """
    Chat model backed by ``openai.AsyncOpenAI``.

    Only one tool call per reply is requested (``parallel_tool_calls=False``);
    if a provider still returns several, the first is used.
    """

    def __init__(
        self,
        client: Optional[openai.AsyncOpenAI] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ):
        if client is None:
            if not config.OPENAI_API_KEY:
                raise ValueError(
                    "OPENAI_API_KEY not found. Please set it in your .env file."
                )
            client = openai.AsyncOpenAI(api_key=config.OPENAI_API_KEY, base_url=config.OPENAI_BASE_URL)
        self.client = client
        self.model = model or config.CHAT_MODEL
        self.temperature = config.CHAT_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or config.CHAT_MAX_TOKENS

    async def stream_completion(
        self,
        messages: Sequence[Message],
        tools: List[Dict[str, Any]],
        system_prompt: str,
        stream: bool = True,
    ) -> AsyncIterator[ModelChunk]:
        request: Dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(messages, system_prompt),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"
            request["parallel_tool_calls"] = False

        try:
            if stream:
                async for chunk in self._stream(request):
                    yield chunk
            else:
                response = await self.client.chat.completions.create(**request)
                message = response.choices[0].message
                if message.content:
                    yield ModelChunk(text=message.content)
                if message.tool_calls:
                    first = message.tool_calls[0]
                    if len(message.tool_calls) > 1:
                        logger.warning("Model returned %d tool calls, using the first", len(message.tool_calls))
                    yield ModelChunk(tool_call=ToolCall(
                        id=first.id,
                        name=first.function.name,
                        arguments=first.function.arguments or "{}",
                    ))
        except openai.OpenAIError as e:
            logger.warning("Chat completion failed: %s", e)
            raise translate_openai_error(e) from e

    async def _stream(self, request: Dict[str, Any]) -> AsyncIterator[ModelChunk]:
        response = await self.client.chat.completions.create(stream=True, **request)

        # Tool call fragments arrive keyed by index
        calls: Dict[int, Dict[str, str]] = {}
        async for chunk in response:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                yield ModelChunk(text=delta.content)
            for fragment in delta.tool_calls or []:
                call = calls.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                if fragment.id:
                    call["id"] = fragment.id
                if fragment.function is not None:
                    if fragment.function.name and not call["name"]:
                        call["name"] = fragment.function.name
                    if fragment.function.arguments:
                        call["arguments"] += fragment.function.arguments

        if calls:
            if len(calls) > 1:
                logger.warning("Model returned %d tool calls, using the first", len(calls))
            first = calls[min(calls)]
            if not first["name"]:
                raise NetworkError("Model returned an incomplete tool call")
            tool_call = ToolCall(name=first["name"], arguments=first["arguments"] or "{}")
            if first["id"]:
                tool_call.id = first["id"]
            yield ModelChunk(tool_call=tool_call)
