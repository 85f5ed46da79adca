"""Model client: one streamed chat completion, reduced to a tagged union.

A call yields any number of ``TextChunk`` items as text arrives, then exactly
one final item: ``TextReply`` when the model answered in prose or
``ToolCallsReply`` when it asked for tools. Tool-call arguments are buffered
until the stream ends and only then parsed; anything that does not parse as a
JSON object is rejected as ``ValidationFailed``.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple, Union

import openai
from openai import AsyncOpenAI

from ..errors import ModelTimeout, UpstreamProviderError, ValidationFailed
from ..models import TokenUsage, ToolCallRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelRequest:
    model: str
    messages: List[Dict[str, Any]]
    tools: List[Dict[str, Any]] = field(default_factory=list)
    temperature: float = 0.2
    max_output_tokens: int = 1024
    reasoning_effort: Optional[str] = None


@dataclass(frozen=True)
class TextChunk:
    content: str


@dataclass(frozen=True)
class TextReply:
    content: str
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class ToolCallsReply:
    calls: Tuple[ToolCallRequest, ...]
    content: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)


ModelEvent = Union[TextChunk, TextReply, ToolCallsReply]


class ModelClient(Protocol):
    def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]: ...


def parse_tool_calls(raw_calls: List[Dict[str, str]]) -> Tuple[ToolCallRequest, ...]:
    """Turn accumulated ``{"id", "name", "arguments"}`` fragments into requests.

    Call ids may be empty here; the orchestrator assigns one before dispatch.
    """
    calls: List[ToolCallRequest] = []
    for tc in raw_calls:
        if not tc["name"]:
            if tc["arguments"] or tc["id"]:
                raise ValidationFailed("model emitted a tool call without a name")
            continue
        try:
            arguments = json.loads(tc["arguments"]) if tc["arguments"] else {}
        except json.JSONDecodeError as e:
            raise ValidationFailed(f"invalid arguments for tool {tc['name']}: {e}") from e
        if not isinstance(arguments, dict):
            raise ValidationFailed(f"arguments for tool {tc['name']} are not an object")
        calls.append(ToolCallRequest(call_id=tc["id"], name=tc["name"], arguments=arguments))
    return tuple(calls)


def usage_from_openai(usage: Any) -> TokenUsage:
    if usage is None:
        return TokenUsage()
    prompt_details = getattr(usage, "prompt_tokens_details", None)
    completion_details = getattr(usage, "completion_tokens_details", None)
    return TokenUsage(
        input_tokens=usage.prompt_tokens or 0,
        output_tokens=usage.completion_tokens or 0,
        cached_tokens=(getattr(prompt_details, "cached_tokens", 0) or 0) if prompt_details else 0,
        reasoning_tokens=(getattr(completion_details, "reasoning_tokens", 0) or 0) if completion_details else 0,
    )


class OpenAIModelClient:
    """Streams chat completions from any OpenAI-compatible endpoint."""

    def __init__(self, client: AsyncOpenAI) -> None:
        self._client = client

    def _create_kwargs(self, request: ModelRequest) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": request.messages,
            "stream": True,
            "stream_options": {"include_usage": True},
            "max_completion_tokens": request.max_output_tokens,
        }
        if request.tools:
            kwargs["tools"] = request.tools
            kwargs["tool_choice"] = "auto"
        if request.reasoning_effort:
            kwargs["reasoning_effort"] = request.reasoning_effort
        else:
            kwargs["temperature"] = request.temperature
        return kwargs

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        full_response = ""
        tool_calls_made: List[Dict[str, str]] = []
        usage = TokenUsage()

        try:
            stream = await self._client.chat.completions.create(**self._create_kwargs(request))

            async for chunk in stream:
                if chunk.usage is not None:
                    usage = usage_from_openai(chunk.usage)
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    full_response += delta.content
                    yield TextChunk(delta.content)
                if delta.tool_calls:
                    for tool_call_delta in delta.tool_calls:
                        if tool_call_delta.index is None:
                            continue
                        while len(tool_calls_made) <= tool_call_delta.index:
                            tool_calls_made.append({"id": "", "name": "", "arguments": ""})
                        tc = tool_calls_made[tool_call_delta.index]
                        if tool_call_delta.id:
                            tc["id"] = tool_call_delta.id
                        if tool_call_delta.function:
                            if tool_call_delta.function.name:
                                tc["name"] = tool_call_delta.function.name
                            if tool_call_delta.function.arguments:
                                tc["arguments"] += tool_call_delta.function.arguments
        except openai.APITimeoutError as e:
            logger.warning("Model call timed out: %s", e)
            raise ModelTimeout(str(e)) from e
        except openai.APIConnectionError as e:
            logger.warning("Model provider unreachable: %s", e)
            raise UpstreamProviderError(str(e)) from e
        except openai.APIStatusError as e:
            logger.warning("Model provider returned status %s", e.status_code)
            raise UpstreamProviderError(f"status {e.status_code}") from e

        calls = parse_tool_calls(tool_calls_made)
        logger.debug(
            "Model call finished: chars=%d tool_calls=%d input=%d output=%d",
            len(full_response),
            len(calls),
            usage.input_tokens,
            usage.output_tokens,
        )
        if calls:
            yield ToolCallsReply(calls=calls, content=full_response, usage=usage)
        else:
            yield TextReply(content=full_response, usage=usage)
