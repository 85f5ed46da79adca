from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from rentalchat.agent.llm import (
    ModelRequest,
    OpenAIModelClient,
    TextChunk,
    TextReply,
    ToolCallsReply,
    parse_tool_calls,
)
from rentalchat.errors import ModelTimeout, UpstreamProviderError, ValidationFailed

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _text(content: str) -> SimpleNamespace:
    delta = SimpleNamespace(content=content, tool_calls=None)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)], usage=None)


def _tool(index: int, call_id=None, name=None, arguments=None) -> SimpleNamespace:
    fn = SimpleNamespace(name=name, arguments=arguments)
    delta = SimpleNamespace(content=None, tool_calls=[SimpleNamespace(index=index, id=call_id, function=fn)])
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)], usage=None)


def _usage(prompt: int, completion: int, cached: int = 0) -> SimpleNamespace:
    usage = SimpleNamespace(
        prompt_tokens=prompt,
        completion_tokens=completion,
        prompt_tokens_details=SimpleNamespace(cached_tokens=cached),
        completion_tokens_details=SimpleNamespace(reasoning_tokens=0),
    )
    return SimpleNamespace(choices=[], usage=usage)


async def _aiter(items):
    for item in items:
        yield item


def _client(chunks=None, error=None) -> MagicMock:
    client = MagicMock()
    if error is not None:
        client.chat.completions.create = AsyncMock(side_effect=error)
    else:
        client.chat.completions.create = AsyncMock(return_value=_aiter(chunks))
    return client


async def _events(client: MagicMock, request: ModelRequest | None = None) -> list:
    model = OpenAIModelClient(client)
    return [e async for e in model.stream(request or ModelRequest(model="gpt-4o-mini", messages=[]))]


@pytest.mark.asyncio
async def test_text_is_streamed_then_summarized() -> None:
    client = _client([_text("Hel"), _text("lo"), _usage(120, 8, cached=100)])
    events = await _events(client)
    assert events[:2] == [TextChunk("Hel"), TextChunk("lo")]
    final = events[-1]
    assert isinstance(final, TextReply)
    assert final.content == "Hello"
    assert (final.usage.input_tokens, final.usage.output_tokens, final.usage.cached_tokens) == (120, 8, 100)


@pytest.mark.asyncio
async def test_tool_call_fragments_are_buffered() -> None:
    client = _client(
        [
            _tool(0, call_id="call_1", name="search_vehicles", arguments='{"loca'),
            _tool(0, arguments='tion": "Phoenix"}'),
            _tool(1, call_id="call_2", name="get_conditions", arguments="{}"),
            _usage(300, 40),
        ]
    )
    events = await _events(client)
    assert len(events) == 1
    reply = events[0]
    assert isinstance(reply, ToolCallsReply)
    assert [(c.call_id, c.name, c.arguments) for c in reply.calls] == [
        ("call_1", "search_vehicles", {"location": "Phoenix"}),
        ("call_2", "get_conditions", {}),
    ]
    assert reply.usage.input_tokens == 300


@pytest.mark.asyncio
async def test_malformed_tool_arguments_are_rejected() -> None:
    client = _client([_tool(0, call_id="call_1", name="search_vehicles", arguments='{"location": ')])
    with pytest.raises(ValidationFailed):
        await _events(client)


def test_parse_tool_calls_shapes() -> None:
    assert parse_tool_calls([{"id": "", "name": "", "arguments": ""}]) == ()
    with pytest.raises(ValidationFailed):
        parse_tool_calls([{"id": "call_1", "name": "", "arguments": "{}"}])
    with pytest.raises(ValidationFailed):
        parse_tool_calls([{"id": "call_1", "name": "quote_price", "arguments": "[1, 2]"}])


@pytest.mark.asyncio
async def test_request_kwargs() -> None:
    client = _client([_text("ok")])
    tools = [{"type": "function", "function": {"name": "quote_price", "parameters": {}}}]
    await _events(
        client,
        ModelRequest(model="o4-mini", messages=[{"role": "user", "content": "hi"}], tools=tools, reasoning_effort="high"),
    )
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["stream"] is True
    assert kwargs["stream_options"] == {"include_usage": True}
    assert kwargs["tools"] == tools and kwargs["tool_choice"] == "auto"
    assert kwargs["reasoning_effort"] == "high"
    assert "temperature" not in kwargs

    client = _client([_text("ok")])
    await _events(client, ModelRequest(model="gpt-4o-mini", messages=[], temperature=0.3))
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["temperature"] == 0.3
    assert "tools" not in kwargs and "reasoning_effort" not in kwargs


@pytest.mark.asyncio
async def test_timeout_maps_to_model_timeout() -> None:
    with pytest.raises(ModelTimeout):
        await _events(_client(error=openai.APITimeoutError(request=REQUEST)))


@pytest.mark.asyncio
async def test_provider_errors_map_to_upstream_error() -> None:
    with pytest.raises(UpstreamProviderError):
        await _events(_client(error=openai.APIConnectionError(request=REQUEST)))
    status = openai.APIStatusError("overloaded", response=httpx.Response(529, request=REQUEST), body=None)
    with pytest.raises(UpstreamProviderError):
        await _events(_client(error=status))
