"""Tests for the Anthropic model provider with a mocked SDK client."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from anthropic import APIConnectionError, APIStatusError, RateLimitError

from app.agents.intelligence.provider import AnthropicProvider, parse_anthropic_response
from app.core.intelligence_errors import ProviderError, RateLimitedError


def status_error(cls, status_code, message="error"):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    response = httpx.Response(status_code, request=request)
    return cls(message, response=response, body=None)


def make_provider(side_effect=None, return_value=None):
    client = MagicMock()
    client.messages.create = AsyncMock(side_effect=side_effect, return_value=return_value)
    return AnthropicProvider(model="test-model", max_tokens=256, client=client), client


def test_parse_text_and_tool_use():
    response = SimpleNamespace(
        stop_reason="tool_use",
        content=[
            SimpleNamespace(type="text", text="Looking up the deal."),
            SimpleNamespace(type="tool_use", id="tu_1", name="get_crm_record", input={"object_id": "5"}),
        ],
    )

    parsed = parse_anthropic_response(response)

    assert parsed.text == "Looking up the deal."
    assert parsed.tool_requests[0].id == "tu_1"
    assert parsed.tool_requests[0].input == {"object_id": "5"}
    assert parsed.content[1] == {
        "type": "tool_use",
        "id": "tu_1",
        "name": "get_crm_record",
        "input": {"object_id": "5"},
    }
    assert parsed.stop_reason == "tool_use"


def test_parse_malformed_response():
    with pytest.raises(ProviderError, match="Malformed"):
        parse_anthropic_response(SimpleNamespace(content=None))


@pytest.mark.asyncio
async def test_send_passes_conversation():
    response = SimpleNamespace(content=[SimpleNamespace(type="text", text='{"score": 1}')], stop_reason="end_turn")
    provider, client = make_provider(return_value=response)

    result = await provider.send("system", [{"role": "user", "content": "hi"}], [{"name": "t"}])

    assert result.text == '{"score": 1}'
    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert kwargs["max_tokens"] == 256
    assert kwargs["system"] == "system"
    assert kwargs["tools"] == [{"name": "t"}]


@pytest.mark.asyncio
async def test_rate_limit_maps_to_rate_limited():
    provider, _ = make_provider(side_effect=status_error(RateLimitError, 429, "rate_limit_error"))

    with pytest.raises(RateLimitedError) as exc_info:
        await provider.send("s", [], [])

    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_overloaded_maps_to_rate_limited():
    provider, _ = make_provider(side_effect=status_error(APIStatusError, 529, "overloaded_error"))

    with pytest.raises(RateLimitedError):
        await provider.send("s", [], [])


@pytest.mark.asyncio
async def test_other_status_maps_to_provider_error():
    provider, _ = make_provider(side_effect=status_error(APIStatusError, 400, "invalid_request_error"))

    with pytest.raises(ProviderError) as exc_info:
        await provider.send("s", [], [])

    assert not isinstance(exc_info.value, RateLimitedError)
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_connection_error_maps_to_provider_error():
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    provider, _ = make_provider(side_effect=APIConnectionError(request=request))

    with pytest.raises(ProviderError, match="connection failed"):
        await provider.send("s", [], [])
