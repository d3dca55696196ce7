"""Model provider boundary for the agent engine.

The engine only sees ModelResponse. AnthropicProvider is the production
implementation; tests supply scripted providers with the same `send`.
"""

from typing import Any, Protocol

from anthropic import (
    AnthropicError,
    APIConnectionError,
    APIStatusError,
    AsyncAnthropic,
    RateLimitError,
)

from app.agents.intelligence.types import ModelResponse, ToolRequest
from app.core.config import get_settings
from app.core.intelligence_errors import (
    RATE_LIMIT_STATUS_CODES,
    ProviderError,
    RateLimitedError,
    is_rate_limit_error,
)
from app.core.logging import get_logger

logger = get_logger(__name__)


class ModelProvider(Protocol):
    async def send(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        """Send the conversation so far and return the next assistant turn."""
        ...


def parse_anthropic_response(response: Any) -> ModelResponse:
    """
    Convert an Anthropic Message into a ModelResponse.

    Raises:
        ProviderError: If the response has no content list
    """
    blocks = getattr(response, "content", None)
    if not isinstance(blocks, list):
        raise ProviderError("Malformed model response: missing content")

    text_parts: list[str] = []
    tool_requests: list[ToolRequest] = []
    content: list[dict[str, Any]] = []

    for block in blocks:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            text_parts.append(block.text)
            content.append({"type": "text", "text": block.text})
        elif block_type == "tool_use":
            tool_input = block.input if isinstance(block.input, dict) else {}
            tool_requests.append(ToolRequest(id=block.id, name=block.name, input=tool_input))
            content.append(
                {"type": "tool_use", "id": block.id, "name": block.name, "input": tool_input}
            )

    text = "\n".join(part for part in text_parts if part).strip() or None
    return ModelResponse(
        text=text,
        tool_requests=tool_requests,
        content=content,
        stop_reason=getattr(response, "stop_reason", None),
    )


class AnthropicProvider:
    """Claude via the Anthropic Messages API."""

    def __init__(
        self,
        model: str | None = None,
        max_tokens: int | None = None,
        client: AsyncAnthropic | None = None,
    ):
        settings = get_settings()
        self.model = model or settings.INTEL_AGENT_MODEL
        self.max_tokens = max_tokens or settings.INTEL_AGENT_MAX_TOKENS
        self.client = client or AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY)

    async def send(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system_prompt,
                tools=tools,
                messages=messages,
            )
        except RateLimitError as e:
            logger.warning(f"Anthropic rate limit: {e}")
            raise RateLimitedError(str(e), status_code=e.status_code) from e
        except APIStatusError as e:
            if e.status_code in RATE_LIMIT_STATUS_CODES or is_rate_limit_error(e):
                logger.warning(f"Anthropic overloaded ({e.status_code}): {e}")
                raise RateLimitedError(str(e), status_code=e.status_code) from e
            raise ProviderError(str(e), status_code=e.status_code) from e
        except APIConnectionError as e:
            raise ProviderError(f"Anthropic connection failed: {e}") from e
        except AnthropicError as e:
            raise ProviderError(str(e)) from e

        return parse_anthropic_response(response)
