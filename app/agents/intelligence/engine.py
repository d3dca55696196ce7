"""Agent execution engine.

Runs a bounded tool-calling loop against a model provider:

1. Send the conversation (system prompt, task, context, prior turns)
2. If the model requested tools, execute them sequentially and feed results back
3. If the model answered in text with no tool requests, parse it and finish.
   A finish_analysis call also ends the loop, after one extra request for the
   report that does not count as an iteration
4. Stop with a failure once the iteration cap is reached

Each run owns its own conversation, so one engine instance can serve
concurrent runs.
"""

import inspect
import json
import re
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from app.agents.intelligence.provider import AnthropicProvider, ModelProvider
from app.agents.intelligence.tools import AgentTool, ToolSet
from app.agents.intelligence.types import (
    AgentProgress,
    AgentResult,
    ProgressType,
    ToolRequest,
    ToolResult,
)
from app.core.config import get_settings
from app.core.intelligence_errors import is_rate_limit_error
from app.core.logging import get_logger
from app.core.schemas_intelligence_jobs import AgentStats

logger = get_logger(__name__)

FINISH_TOOL_NAME = "finish_analysis"
FINISH_TOOL_REPLY = "Analysis complete. Provide your final report in JSON."
FINAL_OUTPUT_PROMPT = "Now provide your final analysis as a single JSON object."

FINISH_TOOL_SCHEMA = {
    "name": FINISH_TOOL_NAME,
    "description": (
        "Call this when you have gathered enough information. "
        "After calling it, reply with your final report as a single JSON object."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "summary": {"type": "string", "description": "One-line summary of what you found"}
        },
    },
}

ProgressSink = Callable[[AgentProgress], Awaitable[None] | None]
CancelCheck = Callable[[], Awaitable[bool] | bool]

_JSON_FENCE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)


def parse_agent_output(text: str | None) -> Any:
    """
    Extract the JSON report from a final model answer.

    Tries a ```json fence first, then the outermost {...} span.

    Returns:
        Parsed JSON value, or None if no JSON could be decoded
    """
    if not text:
        return None

    candidates = []
    fence = _JSON_FENCE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class AgentEngine:
    """A named agent: system prompt, tool set, iteration cap and provider."""

    def __init__(
        self,
        name: str,
        system_prompt: str,
        tools: Iterable[AgentTool] | ToolSet = (),
        provider: ModelProvider | None = None,
        max_iterations: int | None = None,
    ):
        self.name = name
        self.system_prompt = system_prompt
        self.tools = tools if isinstance(tools, ToolSet) else ToolSet(tools)
        self.provider = provider or AnthropicProvider()
        if max_iterations is None:
            max_iterations = get_settings().INTEL_AGENT_MAX_ITERATIONS
        self.max_iterations = max_iterations
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

    def tool_schemas(self) -> list[dict[str, Any]]:
        schemas = self.tools.schemas()
        if FINISH_TOOL_NAME not in self.tools:
            schemas.append(FINISH_TOOL_SCHEMA)
        return schemas

    async def run(
        self,
        task: str,
        context: dict[str, Any],
        on_progress: ProgressSink,
        should_cancel: CancelCheck | None = None,
    ) -> AgentResult:
        """
        Execute one analysis run.

        Args:
            task: Instruction for this run
            context: Data the agent starts from; also passed to every tool
            on_progress: Receives progress events in loop order
            should_cancel: Polled before each model call and each tool call

        Returns:
            AgentResult. Provider failures are captured here rather than raised.
        """
        started = time.monotonic()
        stats = AgentStats(iterations=0, tool_calls=0)
        last_output: Any = None

        def finish(**kwargs: Any) -> AgentResult:
            stats.duration_ms = int((time.monotonic() - started) * 1000)
            return AgentResult(stats=stats, **kwargs)

        async def emit(kind: ProgressType, **data: Any) -> None:
            await _maybe_await(on_progress(AgentProgress(type=kind, data=data)))

        async def cancelled() -> bool:
            if should_cancel is None:
                return False
            return bool(await _maybe_await(should_cancel()))

        messages: list[dict[str, Any]] = [
            {"role": "user", "content": self._initial_message(task, context)}
        ]
        tool_schemas = self.tool_schemas()

        logger.info(f"Agent {self.name} starting")
        await emit(ProgressType.started, agent=self.name, message=f"Starting {self.name}")

        while stats.iterations < self.max_iterations:
            if await cancelled():
                logger.info(f"Agent {self.name} cancelled before iteration {stats.iterations + 1}")
                return finish(success=False, cancelled=True, error="Cancelled", output=last_output)

            stats.iterations += 1
            await emit(
                ProgressType.thinking,
                iteration=stats.iterations,
                message=f"Iteration {stats.iterations}: analyzing",
            )

            try:
                response = await self.provider.send(self.system_prompt, messages, tool_schemas)
            except Exception as e:
                rate_limited = is_rate_limit_error(e)
                logger.warning(
                    f"Agent {self.name} provider call failed (rate_limited={rate_limited}): {e}"
                )
                await emit(ProgressType.error, error=str(e), rate_limited=rate_limited)
                return finish(
                    success=False, error=str(e), rate_limited=rate_limited, output=last_output
                )

            parsed = parse_agent_output(response.text)
            if parsed is not None:
                last_output = parsed

            if not response.tool_requests:
                if not response.text:
                    error = "Model returned an empty response"
                    await emit(ProgressType.error, error=error)
                    return finish(success=False, error=error, output=last_output)

                output = parsed if parsed is not None else response.text
                logger.info(
                    f"Agent {self.name} complete: {stats.iterations} iterations, "
                    f"{stats.tool_calls} tool calls"
                )
                await emit(
                    ProgressType.complete,
                    iterations=stats.iterations,
                    tool_calls=stats.tool_calls,
                )
                return finish(success=True, output=output)

            if response.text:
                await emit(ProgressType.thinking, iteration=stats.iterations, message=response.text[:500])

            messages.append({"role": "assistant", "content": response.content})

            tool_results: list[dict[str, Any]] = []
            for request in response.tool_requests:
                if await cancelled():
                    logger.info(f"Agent {self.name} cancelled before tool {request.name}")
                    return finish(success=False, cancelled=True, error="Cancelled", output=last_output)

                stats.tool_calls += 1
                result = await self._execute_tool(request, context, emit)
                tool_results.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": request.id,
                        "content": json.dumps(result.model_dump(exclude_none=True), default=str),
                        "is_error": not result.success,
                    }
                )

            if any(request.name == FINISH_TOOL_NAME for request in response.tool_requests):
                tool_results.append({"type": "text", "text": FINAL_OUTPUT_PROMPT})
                messages.append({"role": "user", "content": tool_results})
                return await self._final_output(messages, tool_schemas, last_output, stats, finish, emit)

            messages.append({"role": "user", "content": tool_results})

        error = f"Agent reached maximum iterations ({self.max_iterations})"
        logger.warning(f"Agent {self.name}: {error}")
        await emit(ProgressType.error, error=error, iterations=stats.iterations)
        return finish(success=False, error=error, output=last_output)

    async def _final_output(
        self,
        messages: list[dict[str, Any]],
        tool_schemas: list[dict[str, Any]],
        last_output: Any,
        stats: AgentStats,
        finish: Callable[..., AgentResult],
        emit: Callable[..., Awaitable[None]],
    ) -> AgentResult:
        """
        Collect the report after the finish tool was called.

        This request does not count against max_iterations, so finishing on
        the last allowed iteration still completes the run.
        """
        try:
            response = await self.provider.send(self.system_prompt, messages, tool_schemas)
        except Exception as e:
            rate_limited = is_rate_limit_error(e)
            logger.warning(f"Agent {self.name} final output request failed: {e}")
            await emit(ProgressType.error, error=str(e), rate_limited=rate_limited)
            return finish(success=False, error=str(e), rate_limited=rate_limited, output=last_output)

        parsed = parse_agent_output(response.text)
        if parsed is not None:
            output = parsed
        elif last_output is not None:
            output = last_output
        else:
            output = response.text

        if output is None:
            error = "Model returned an empty response"
            await emit(ProgressType.error, error=error)
            return finish(success=False, error=error)

        logger.info(
            f"Agent {self.name} finished: {stats.iterations} iterations, {stats.tool_calls} tool calls"
        )
        await emit(ProgressType.complete, iterations=stats.iterations, tool_calls=stats.tool_calls)
        return finish(success=True, output=output)

    def _initial_message(self, task: str, context: dict[str, Any]) -> str:
        return f"{task}\n\n## Context\n```json\n{json.dumps(context, indent=2, default=str)}\n```"

    async def _execute_tool(
        self,
        request: ToolRequest,
        context: dict[str, Any],
        emit: Callable[..., Awaitable[None]],
    ) -> ToolResult:
        """Run one tool request. Never raises; failures come back as ToolResult."""
        await emit(ProgressType.tool_call, tool=request.name, input=request.input)

        tool = self.tools.get(request.name)
        if tool is not None:
            try:
                result = await tool.invoke(request.input, context)
            except Exception as e:
                logger.warning(f"Tool {request.name} raised: {e}", extra={"tool": request.name})
                result = ToolResult(success=False, error=str(e))
        elif request.name == FINISH_TOOL_NAME:
            result = ToolResult(success=True, data={"message": FINISH_TOOL_REPLY})
        else:
            result = ToolResult(success=False, error=f"Unknown tool: {request.name}")

        await emit(
            ProgressType.tool_result,
            tool=request.name,
            success=result.success,
            error=result.error,
        )
        return result
