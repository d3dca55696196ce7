"""Tests for the agent execution engine with a scripted model provider."""

import json

import pytest

from app.agents.intelligence.engine import (
    FINAL_OUTPUT_PROMPT,
    FINISH_TOOL_NAME,
    FINISH_TOOL_REPLY,
    AgentEngine,
    parse_agent_output,
)
from app.agents.intelligence.tools import function_tool
from app.agents.intelligence.types import ModelResponse, ProgressType, ToolRequest
from app.core.intelligence_errors import ProviderError, RateLimitedError


class FakeProvider:
    """Replays a fixed list of responses (or exceptions) and records each request."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    async def send(self, system_prompt, messages, tools):
        self.requests.append({"system": system_prompt, "messages": list(messages), "tools": tools})
        if not self.responses:
            raise AssertionError("FakeProvider ran out of responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def tool_call(name, tool_input=None, call_id="call_1"):
    tool_input = tool_input or {}
    return ModelResponse(
        tool_requests=[ToolRequest(id=call_id, name=name, input=tool_input)],
        content=[{"type": "tool_use", "id": call_id, "name": name, "input": tool_input}],
    )


def text(value):
    return ModelResponse(text=value, content=[{"type": "text", "text": value}])


async def echo_handler(tool_input, context):
    return {"echo": tool_input.get("value"), "entity_id": context.get("entity_id")}


async def failing_handler(tool_input, context):
    raise RuntimeError("CRM unavailable")


echo_tool = function_tool(
    "echo",
    "Echo the input",
    {"type": "object", "properties": {"value": {"type": "string"}}},
    echo_handler,
)
failing_tool = function_tool("flaky", "Always fails", {"type": "object"}, failing_handler)


def make_engine(responses, tools=(echo_tool,), max_iterations=5):
    provider = FakeProvider(responses)
    engine = AgentEngine(
        name="test_agent",
        system_prompt="You are a test agent.",
        tools=list(tools),
        provider=provider,
        max_iterations=max_iterations,
    )
    return engine, provider


class Recorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    @property
    def types(self):
        return [e.type for e in self.events]


class TestParseAgentOutput:
    def test_json_fence(self):
        assert parse_agent_output('Report:\n```json\n{"score": 7}\n```') == {"score": 7}

    def test_raw_object_in_prose(self):
        assert parse_agent_output('Here you go {"a": [1, 2]} thanks') == {"a": [1, 2]}

    def test_no_json(self):
        assert parse_agent_output("plain answer") is None
        assert parse_agent_output(None) is None


class TestAgentEngine:
    def test_rejects_duplicate_tool_names(self):
        with pytest.raises(ValueError):
            AgentEngine("dup", "prompt", tools=[echo_tool, echo_tool], provider=FakeProvider([]))

    def test_rejects_zero_iterations(self):
        with pytest.raises(ValueError):
            AgentEngine("zero", "prompt", provider=FakeProvider([]), max_iterations=0)

    def test_offers_finish_tool(self):
        engine, _ = make_engine([])
        names = [schema["name"] for schema in engine.tool_schemas()]
        assert names == ["echo", FINISH_TOOL_NAME]

    @pytest.mark.asyncio
    async def test_tool_then_answer(self):
        engine, provider = make_engine(
            [tool_call("echo", {"value": "hi"}), text('```json\n{"score": 9}\n```')]
        )
        recorder = Recorder()

        result = await engine.run("Analyze", {"entity_id": "42"}, recorder)

        assert result.success is True
        assert result.output == {"score": 9}
        assert result.stats.iterations == 2
        assert result.stats.tool_calls == 1
        assert result.stats.duration_ms is not None
        assert recorder.types == [
            ProgressType.started,
            ProgressType.thinking,
            ProgressType.tool_call,
            ProgressType.tool_result,
            ProgressType.thinking,
            ProgressType.complete,
        ]

        # Context rendered into the first message
        first_message = provider.requests[0]["messages"][0]["content"]
        assert "Analyze" in first_message
        assert '"entity_id": "42"' in first_message

        # Tool result fed back keyed by the request id
        tool_turn = provider.requests[1]["messages"][-1]
        assert tool_turn["role"] == "user"
        block = tool_turn["content"][0]
        assert block["tool_use_id"] == "call_1"
        assert json.loads(block["content"]) == {
            "success": True,
            "data": {"echo": "hi", "entity_id": "42"},
        }

    @pytest.mark.asyncio
    async def test_plain_text_output(self):
        engine, _ = make_engine([text("No structured data available")])

        result = await engine.run("Analyze", {}, Recorder())

        assert result.success is True
        assert result.output == "No structured data available"

    @pytest.mark.asyncio
    async def test_tool_failure_is_fed_back(self):
        engine, provider = make_engine(
            [tool_call("flaky"), text('{"ok": true}')], tools=(failing_tool,)
        )
        recorder = Recorder()

        result = await engine.run("Analyze", {}, recorder)

        assert result.success is True
        block = provider.requests[1]["messages"][-1]["content"][0]
        assert block["is_error"] is True
        assert json.loads(block["content"]) == {"success": False, "error": "CRM unavailable"}
        tool_result = [e for e in recorder.events if e.type == ProgressType.tool_result][0]
        assert tool_result.data["success"] is False

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        engine, provider = make_engine([tool_call("nope"), text("{}")])

        await engine.run("Analyze", {}, Recorder())

        block = provider.requests[1]["messages"][-1]["content"][0]
        assert json.loads(block["content"])["error"] == "Unknown tool: nope"

    @pytest.mark.asyncio
    async def test_finish_tool(self):
        engine, provider = make_engine([tool_call(FINISH_TOOL_NAME), text('{"done": 1}')])

        result = await engine.run("Analyze", {}, Recorder())

        block = provider.requests[1]["messages"][-1]["content"][0]
        assert json.loads(block["content"])["data"]["message"] == FINISH_TOOL_REPLY
        assert result.output == {"done": 1}

    @pytest.mark.asyncio
    async def test_finish_on_last_iteration_completes(self):
        engine, provider = make_engine(
            [tool_call("echo", call_id="c1"), tool_call(FINISH_TOOL_NAME, call_id="c2"), text('{"score": 8}')],
            max_iterations=2,
        )
        recorder = Recorder()

        result = await engine.run("Analyze", {}, recorder)

        assert result.success is True
        assert result.output == {"score": 8}
        assert result.stats.iterations == 2
        assert len(provider.requests) == 3
        final_turn = provider.requests[2]["messages"][-1]["content"]
        assert final_turn[0]["tool_use_id"] == "c2"
        assert final_turn[-1] == {"type": "text", "text": FINAL_OUTPUT_PROMPT}
        assert recorder.types[-1] == ProgressType.complete

    @pytest.mark.asyncio
    async def test_finish_falls_back_to_last_parsed_output(self):
        draft = ModelResponse(
            text='Draft: {"score": 3}',
            tool_requests=[ToolRequest(id="c1", name=FINISH_TOOL_NAME, input={})],
            content=[],
        )
        engine, _ = make_engine([draft, text("No JSON this time.")], max_iterations=1)

        result = await engine.run("Analyze", {}, Recorder())

        assert result.success is True
        assert result.output == {"score": 3}

    @pytest.mark.asyncio
    async def test_final_output_request_failure(self):
        engine, _ = make_engine(
            [tool_call(FINISH_TOOL_NAME), RateLimitedError("rate_limit_error", status_code=429)]
        )

        result = await engine.run("Analyze", {}, Recorder())

        assert result.success is False
        assert result.rate_limited is True

    @pytest.mark.asyncio
    async def test_iteration_cap_is_exact(self):
        responses = [tool_call("echo", call_id=f"c{i}") for i in range(3)]
        engine, provider = make_engine(responses, max_iterations=3)
        recorder = Recorder()

        result = await engine.run("Analyze", {}, recorder)

        assert result.success is False
        assert result.error == "Agent reached maximum iterations (3)"
        assert result.stats.iterations == 3
        assert result.stats.tool_calls == 3
        assert len(provider.requests) == 3
        assert recorder.types[-1] == ProgressType.error

    @pytest.mark.asyncio
    async def test_iteration_cap_keeps_partial_output(self):
        partial = ModelResponse(
            text='Draft: {"score": 4}',
            tool_requests=[ToolRequest(id="c1", name="echo", input={})],
            content=[],
        )
        engine, _ = make_engine([partial], max_iterations=1)

        result = await engine.run("Analyze", {}, Recorder())

        assert result.success is False
        assert result.output == {"score": 4}

    @pytest.mark.asyncio
    async def test_provider_error(self):
        engine, _ = make_engine([ProviderError("bad request", status_code=400)])
        recorder = Recorder()

        result = await engine.run("Analyze", {}, recorder)

        assert result.success is False
        assert result.rate_limited is False
        assert result.error == "bad request"
        assert result.stats.iterations == 1
        assert recorder.types[-1] == ProgressType.error

    @pytest.mark.asyncio
    async def test_rate_limited_provider_error(self):
        engine, _ = make_engine([RateLimitedError("429 Too Many Requests", status_code=429)])

        result = await engine.run("Analyze", {}, Recorder())

        assert result.success is False
        assert result.rate_limited is True

    @pytest.mark.asyncio
    async def test_empty_response_fails(self):
        engine, _ = make_engine([ModelResponse()])

        result = await engine.run("Analyze", {}, Recorder())

        assert result.success is False
        assert result.error == "Model returned an empty response"

    @pytest.mark.asyncio
    async def test_cancelled_before_first_call(self):
        engine, provider = make_engine([text("{}")])

        result = await engine.run("Analyze", {}, Recorder(), should_cancel=lambda: True)

        assert result.cancelled is True
        assert result.success is False
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_cancelled_before_tool(self):
        calls = {"n": 0}

        async def cancel_on_second_check():
            calls["n"] += 1
            return calls["n"] >= 2

        engine, provider = make_engine([tool_call("echo"), text("{}")])
        recorder = Recorder()

        result = await engine.run("Analyze", {}, recorder, should_cancel=cancel_on_second_check)

        assert result.cancelled is True
        assert result.stats.tool_calls == 0
        assert len(provider.requests) == 1
        assert ProgressType.tool_call not in recorder.types

    @pytest.mark.asyncio
    async def test_sync_progress_sink(self):
        events = []
        engine, _ = make_engine([text('{"x": 1}')])

        result = await engine.run("Analyze", {}, events.append)

        assert result.success is True
        assert [e.type for e in events] == [
            ProgressType.started,
            ProgressType.thinking,
            ProgressType.complete,
        ]
