"""CRM intelligence agents: a tool-calling engine plus contact, company and deal analyses."""

from app.agents.intelligence.engine import AgentEngine, parse_agent_output
from app.agents.intelligence.entity_agents import normalize_result, run_entity_analysis
from app.agents.intelligence.provider import AnthropicProvider, ModelProvider
from app.agents.intelligence.tools import AgentTool, ToolSet, function_tool
from app.agents.intelligence.types import (
    AgentProgress,
    AgentResult,
    ModelResponse,
    ProgressType,
    ToolRequest,
    ToolResult,
)

__all__ = [
    "AgentEngine",
    "AgentProgress",
    "AgentResult",
    "AgentTool",
    "AnthropicProvider",
    "ModelProvider",
    "ModelResponse",
    "ProgressType",
    "ToolRequest",
    "ToolResult",
    "ToolSet",
    "function_tool",
    "normalize_result",
    "parse_agent_output",
    "run_entity_analysis",
]
