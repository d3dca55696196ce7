"""Pydantic schemas for the intelligence agent engine."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from app.core.schemas_intelligence_jobs import AgentStats, utc_now


class ToolResult(BaseModel):
    """Typed outcome of one tool invocation, fed back to the model."""

    success: bool
    data: Any = None
    error: str | None = None


class ToolRequest(BaseModel):
    """A tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ModelResponse(BaseModel):
    """Provider-neutral view of one model turn."""

    text: str | None = None
    tool_requests: list[ToolRequest] = Field(default_factory=list)
    # Assistant content blocks, echoed back verbatim on the next turn
    content: list[dict[str, Any]] = Field(default_factory=list)
    stop_reason: str | None = None


class ProgressType(str, Enum):
    started = "started"
    thinking = "thinking"
    tool_call = "tool_call"
    tool_result = "tool_result"
    complete = "complete"
    error = "error"


class AgentProgress(BaseModel):
    """One progress event emitted by the engine, in loop order."""

    type: ProgressType
    timestamp: datetime = Field(default_factory=utc_now)
    data: dict[str, Any] = Field(default_factory=dict)


class AgentResult(BaseModel):
    """Outcome of one engine run. Stats are always populated."""

    success: bool
    output: Any = None
    error: str | None = None
    stats: AgentStats = Field(default_factory=AgentStats)
    rate_limited: bool = False
    cancelled: bool = False
