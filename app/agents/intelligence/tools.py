"""Tools for the intelligence agents.

Each tool wraps one external capability behind the same interface:
a name, a JSON input schema and an async invoke returning ToolResult.
Adapters hold no per-run state and are shared across concurrent jobs.
"""

from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from app.agents.intelligence.types import ToolResult
from app.core import hubspot_service, knowledge_base_service, web_research_service
from app.core.logging import get_logger

logger = get_logger(__name__)

ToolInvoke = Callable[[dict[str, Any], dict[str, Any]], Awaitable[ToolResult]]
ToolHandler = Callable[[dict[str, Any], dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class AgentTool:
    """A capability the agent may call mid-conversation."""

    name: str
    description: str
    input_schema: dict[str, Any]
    invoke: ToolInvoke

    def to_schema(self) -> dict[str, Any]:
        """Tool definition in the shape the model provider expects."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


def function_tool(
    name: str,
    description: str,
    input_schema: dict[str, Any],
    handler: ToolHandler,
) -> AgentTool:
    """
    Build a tool from an async handler.

    Whatever the handler returns becomes `data`; any exception it raises is
    captured as a failed ToolResult so the agent can adapt.
    """

    async def invoke(tool_input: dict[str, Any], context: dict[str, Any]) -> ToolResult:
        try:
            data = await handler(tool_input, context)
            return ToolResult(success=True, data=data)
        except Exception as e:
            logger.warning(f"Tool {name} failed: {e}", extra={"tool": name})
            return ToolResult(success=False, error=str(e))

    return AgentTool(name=name, description=description, input_schema=input_schema, invoke=invoke)


class ToolSet:
    """An ordered, name-resolved set of tools. Names must be unique."""

    def __init__(self, tools: Iterable[AgentTool] = ()):
        self._tools: dict[str, AgentTool] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            self._tools[tool.name] = tool

    def get(self, name: str) -> AgentTool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[AgentTool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict[str, Any]]:
        return [tool.to_schema() for tool in self._tools.values()]


# =============================================================================
# CRM tools
# =============================================================================

_OBJECT_TYPE_SCHEMA = {
    "type": "string",
    "enum": ["contacts", "companies", "deals"],
    "description": "CRM object type",
}


async def _get_crm_record(tool_input: dict[str, Any], context: dict[str, Any]) -> Any:
    return await hubspot_service.get_object(
        tool_input["object_type"],
        str(tool_input["object_id"]),
        properties=tool_input.get("properties"),
    )


async def _get_associations(tool_input: dict[str, Any], context: dict[str, Any]) -> Any:
    return await hubspot_service.get_associations(
        tool_input["object_type"],
        str(tool_input["object_id"]),
        tool_input["to_object_type"],
    )


async def _search_engagements(tool_input: dict[str, Any], context: dict[str, Any]) -> Any:
    return await hubspot_service.list_engagements(
        tool_input["object_type"],
        str(tool_input["object_id"]),
        limit=int(tool_input.get("limit", 20)),
    )


get_crm_record_tool = function_tool(
    "get_crm_record",
    "Fetch a CRM record (contact, company or deal) with its properties.",
    {
        "type": "object",
        "properties": {
            "object_type": _OBJECT_TYPE_SCHEMA,
            "object_id": {"type": "string", "description": "CRM record ID"},
            "properties": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Specific properties to return (default: standard set)",
            },
        },
        "required": ["object_type", "object_id"],
    },
    _get_crm_record,
)

get_associations_tool = function_tool(
    "get_associations",
    "List records associated with a CRM record, e.g. the contacts on a deal.",
    {
        "type": "object",
        "properties": {
            "object_type": _OBJECT_TYPE_SCHEMA,
            "object_id": {"type": "string", "description": "CRM record ID"},
            "to_object_type": _OBJECT_TYPE_SCHEMA,
        },
        "required": ["object_type", "object_id", "to_object_type"],
    },
    _get_associations,
)

search_engagements_tool = function_tool(
    "search_engagements",
    "Fetch recent notes, emails, calls and meetings logged against a CRM record.",
    {
        "type": "object",
        "properties": {
            "object_type": _OBJECT_TYPE_SCHEMA,
            "object_id": {"type": "string", "description": "CRM record ID"},
            "limit": {"type": "integer", "description": "Maximum engagements (default 20)"},
        },
        "required": ["object_type", "object_id"],
    },
    _search_engagements,
)


# =============================================================================
# Research tools
# =============================================================================


async def _web_search(tool_input: dict[str, Any], context: dict[str, Any]) -> Any:
    return await web_research_service.search_web(
        tool_input["query"],
        num_results=int(tool_input.get("num_results", 8)),
    )


async def _scrape_page(tool_input: dict[str, Any], context: dict[str, Any]) -> Any:
    return await web_research_service.scrape_page(tool_input["url"])


async def _query_knowledge_base(tool_input: dict[str, Any], context: dict[str, Any]) -> Any:
    return await knowledge_base_service.query_knowledge_base(tool_input["query"])


web_search_tool = function_tool(
    "web_search",
    "Search the web for news, funding, hiring and market information about the entity.",
    {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Specific search query"},
            "num_results": {"type": "integer", "description": "Number of results (default 8)"},
        },
        "required": ["query"],
    },
    _web_search,
)

scrape_page_tool = function_tool(
    "scrape_page",
    "Fetch a web page (e.g. the company website) as markdown.",
    {
        "type": "object",
        "properties": {"url": {"type": "string", "description": "The URL to fetch"}},
        "required": ["url"],
    },
    _scrape_page,
)

query_knowledge_base_tool = function_tool(
    "query_knowledge_base",
    "Query the internal knowledge base (past projects, products, sales playbooks).",
    {
        "type": "object",
        "properties": {"query": {"type": "string", "description": "Natural-language question"}},
        "required": ["query"],
    },
    _query_knowledge_base,
)


def default_intelligence_tools() -> list[AgentTool]:
    """The tool set every entity agent receives."""
    return [
        get_crm_record_tool,
        get_associations_tool,
        search_engagements_tool,
        web_search_tool,
        scrape_page_tool,
        query_knowledge_base_tool,
    ]
