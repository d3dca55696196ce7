"""Client for the internal knowledge base query endpoint."""

from typing import Any

import httpx

from app.core.config import get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)


async def query_knowledge_base(query: str) -> Any:
    """
    Ask the knowledge base a natural-language question.

    The endpoint takes {"query": ...} and its JSON response is returned as-is.

    Raises:
        ValueError: If KNOWLEDGE_BASE_URL not configured or query is blank
        httpx.HTTPStatusError: If the request fails
    """
    settings = get_settings()

    if not settings.KNOWLEDGE_BASE_URL:
        raise ValueError("KNOWLEDGE_BASE_URL not configured")
    if not query or not query.strip():
        raise ValueError("query is required")

    headers = {}
    if settings.KNOWLEDGE_BASE_API_KEY:
        headers["Authorization"] = f"Bearer {settings.KNOWLEDGE_BASE_API_KEY}"

    async with httpx.AsyncClient(timeout=settings.KNOWLEDGE_BASE_TIMEOUT) as client:
        response = await client.post(
            settings.KNOWLEDGE_BASE_URL,
            headers=headers,
            json={"query": query},
        )
        response.raise_for_status()

    logger.info(f"Knowledge base query '{query[:50]}' answered")
    return response.json()
