"""Web research backends for the intelligence agents: SerpAPI search and Firecrawl scraping."""

from typing import Any

import httpx

from app.core.config import get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)

SERPAPI_BASE_URL = "https://serpapi.com/search"
FIRECRAWL_BASE_URL = "https://api.firecrawl.dev/v1"

SEARCH_TIMEOUT = 15
# Scraped pages are fed straight back into the conversation
MAX_PAGE_CHARS = 12_000


async def search_web(query: str, num_results: int = 8) -> list[dict[str, Any]]:
    """
    Search Google via SerpAPI.

    Args:
        query: Search query string
        num_results: Number of organic results to return (capped at 20)

    Returns:
        List of result dicts with url, title, snippet, date

    Raises:
        ValueError: If SERPAPI_API_KEY not configured or query is blank
        httpx.HTTPStatusError: If the API request fails
    """
    settings = get_settings()

    if not settings.SERPAPI_API_KEY:
        raise ValueError("SERPAPI_API_KEY not configured")
    if not query or not query.strip():
        raise ValueError("query is required")

    num_results = max(1, min(num_results, 20))

    async with httpx.AsyncClient(timeout=SEARCH_TIMEOUT) as client:
        response = await client.get(
            SERPAPI_BASE_URL,
            params={
                "api_key": settings.SERPAPI_API_KEY,
                "q": query,
                "num": num_results,
                "engine": "google",
            },
        )
        response.raise_for_status()

    organic = response.json().get("organic_results", [])
    results = [
        {
            "url": item.get("link", ""),
            "title": item.get("title", ""),
            "snippet": item.get("snippet", ""),
            "date": item.get("date"),
        }
        for item in organic[:num_results]
    ]

    logger.info(f"Web search '{query[:50]}': {len(results)} results")
    return results


async def scrape_page(url: str, max_chars: int = MAX_PAGE_CHARS) -> dict[str, Any]:
    """
    Fetch a page as markdown using Firecrawl.

    Args:
        url: The page URL
        max_chars: Truncate markdown beyond this many characters

    Returns:
        Dict with url, title, markdown, truncated

    Raises:
        ValueError: If FIRECRAWL_API_KEY not configured
        httpx.HTTPStatusError: If the API request fails
    """
    settings = get_settings()

    if not settings.FIRECRAWL_API_KEY:
        raise ValueError("FIRECRAWL_API_KEY not configured")

    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"

    async with httpx.AsyncClient(timeout=settings.FIRECRAWL_TIMEOUT) as client:
        response = await client.post(
            f"{FIRECRAWL_BASE_URL}/scrape",
            headers={"Authorization": f"Bearer {settings.FIRECRAWL_API_KEY}"},
            json={
                "url": url,
                "formats": ["markdown"],
                "onlyMainContent": True,
            },
        )
        response.raise_for_status()

    data = response.json().get("data") or {}
    markdown = data.get("markdown") or ""
    metadata = data.get("metadata") or {}

    logger.info(f"Scraped {url}: {len(markdown)} chars")

    return {
        "url": url,
        "title": metadata.get("title"),
        "markdown": markdown[:max_chars],
        "truncated": len(markdown) > max_chars,
    }
