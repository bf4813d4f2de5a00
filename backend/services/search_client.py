"""
Web search tool client (Perplexity Sonar deployment on AI Core).

The search deployment is reached with the same bearer token and HTTP client
as the chat deployment. Answers come back as plain text with numbered
sources appended, ready to be handed to the model as a tool result.
"""

import logging
from typing import Any, Dict, List

import httpx

from errors import ExternalServiceError, handle_async_tool_errors
from logging_config import log_tool
from services.provider_client import ProviderClient

logger = logging.getLogger(__name__)

SEARCH_MODEL = "sonar"


def format_search_answer(answer: str, citations: List[str]) -> str:
    """Append a numbered source list to the search answer."""
    if not citations:
        return answer
    sources = "\n".join(f"[{i}] {url}" for i, url in enumerate(citations, start=1))
    return f"{answer}\n\nSources:\n{sources}"


class SearchClient:
    """Runs web_search invocations against the configured search deployment."""

    def __init__(self, provider: ProviderClient):
        self.provider = provider

    @property
    def enabled(self) -> bool:
        return self.provider.search_enabled

    async def search(self, query: str) -> str:
        """Answer a query via the search deployment.

        Raises:
            ExternalServiceError: not configured, unreachable, or non-2xx
        """
        cfg = self.provider.config
        if not cfg.search_deployment_id:
            raise ExternalServiceError("AICORE_PERPLEXITY_DEPLOYMENT_ID not configured", service="search")

        url = self.provider.url(f"/v2/inference/deployments/{cfg.search_deployment_id}/chat/completions")
        headers = await self.provider.auth_headers()
        body = {
            "model": SEARCH_MODEL,
            "messages": [{"role": "user", "content": query}],
            "max_tokens": cfg.search_max_tokens,
        }

        try:
            response = await self.provider.http.post(url, json=body, headers=headers, timeout=cfg.search_timeout_s)
        except httpx.TimeoutException:
            raise ExternalServiceError(
                "Search service timed out",
                details="The search request took too long. Try again.",
                service="search",
            )
        except httpx.RequestError:
            raise ExternalServiceError(
                "Search service unavailable",
                details="Could not connect to the search service",
                service="search",
            )

        if response.status_code >= 400:
            logger.error(f"Perplexity error response: {response.text[:500]}")
            raise ExternalServiceError(
                f"Perplexity API error: {response.status_code}",
                service="search",
                status_code=response.status_code,
            )

        data = response.json()
        choices = data.get("choices") or [{}]
        answer = (choices[0].get("message") or {}).get("content") or ""
        return format_search_answer(answer, data.get("citations") or [])


@handle_async_tool_errors("web_search")
async def execute_web_search(client: SearchClient, query: str) -> Dict[str, Any]:
    """
    Execute one web_search invocation.

    Args:
        client: SearchClient bound to the search deployment
        query: Search query from the tool invocation arguments

    Returns:
        {"success": True, "content": answer} or a standard error response
    """
    if not query or not str(query).strip():
        raise ExternalServiceError("Empty search query", service="search")

    log_tool(logger, "web_search", "start", query=f'"{query}"')
    answer = await client.search(str(query))
    log_tool(logger, "web_search", "end", chars=len(answer))
    return {"success": True, "query": query, "content": answer}
