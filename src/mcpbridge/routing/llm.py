"""LLM provider client and the routing prompt."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from mcpbridge.config import LLMSettings
from mcpbridge.mcp.errors import LLMProviderError
from mcpbridge.mcp.models import ServerCatalog

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com"
ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MODELS = {
    "openai": "gpt-4",
    "anthropic": "claude-3-sonnet-20240229",
    "local": "llama3",
}


def describe_capabilities(catalog: ServerCatalog) -> str:
    """Render connected servers and their tools for the routing prompt."""
    sections: list[str] = []
    for entry in catalog.connected():
        lines = [
            f"Server: {entry.name} ({entry.server_id})",
            f"Description: {entry.description}",
            "Tools:",
        ]
        for tool in entry.tools:
            lines.append(f"  - {tool.name}: {tool.description}")
            if tool.examples:
                lines.append(f"    Examples: {', '.join(tool.examples)}")
        sections.append("\n".join(lines))
    return "\n\n".join(sections)


def build_routing_prompt(query: str, catalog: ServerCatalog) -> str:
    return f"""You are an intelligent query router for MCP (Model Context Protocol) servers.
Your job is to analyze user queries and determine which MCP server and tool should
handle the request.

Available MCP Capabilities:
{describe_capabilities(catalog)}

User Query: "{query}"

Analyze this query and respond with a JSON object containing:
{{
  "intent": "Brief description of what the user wants to do",
  "selectedServer": "The server ID that should handle this request",
  "selectedTool": "The specific tool name to use",
  "parameters": "Object with parameters to pass to the tool",
  "reasoning": "Explanation of why you chose this server/tool",
  "confidence": "Number between 0-1 indicating confidence in this routing decision",
  "fallbackOptions": "Optional list of alternative plans with the same fields"
}}

Important guidelines:
- Only use servers and tools that are listed in the available capabilities
- Extract specific parameters from the query (file paths, search terms, etc.)
- If the query is ambiguous, choose the most likely interpretation
- If no good match exists, set confidence to 0 and explain in reasoning
- For file operations, prefer filesystem servers
- For search operations, prefer search-capable servers

Respond with only valid JSON."""


class LLMClient:
    """Send one prompt to the configured provider and return its text reply."""

    def __init__(
        self,
        settings: LLMSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport

    @property
    def provider(self) -> str:
        return self.settings.provider

    @property
    def model(self) -> str:
        return self.settings.model or DEFAULT_MODELS.get(self.settings.provider, "")

    async def complete(self, prompt: str) -> str:
        provider = self.settings.provider
        if provider in ("openai", "local"):
            return await self._complete_openai_compatible(prompt)
        if provider == "anthropic":
            return await self._complete_anthropic(prompt)
        msg = f"Unsupported LLM provider: {provider}"
        raise LLMProviderError(msg)

    async def _complete_openai_compatible(self, prompt: str) -> str:
        provider = self.settings.provider
        if provider == "openai" and not self.settings.api_key:
            msg = "OpenAI API key not configured"
            raise LLMProviderError(msg)
        if provider == "local" and not self.settings.base_url:
            msg = "Local LLM base_url not configured"
            raise LLMProviderError(msg)
        base_url = self.settings.base_url or OPENAI_BASE_URL
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        data = await self._post(
            f"{base_url.rstrip('/')}/v1/chat/completions",
            headers=headers,
            body={
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": self.settings.max_tokens,
                "temperature": self.settings.temperature,
            },
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            msg = f"Unexpected {provider} response shape"
            raise LLMProviderError(msg) from exc
        return content if isinstance(content, str) else ""

    async def _complete_anthropic(self, prompt: str) -> str:
        if not self.settings.api_key:
            msg = "Anthropic API key not configured"
            raise LLMProviderError(msg)
        base_url = self.settings.base_url or ANTHROPIC_BASE_URL
        data = await self._post(
            f"{base_url.rstrip('/')}/v1/messages",
            headers={
                "x-api-key": self.settings.api_key,
                "Content-Type": "application/json",
                "anthropic-version": ANTHROPIC_VERSION,
            },
            body={
                "model": self.model,
                "max_tokens": self.settings.max_tokens,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": self.settings.temperature,
            },
        )
        try:
            content = data["content"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            msg = "Unexpected anthropic response shape"
            raise LLMProviderError(msg) from exc
        return content if isinstance(content, str) else ""

    async def _post(self, url: str, *, headers: dict[str, str], body: dict[str, Any]) -> Any:
        logger.debug("POST %s (model=%s)", url, self.model)
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(url, headers=headers, json=body)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            msg = f"{self.provider} request timed out"
            raise LLMProviderError(msg) from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            msg = f"{self.provider} API error: {status_code} {exc.response.reason_phrase}"
            raise LLMProviderError(msg, status_code=status_code) from exc
        except httpx.HTTPError as exc:
            msg = f"{self.provider} request failed: {exc}"
            raise LLMProviderError(msg) from exc
        try:
            return response.json()
        except ValueError as exc:
            msg = f"Invalid JSON from {self.provider}"
            raise LLMProviderError(msg) from exc
