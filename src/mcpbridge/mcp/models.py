"""Tool, result, and catalog data types shared by the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import cast

from mcpbridge.mcp.jsonrpc import JSONObject, JSONValue


class CatalogStatus(StrEnum):
    """Discovery outcome for one server."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ToolDefinition:
    """One tool exposed by a server."""

    name: str
    description: str
    input_schema: JSONObject
    server_id: str
    examples: tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: JSONObject, *, server_id: str) -> ToolDefinition:
        name = payload.get("name")
        if not isinstance(name, str) or not name:
            msg = "Tool payload is missing a name"
            raise ValueError(msg)
        description = payload.get("description")
        if not isinstance(description, str) or not description:
            description = "No description available"
        schema = payload.get("inputSchema", payload.get("parameters"))
        if not isinstance(schema, dict):
            schema = {"type": "object", "properties": {}}
        return cls(
            name=name,
            description=description,
            input_schema=cast(JSONObject, schema),
            server_id=server_id,
        )


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Normalized `tools/call` result."""

    content: list[JSONObject]
    is_error: bool = False
    raw: JSONValue = None

    @classmethod
    def from_payload(cls, payload: JSONValue) -> ToolResult:
        if isinstance(payload, dict):
            content = payload.get("content")
            is_error = payload.get("isError") is True
            if isinstance(content, list):
                items: list[JSONObject] = [
                    cast(JSONObject, item)
                    if isinstance(item, dict)
                    else {"type": "text", "text": str(item)}
                    for item in content
                ]
                return cls(content=items, is_error=is_error, raw=payload)
            if isinstance(content, str):
                text_item: JSONObject = {"type": "text", "text": content}
                return cls(content=[text_item], is_error=is_error, raw=payload)
            return cls(content=[cast(JSONObject, payload)], is_error=is_error, raw=payload)
        if payload is None:
            return cls(content=[], raw=payload)
        return cls(content=[{"type": "text", "text": str(payload)}], raw=payload)

    def text(self) -> str:
        """Concatenate text content items."""
        parts = [item["text"] for item in self.content if isinstance(item.get("text"), str)]
        return "\n".join(cast(list[str], parts))


@dataclass(frozen=True, slots=True)
class ServerCatalogEntry:
    """Capabilities of one server at discovery time."""

    server_id: str
    name: str
    description: str
    tools: tuple[ToolDefinition, ...]
    resources: tuple[JSONObject, ...]
    status: CatalogStatus
    last_updated: datetime

    def find_tool(self, tool_name: str) -> ToolDefinition | None:
        return next((tool for tool in self.tools if tool.name == tool_name), None)


@dataclass(frozen=True, slots=True)
class ServerCatalog:
    """Immutable catalog snapshot; replaced whole on every discovery pass."""

    entries: tuple[ServerCatalogEntry, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, server_id: str) -> ServerCatalogEntry | None:
        return next((entry for entry in self.entries if entry.server_id == server_id), None)

    def connected(self) -> list[ServerCatalogEntry]:
        return [entry for entry in self.entries if entry.status is CatalogStatus.CONNECTED]

    def has_tool(self, server_id: str, tool_name: str) -> bool:
        entry = self.get(server_id)
        return entry is not None and entry.find_tool(tool_name) is not None

    def is_stale(self, max_age: timedelta, *, now: datetime | None = None) -> bool:
        if not self.entries:
            return True
        current = now or datetime.now(UTC)
        return any(entry.last_updated < current - max_age for entry in self.entries)
