"""Server health and catalog API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from mcpbridge.mcp.errors import ErrorCategory
from mcpbridge.mcp.models import CatalogStatus


class ConnectionHealthResponse(BaseModel):
    """Health record for one server."""

    server_id: str
    connected: bool
    last_error: str | None
    last_error_category: ErrorCategory | None
    retry_count: int
    last_retry_at: datetime | None
    last_checked_at: datetime | None
    total_failures: int


class ServersResponse(BaseModel):
    """Collection of server health records."""

    items: list[ConnectionHealthResponse]


class HealthEventResponse(BaseModel):
    server_id: str
    connected: bool
    reason: str
    timestamp: datetime
    error_category: ErrorCategory | None


class HealthEventsResponse(BaseModel):
    items: list[HealthEventResponse]


class ToolResponse(BaseModel):
    """One cataloged tool."""

    name: str
    description: str
    input_schema: dict[str, Any]
    examples: list[str]


class CatalogEntryResponse(BaseModel):
    server_id: str
    name: str
    description: str
    status: CatalogStatus
    tools: list[ToolResponse]
    resources: list[dict[str, Any]]
    last_updated: datetime


class CatalogResponse(BaseModel):
    """Catalog snapshot."""

    created_at: datetime
    items: list[CatalogEntryResponse]
