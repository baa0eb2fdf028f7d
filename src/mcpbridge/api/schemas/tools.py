"""Tool invocation, search, and routing API schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from mcpbridge.routing.plan import RoutingPlan


class CallToolRequest(BaseModel):
    """Invoke one tool on one server."""

    server_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: float | None = Field(default=None, gt=0)


class ToolResultResponse(BaseModel):
    server_id: str
    tool_name: str
    content: list[dict[str, Any]]
    is_error: bool


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)


class SearchResponse(BaseModel):
    query: str
    items: list[dict[str, Any]]


class QueryRequest(BaseModel):
    """Free-form user request."""

    query: str = Field(min_length=1)


class RouteResponse(BaseModel):
    plan: RoutingPlan
    needs_clarification: bool


class AskResponse(BaseModel):
    """Routing outcome plus the executed result, or a clarification message."""

    plan: RoutingPlan
    needs_clarification: bool
    message: str | None = None
    result: ToolResultResponse | None = None
