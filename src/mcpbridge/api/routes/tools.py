"""Tool invocation, search, and query routing routes."""

from __future__ import annotations

from typing import cast

from fastapi import APIRouter, Depends

from mcpbridge.api.deps import get_runtime
from mcpbridge.api.routes.common import http_error
from mcpbridge.api.schemas.tools import (
    AskResponse,
    CallToolRequest,
    QueryRequest,
    RouteResponse,
    SearchRequest,
    SearchResponse,
    ToolResultResponse,
)
from mcpbridge.mcp.errors import BridgeError
from mcpbridge.mcp.jsonrpc import JSONObject
from mcpbridge.routing.router import CLARIFICATION_MESSAGE
from mcpbridge.runtime import BridgeRuntime

router = APIRouter(prefix="/api/v1", tags=["tools"])


@router.post("/tools/call", response_model=ToolResultResponse)
async def call_tool(
    request: CallToolRequest,
    runtime: BridgeRuntime = Depends(get_runtime),
) -> ToolResultResponse:
    try:
        result = await runtime.manager.call_tool(
            request.server_id,
            request.tool_name,
            cast(JSONObject, request.arguments),
            timeout_seconds=request.timeout_seconds,
        )
    except BridgeError as exc:
        raise http_error(exc) from exc
    return ToolResultResponse(
        server_id=request.server_id,
        tool_name=request.tool_name,
        content=result.content,
        is_error=result.is_error,
    )


@router.post("/search", response_model=SearchResponse)
async def search(
    request: SearchRequest,
    runtime: BridgeRuntime = Depends(get_runtime),
) -> SearchResponse:
    items = await runtime.manager.search_across_servers(request.query)
    return SearchResponse(query=request.query, items=items)


@router.post("/route", response_model=RouteResponse)
async def route_query(
    request: QueryRequest,
    runtime: BridgeRuntime = Depends(get_runtime),
) -> RouteResponse:
    plan = await runtime.router.analyze_query(request.query)
    return RouteResponse(plan=plan, needs_clarification=runtime.router.needs_clarification(plan))


@router.post("/ask", response_model=AskResponse)
async def ask(
    request: QueryRequest,
    runtime: BridgeRuntime = Depends(get_runtime),
) -> AskResponse:
    plan = await runtime.router.analyze_query(request.query)
    if runtime.router.needs_clarification(plan):
        return AskResponse(plan=plan, needs_clarification=True, message=CLARIFICATION_MESSAGE)
    try:
        result = await runtime.router.execute(plan, runtime.manager)
    except BridgeError as exc:
        raise http_error(exc) from exc
    return AskResponse(
        plan=plan,
        needs_clarification=False,
        result=ToolResultResponse(
            server_id=plan.selected_server,
            tool_name=plan.selected_tool,
            content=result.content,
            is_error=result.is_error,
        ),
    )
