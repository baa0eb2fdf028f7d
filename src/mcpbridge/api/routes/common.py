"""Shared route helpers."""

from __future__ import annotations

from fastapi import HTTPException, status

from mcpbridge.mcp.errors import (
    BridgeError,
    RequestTimeoutError,
    RoutingValidationError,
    ServerNotConnectedError,
    ToolNotFoundError,
    ToolServerConnectionError,
)


def http_error(exc: BridgeError) -> HTTPException:
    """Map an engine error to the HTTP status callers see."""
    if isinstance(exc, ServerNotConnectedError | ToolNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ToolServerConnectionError | RequestTimeoutError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, RoutingValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(
        status_code=code,
        detail={"message": str(exc), "category": exc.category, "server_id": exc.server_id},
    )
