"""Typed error hierarchy for the connection and routing engine."""

from __future__ import annotations

from typing import Literal

type ErrorCategory = Literal[
    "connection",
    "protocol",
    "tool_not_found",
    "timeout",
    "rpc_error",
    "not_connected",
    "routing_validation",
    "llm_provider",
    "config",
]


class BridgeError(RuntimeError):
    """Base error with explicit category."""

    category: ErrorCategory = "connection"

    def __init__(self, message: str, *, server_id: str | None = None) -> None:
        super().__init__(message)
        self.server_id = server_id


class ToolServerConnectionError(BridgeError):
    """Spawn/socket failure, handshake failure, or a closed connection."""

    category: ErrorCategory = "connection"


# Name used across the engine; kept separate from the builtin.
ConnectionError = ToolServerConnectionError  # noqa: A001


class ProtocolError(BridgeError):
    """Unparseable frame or request id collision."""

    category: ErrorCategory = "protocol"


class ToolNotFoundError(BridgeError):
    """Tool name not exposed by the target server."""

    category: ErrorCategory = "tool_not_found"

    def __init__(self, tool_name: str, *, server_id: str | None = None) -> None:
        where = f" on server {server_id}" if server_id else ""
        super().__init__(f"Tool {tool_name} not found{where}", server_id=server_id)
        self.tool_name = tool_name


class RequestTimeoutError(BridgeError):
    """No correlated reply arrived before the deadline."""

    category: ErrorCategory = "timeout"

    def __init__(
        self,
        method: str,
        request_id: int,
        timeout_seconds: float,
        *,
        server_id: str | None = None,
    ) -> None:
        super().__init__(
            f"Request {method} (id={request_id}) timed out after {timeout_seconds:g}s",
            server_id=server_id,
        )
        self.method = method
        self.request_id = request_id
        self.timeout_seconds = timeout_seconds


class ToolServerError(BridgeError):
    """JSON-RPC error reply from a tool server."""

    category: ErrorCategory = "rpc_error"

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        server_id: str | None = None,
    ) -> None:
        super().__init__(f"MCP error: {message}", server_id=server_id)
        self.code = code
        self.rpc_message = message


class ServerNotConnectedError(BridgeError):
    """No live connection for the requested server id."""

    category: ErrorCategory = "not_connected"

    def __init__(self, server_id: str) -> None:
        super().__init__(f"No connection to server: {server_id}", server_id=server_id)


class RoutingValidationError(BridgeError):
    """Routing plan references a server or tool absent from the catalog."""

    category: ErrorCategory = "routing_validation"


class LLMProviderError(BridgeError):
    """Transport, auth, or parse failure talking to the LLM provider."""

    category: ErrorCategory = "llm_provider"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConfigError(BridgeError):
    """Invalid or unreadable configuration."""

    category: ErrorCategory = "config"
