"""One logical connection to a configured tool server."""

from __future__ import annotations

import logging
from collections.abc import Callable

from mcpbridge.config import ServerConfig, TransportKind
from mcpbridge.mcp.errors import BridgeError, ToolNotFoundError, ToolServerConnectionError
from mcpbridge.mcp.jsonrpc import JSONObject, PendingRequests, RequestIdSequence
from mcpbridge.mcp.models import ToolDefinition, ToolResult
from mcpbridge.mcp.network import EventStreamTransport, WebSocketTransport
from mcpbridge.mcp.transport import StdioTransport, Transport

logger = logging.getLogger(__name__)

type TransportFactory = Callable[[str, ServerConfig, PendingRequests], Transport]


def create_transport(server_id: str, config: ServerConfig, pending: PendingRequests) -> Transport:
    """Select the transport variant for a server definition."""
    if config.transport is TransportKind.STDIO:
        if not config.command:
            msg = f"Server {server_id} has no command"
            raise ToolServerConnectionError(msg, server_id=server_id)
        return StdioTransport(
            server_id,
            pending,
            command=config.command,
            args=config.args,
            env=config.env,
            working_directory=config.working_directory,
            timeout_seconds=config.timeout_seconds,
        )
    if not config.url:
        msg = f"Server {server_id} has no url"
        raise ToolServerConnectionError(msg, server_id=server_id)
    if config.transport is TransportKind.WEBSOCKET:
        return WebSocketTransport(
            server_id, pending, url=config.url, timeout_seconds=config.timeout_seconds
        )
    if config.transport is TransportKind.SSE:
        return EventStreamTransport(
            server_id, pending, url=config.url, timeout_seconds=config.timeout_seconds
        )
    msg = f"Unsupported transport: {config.transport}"
    raise ToolServerConnectionError(msg, server_id=server_id)


class Connection:
    """Transport, pending-request table, and cached tool names for one server."""

    def __init__(
        self,
        server_id: str,
        config: ServerConfig,
        *,
        ids: RequestIdSequence | None = None,
        transport_factory: TransportFactory = create_transport,
    ) -> None:
        self.server_id = server_id
        self.config = config
        self.pending = PendingRequests(server_id, ids)
        self.transport = transport_factory(server_id, config, self.pending)
        self._tool_names: frozenset[str] | None = None

    @property
    def connected(self) -> bool:
        return self.transport.connected

    @property
    def server_info(self) -> JSONObject | None:
        return self.transport.server_info

    async def connect(self) -> None:
        """Handshake, then load the tool names used to validate calls."""
        await self.transport.connect()
        try:
            await self.list_tools()
        except ToolServerConnectionError:
            await self.transport.disconnect()
            raise
        except BridgeError as exc:
            logger.warning("Could not list tools for %s after connect: %s", self.server_id, exc)
            self._tool_names = frozenset()

    async def disconnect(self) -> None:
        await self.transport.disconnect()
        self._tool_names = None

    async def list_tools(self) -> list[ToolDefinition]:
        tools = await self.transport.list_tools()
        self._tool_names = frozenset(tool.name for tool in tools)
        return tools

    async def call_tool(
        self,
        name: str,
        arguments: JSONObject | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> ToolResult:
        """Invoke a tool; unknown names fail locally without touching the wire."""
        if name not in (self._tool_names or frozenset()):
            raise ToolNotFoundError(name, server_id=self.server_id)
        logger.debug("Calling %s on %s", name, self.server_id)
        return await self.transport.call_tool(name, arguments, timeout_seconds=timeout_seconds)

    async def list_resources(self) -> list[JSONObject]:
        return await self.transport.list_resources()

    async def read_resource(self, uri: str) -> list[JSONObject]:
        return await self.transport.read_resource(uri)
