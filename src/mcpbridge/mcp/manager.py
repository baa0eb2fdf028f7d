"""Connection manager: named connections, health bookkeeping, cross-server fan-out."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from types import TracebackType

from mcpbridge.config import BridgeSettings, ServerConfig
from mcpbridge.mcp.connection import Connection
from mcpbridge.mcp.errors import BridgeError, ServerNotConnectedError
from mcpbridge.mcp.health import ConnectionHealth, HealthMonitor, RetryPolicy
from mcpbridge.mcp.jsonrpc import JSONObject, RequestIdSequence
from mcpbridge.mcp.models import ToolDefinition, ToolResult

logger = logging.getLogger(__name__)

type ConnectionFactory = Callable[[str, ServerConfig, RequestIdSequence], Connection]


def _default_connection_factory(
    server_id: str,
    config: ServerConfig,
    ids: RequestIdSequence,
) -> Connection:
    return Connection(server_id, config, ids=ids)


def is_search_tool(name: str) -> bool:
    """Whether a tool name looks like a free-text search entry point."""
    lowered = name.lower()
    return lowered == "search" or lowered.endswith("search") or "search_" in lowered


class ConnectionManager:
    """Own one Connection per enabled server and keep their health current."""

    def __init__(
        self,
        settings: BridgeSettings,
        *,
        health: HealthMonitor | None = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        self.settings = settings
        self.health = health or HealthMonitor(RetryPolicy.from_settings(settings.retry))
        self._connection_factory = connection_factory or _default_connection_factory
        self._connections: dict[str, Connection] = {}
        self._ids: dict[str, RequestIdSequence] = {}

    async def __aenter__(self) -> ConnectionManager:
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.disconnect()

    async def initialize(self) -> dict[str, ConnectionHealth]:
        """Connect every enabled server concurrently; failures stay per-server."""
        if self._connections:
            await self.disconnect()
        servers = self.settings.enabled_servers()
        logger.info("Initializing %d server connection(s)", len(servers))
        outcomes = await asyncio.gather(
            *(self._connect_server(server_id, config) for server_id, config in servers.items()),
            return_exceptions=True,
        )
        for server_id, outcome in zip(servers, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("Failed to connect to %s: %s", server_id, outcome)
        return self.health.snapshot()

    async def disconnect(self) -> None:
        connections, self._connections = self._connections, {}
        outcomes = await asyncio.gather(
            *(connection.disconnect() for connection in connections.values()),
            return_exceptions=True,
        )
        for server_id, outcome in zip(connections, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning("Error disconnecting %s: %s", server_id, outcome)
            self.health.mark_disconnected(server_id)
        if connections:
            logger.info("Disconnected %d server(s)", len(connections))

    async def update_settings(self, settings: BridgeSettings) -> dict[str, ConnectionHealth]:
        """Replace the server set and rebuild every connection."""
        await self.disconnect()
        for server_id in self.settings.servers.keys() - settings.servers.keys():
            self.health.forget(server_id)
        self.settings = settings
        self.health.policy = RetryPolicy.from_settings(settings.retry)
        return await self.initialize()

    async def reconnect_server(self, server_id: str) -> ConnectionHealth:
        """Tear down one server's connection and run its retry sequence again."""
        config = self.settings.servers.get(server_id)
        if config is None or not config.enabled:
            raise ServerNotConnectedError(server_id)
        existing = self._connections.pop(server_id, None)
        if existing is not None:
            await existing.disconnect()
            self.health.mark_disconnected(server_id, reason="reconnecting")
        try:
            await self._connect_server(server_id, config)
        except BridgeError as exc:
            logger.error("Reconnect to %s failed: %s", server_id, exc)
        record = self.health.get(server_id)
        assert record is not None
        return record

    def get_connection(self, server_id: str) -> Connection:
        connection = self._connections.get(server_id)
        if connection is None:
            raise ServerNotConnectedError(server_id)
        return connection

    def get_connected_servers(self) -> list[str]:
        return [
            server_id
            for server_id, connection in self._connections.items()
            if connection.connected
        ]

    def is_server_connected(self, server_id: str) -> bool:
        connection = self._connections.get(server_id)
        return connection is not None and connection.connected

    def health_snapshot(self) -> dict[str, ConnectionHealth]:
        return self.health.snapshot()

    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: JSONObject | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> ToolResult:
        return await self._forward(
            server_id,
            lambda connection: connection.call_tool(
                tool_name, arguments, timeout_seconds=timeout_seconds
            ),
        )

    async def list_tools(self, server_id: str) -> list[ToolDefinition]:
        return await self._forward(server_id, lambda connection: connection.list_tools())

    async def list_resources(self, server_id: str) -> list[JSONObject]:
        return await self._forward(server_id, lambda connection: connection.list_resources())

    async def read_resource(self, server_id: str, uri: str) -> list[JSONObject]:
        return await self._forward(server_id, lambda connection: connection.read_resource(uri))

    async def health_check(self) -> dict[str, ConnectionHealth]:
        """Probe every connection with `resources/list`; never raises."""
        connections = dict(self._connections)
        await asyncio.gather(
            *(self._probe(server_id, connection) for server_id, connection in connections.items()),
            return_exceptions=True,
        )
        return self.health.snapshot()

    async def search_across_servers(self, query: str) -> list[JSONObject]:
        """Run `query` on every connected server exposing a search tool.

        Each result item is tagged with its `source` server id. A failing
        server is logged and skipped.
        """
        server_ids = self.get_connected_servers()
        outcomes = await asyncio.gather(
            *(self._search_server(server_id, query) for server_id in server_ids),
            return_exceptions=True,
        )
        results: list[JSONObject] = []
        for server_id, outcome in zip(server_ids, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning("Search failed for server %s: %s", server_id, outcome)
                continue
            results.extend(outcome)
        return results

    async def _connect_server(self, server_id: str, config: ServerConfig) -> Connection:
        ids = self._ids.setdefault(server_id, RequestIdSequence())

        async def attempt() -> Connection:
            connection = self._connection_factory(server_id, config, ids)
            await connection.connect()
            return connection

        connection = await self.health.connect_with_retry(
            server_id, attempt, attempts=config.retry_attempts
        )
        self._connections[server_id] = connection
        return connection

    async def _forward[T](
        self,
        server_id: str,
        operation: Callable[[Connection], Awaitable[T]],
    ) -> T:
        connection = self.get_connection(server_id)
        try:
            result = await operation(connection)
        except BridgeError as exc:
            self.health.record_call(server_id, error=exc)
            if not connection.connected:
                self.health.mark_disconnected(server_id, reason=str(exc))
            raise
        self.health.record_call(server_id)
        return result

    async def _probe(self, server_id: str, connection: Connection) -> None:
        try:
            await connection.list_resources()
        except BridgeError as exc:
            logger.warning("Health probe failed for %s: %s", server_id, exc)
            self.health.record_probe(server_id, error=exc)
            if not connection.connected:
                self.health.mark_disconnected(server_id, reason=str(exc))
            return
        self.health.record_probe(server_id)

    async def _search_server(self, server_id: str, query: str) -> list[JSONObject]:
        tools = await self.list_tools(server_id)
        tool = next((tool.name for tool in tools if is_search_tool(tool.name)), None)
        if tool is None:
            return []
        result = await self.call_tool(server_id, tool, {"query": query})
        return [{**item, "source": server_id} for item in result.content]
