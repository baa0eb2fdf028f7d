"""Explicit runtime context wiring manager, discovery, and router together."""

from __future__ import annotations

import logging
from types import TracebackType

import httpx

from mcpbridge.config import BridgeSettings
from mcpbridge.mcp.discovery import ServerDiscovery
from mcpbridge.mcp.manager import ConnectionManager
from mcpbridge.routing.llm import LLMClient
from mcpbridge.routing.router import QueryRouter

logger = logging.getLogger(__name__)


class BridgeRuntime:
    """Owns one engine instance with an explicit start/stop lifecycle."""

    def __init__(
        self,
        settings: BridgeSettings,
        *,
        manager: ConnectionManager | None = None,
        llm_transport: httpx.AsyncBaseTransport | None = None,
        periodic_discovery: bool = True,
    ) -> None:
        self.settings = settings
        self.manager = manager or ConnectionManager(settings)
        self.discovery = ServerDiscovery(
            self.manager, interval_seconds=settings.discovery_interval_seconds
        )
        llm_client = (
            LLMClient(settings.llm, transport=llm_transport) if settings.llm.is_configured else None
        )
        self.router = QueryRouter(
            self.discovery,
            llm_client=llm_client,
            confidence_threshold=settings.confidence_threshold,
        )
        self._periodic_discovery = periodic_discovery
        self.started = False

    async def start(self) -> None:
        if self.started:
            return
        await self.manager.initialize()
        catalog = await self.discovery.discover_all()
        self.router.update_catalog(catalog)
        if self._periodic_discovery:
            self.discovery.start()
        self.started = True
        logger.info(
            "Runtime started: %d of %d server(s) connected",
            len(self.manager.get_connected_servers()),
            len(self.settings.enabled_servers()),
        )

    async def stop(self) -> None:
        if not self.started:
            return
        await self.discovery.stop()
        await self.manager.disconnect()
        self.started = False
        logger.info("Runtime stopped")

    async def __aenter__(self) -> BridgeRuntime:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.stop()
