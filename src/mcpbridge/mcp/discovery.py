"""Server discovery: build catalog snapshots of connected servers' capabilities."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta

from mcpbridge.mcp.errors import BridgeError
from mcpbridge.mcp.jsonrpc import JSONObject
from mcpbridge.mcp.manager import ConnectionManager
from mcpbridge.mcp.models import CatalogStatus, ServerCatalog, ServerCatalogEntry, ToolDefinition

logger = logging.getLogger(__name__)

DEFAULT_DISCOVERY_INTERVAL_SECONDS = 300.0

SERVER_NAMES: dict[str, str] = {
    "filesystem": "File System",
    "git": "Git Repository",
    "web-search": "Web Search",
    "brave-search": "Brave Search",
    "memory": "Memory & Knowledge",
    "sequential-thinking": "Sequential Thinking",
}

SERVER_DESCRIPTION_PREFIXES: dict[str, str] = {
    "filesystem": "File system operations including",
    "git": "Git repository operations including",
}

TOOL_EXAMPLES: dict[str, tuple[str, ...]] = {
    "list_directory": ("list files", "show directory contents", "ls"),
    "read_file": ("read package.json", "show file contents", "cat readme.md"),
    "write_file": ('write hello.txt with "Hello World"', "create new file", "save content to file"),
    "search_files": ("find .ts files", 'search for "TODO"', "locate specific files"),
    "create_directory": ("create folder", "make directory", "mkdir new-folder"),
    "move_file": ("move file to folder", "rename file", "relocate document"),
    "get_file_info": ("file info", "file details", "check file size"),
    "directory_tree": ("show file tree", "directory structure", "folder hierarchy"),
    "git_status": ("git status", "check git state", "show changes"),
    "git_log": ("git history", "commit log", "recent commits"),
    "git_diff": ("show differences", "git diff", "compare changes"),
    "web_search": ("search the web", "find information online", "google search"),
    "search": ("search for information", "find content", "lookup"),
}

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9\s]")

type Clock = Callable[[], datetime]


def server_display_name(server_id: str) -> str:
    known = SERVER_NAMES.get(server_id)
    if known is not None:
        return known
    return " ".join(word[:1].upper() + word[1:] for word in server_id.split("-"))


def _summarize_names(names: list[str]) -> str:
    summary = ", ".join(names[:3])
    if len(names) > 3:
        summary += f" and {len(names) - 3} more"
    return summary


def server_description(server_id: str, tools: list[ToolDefinition]) -> str:
    if not tools:
        return "MCP server with no available tools"
    names = [tool.name for tool in tools]
    prefix = SERVER_DESCRIPTION_PREFIXES.get(server_id)
    if prefix is not None:
        return f"{prefix} {_summarize_names(names)}"
    return f"MCP server providing {len(tools)} tools: {_summarize_names(names)}"


def tool_examples(tool_name: str, description: str) -> tuple[str, ...]:
    """Example user phrases for a tool; a generic trio for unknown tools."""
    known = TOOL_EXAMPLES.get(tool_name)
    if known is not None:
        return known
    condensed = _NON_ALPHANUMERIC.sub("", description.lower()).strip()[:20]
    candidates = (f"use {tool_name}", f"{tool_name} operation", condensed)
    return tuple(example for example in candidates if example)


class ServerDiscovery:
    """Catalog every connected server's tools and resources."""

    def __init__(
        self,
        manager: ConnectionManager,
        *,
        interval_seconds: float = DEFAULT_DISCOVERY_INTERVAL_SECONDS,
        clock: Clock | None = None,
    ) -> None:
        self.manager = manager
        self.interval = timedelta(seconds=interval_seconds)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._catalog = ServerCatalog(entries=(), created_at=self._clock())
        self._task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    @property
    def catalog(self) -> ServerCatalog:
        return self._catalog

    async def discover_all(self) -> ServerCatalog:
        """Run one discovery pass and atomically replace the catalog."""
        async with self._lock:
            connected = self.manager.get_connected_servers()
            logger.info("Starting discovery of %d connected server(s)", len(connected))
            outcomes = await asyncio.gather(
                *(self.discover_server(server_id) for server_id in connected),
                return_exceptions=True,
            )
            entries: list[ServerCatalogEntry] = []
            for server_id, outcome in zip(connected, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    logger.error("Failed to discover server %s: %s", server_id, outcome)
                    entries.append(self._error_entry(server_id))
                else:
                    entries.append(outcome)
            for server_id in self.manager.settings.enabled_servers():
                if server_id not in connected:
                    entries.append(self._disconnected_entry(server_id))
            self._catalog = ServerCatalog(entries=tuple(entries), created_at=self._clock())
            logger.info("Discovery complete: %d server(s) cataloged", len(entries))
            return self._catalog

    async def discover_server(self, server_id: str) -> ServerCatalogEntry:
        """Catalog one connected server. Resource listing failures are tolerated."""
        tools = await self.manager.list_tools(server_id)
        resources: list[JSONObject] = []
        try:
            resources = await self.manager.list_resources(server_id)
        except BridgeError as exc:
            logger.debug("Could not list resources for %s: %s", server_id, exc)
        enriched = tuple(
            replace(tool, examples=tool_examples(tool.name, tool.description)) for tool in tools
        )
        logger.debug("Found %d tools for server %s", len(enriched), server_id)
        return ServerCatalogEntry(
            server_id=server_id,
            name=server_display_name(server_id),
            description=server_description(server_id, list(enriched)),
            tools=enriched,
            resources=tuple(resources),
            status=CatalogStatus.CONNECTED,
            last_updated=self._clock(),
        )

    def should_rediscover(self, catalog: ServerCatalog | None = None) -> bool:
        """True when the connected set changed or any entry is older than the interval."""
        current = catalog if catalog is not None else self._catalog
        connected = set(self.manager.get_connected_servers())
        cataloged = {
            entry.server_id
            for entry in current.entries
            if entry.status is not CatalogStatus.DISCONNECTED
        }
        if connected != cataloged:
            return True
        return current.is_stale(self.interval, now=self._clock())

    async def get_catalog(self, *, refresh: bool = False) -> ServerCatalog:
        """Current catalog, refreshed first when forced, empty, or stale."""
        if refresh or not self._catalog.entries or self.should_rediscover():
            return await self.discover_all()
        return self._catalog

    def start(self) -> None:
        """Begin periodic refreshes on the discovery interval."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_periodic(), name="mcpbridge-discovery")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run_periodic(self) -> None:
        while True:
            if self.should_rediscover():
                try:
                    await self.discover_all()
                except BridgeError as exc:
                    logger.warning("Periodic discovery failed: %s", exc)
            await asyncio.sleep(self.interval.total_seconds())

    def _error_entry(self, server_id: str) -> ServerCatalogEntry:
        return ServerCatalogEntry(
            server_id=server_id,
            name=server_id,
            description="Server discovery failed",
            tools=(),
            resources=(),
            status=CatalogStatus.ERROR,
            last_updated=self._clock(),
        )

    def _disconnected_entry(self, server_id: str) -> ServerCatalogEntry:
        return ServerCatalogEntry(
            server_id=server_id,
            name=server_display_name(server_id),
            description="Server is not connected",
            tools=(),
            resources=(),
            status=CatalogStatus.DISCONNECTED,
            last_updated=self._clock(),
        )
