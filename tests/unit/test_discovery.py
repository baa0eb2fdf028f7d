from __future__ import annotations

import asyncio

import pytest

from mcpbridge.mcp.discovery import (
    ServerDiscovery,
    server_description,
    server_display_name,
    tool_examples,
)
from mcpbridge.mcp.health import HealthMonitor
from mcpbridge.mcp.jsonrpc import JSONObject
from mcpbridge.mcp.manager import ConnectionManager
from mcpbridge.mcp.models import CatalogStatus, ToolDefinition
from tests.support.bridge_helpers import (
    BridgeTestClock,
    RecordingSleep,
    ScriptedServers,
    default_responder,
    error_reply,
    reply,
    settings_for,
)

FS_TOOLS = ["read_file", "write_file", "list_directory"]


def _tool(name: str, description: str = "does things") -> ToolDefinition:
    return ToolDefinition(name=name, description=description, input_schema={}, server_id="srv")


async def _started(
    servers: ScriptedServers,
    *server_ids: str,
    clock: BridgeTestClock | None = None,
) -> tuple[ConnectionManager, ServerDiscovery]:
    manager = ConnectionManager(
        settings_for(*server_ids, retry_attempts=1),
        health=HealthMonitor(sleep=RecordingSleep()),
        connection_factory=servers,
    )
    await manager.initialize()
    return manager, ServerDiscovery(manager, interval_seconds=300, clock=clock)


def test_display_names() -> None:
    assert server_display_name("filesystem") == "File System"
    assert server_display_name("brave-search") == "Brave Search"
    assert server_display_name("my-custom-server") == "My Custom Server"


def test_descriptions() -> None:
    assert server_description("x", []) == "MCP server with no available tools"
    tools = [_tool(name) for name in ("a", "b", "c", "d", "e")]
    assert server_description("x", tools) == "MCP server providing 5 tools: a, b, c and 2 more"
    assert server_description("git", tools[:2]) == "Git repository operations including a, b"


def test_tool_examples() -> None:
    assert tool_examples("git_status", "") == ("git status", "check git state", "show changes")
    assert tool_examples("frob", "Frobnicates widgets!") == (
        "use frob",
        "frob operation",
        "frobnicates widgets",
    )
    assert tool_examples("frob", "") == ("use frob", "frob operation")


@pytest.mark.asyncio
async def test_discover_all_builds_entries_for_every_enabled_server() -> None:
    servers = ScriptedServers()
    servers.add("filesystem", FS_TOOLS)
    fallback = default_responder(["git_status"])

    def broken_tools(message: JSONObject) -> JSONObject | None:
        if message.get("method") == "tools/list":
            return error_reply(message, "tools unavailable")
        return fallback(message)

    servers.add("git", ["git_status"], broken_tools)
    servers.fail_opens("brave-search", 10)
    manager, discovery = await _started(servers, "filesystem", "git", "brave-search")

    catalog = await discovery.discover_all()

    assert sorted(entry.server_id for entry in catalog.entries) == [
        "brave-search",
        "filesystem",
        "git",
    ]
    fs = catalog.get("filesystem")
    assert fs is not None
    assert fs.status is CatalogStatus.CONNECTED
    assert fs.name == "File System"
    assert fs.description == (
        "File system operations including read_file, write_file, list_directory"
    )
    read_file = fs.find_tool("read_file")
    assert read_file is not None
    assert read_file.examples == ("read package.json", "show file contents", "cat readme.md")

    git = catalog.get("git")
    assert git is not None
    assert git.status is CatalogStatus.ERROR
    assert git.name == "git"
    assert git.description == "Server discovery failed"
    assert git.tools == ()

    brave = catalog.get("brave-search")
    assert brave is not None
    assert brave.status is CatalogStatus.DISCONNECTED
    assert brave.name == "Brave Search"
    assert discovery.catalog is catalog
    await manager.disconnect()


@pytest.mark.asyncio
async def test_resource_listing_failure_is_tolerated() -> None:
    servers = ScriptedServers()
    fallback = default_responder(["lookup"])

    def respond(message: JSONObject) -> JSONObject | None:
        if message.get("method") == "resources/list":
            return error_reply(message, "resources unsupported")
        return fallback(message)

    servers.add("notes", ["lookup"], respond)
    manager, discovery = await _started(servers, "notes")

    entry = await discovery.discover_server("notes")

    assert entry.status is CatalogStatus.CONNECTED
    assert entry.resources == ()
    assert [tool.name for tool in entry.tools] == ["lookup"]
    await manager.disconnect()


@pytest.mark.asyncio
async def test_resources_are_recorded() -> None:
    servers = ScriptedServers()
    fallback = default_responder(["lookup"])

    def respond(message: JSONObject) -> JSONObject | None:
        if message.get("method") == "resources/list":
            return reply(message, {"resources": [{"uri": "memo://one", "name": "one"}]})
        return fallback(message)

    servers.add("notes", ["lookup"], respond)
    manager, discovery = await _started(servers, "notes")

    entry = await discovery.discover_server("notes")

    assert entry.resources == ({"uri": "memo://one", "name": "one"},)
    await manager.disconnect()


@pytest.mark.asyncio
async def test_should_rediscover_on_staleness_and_membership_change() -> None:
    clock = BridgeTestClock()
    servers = ScriptedServers()
    servers.add("filesystem", FS_TOOLS)
    servers.add("git", ["git_status"])
    manager, discovery = await _started(servers, "filesystem", "git", clock=clock)

    await discovery.discover_all()
    assert not discovery.should_rediscover()

    clock.advance(seconds=299)
    assert not discovery.should_rediscover()
    clock.advance(seconds=2)
    assert discovery.should_rediscover()

    await discovery.discover_all()
    assert not discovery.should_rediscover()
    servers.latest("git").drop()
    assert discovery.should_rediscover()
    await manager.disconnect()


@pytest.mark.asyncio
async def test_get_catalog_reuses_fresh_snapshot() -> None:
    servers = ScriptedServers()
    servers.add("filesystem", FS_TOOLS)
    manager, discovery = await _started(servers, "filesystem", clock=BridgeTestClock())

    first = await discovery.get_catalog()
    second = await discovery.get_catalog()
    third = await discovery.get_catalog(refresh=True)

    assert first is second
    assert third is not first
    assert servers.latest("filesystem").methods_sent().count("tools/list") == 3
    await manager.disconnect()


@pytest.mark.asyncio
async def test_periodic_discovery_populates_catalog() -> None:
    servers = ScriptedServers()
    servers.add("filesystem", FS_TOOLS)
    manager, discovery = await _started(servers, "filesystem")

    discovery.start()
    for _ in range(50):
        if discovery.catalog.entries:
            break
        await asyncio.sleep(0.01)
    await discovery.stop()

    assert [entry.server_id for entry in discovery.catalog.entries] == ["filesystem"]
    await manager.disconnect()


@pytest.mark.asyncio
async def test_periodic_discovery_skips_a_fresh_catalog() -> None:
    servers = ScriptedServers()
    servers.add("filesystem", FS_TOOLS)
    manager, discovery = await _started(servers, "filesystem")
    catalog = await discovery.discover_all()
    listed = servers.latest("filesystem").methods_sent().count("tools/list")

    discovery.start()
    await asyncio.sleep(0.05)
    await discovery.stop()

    assert discovery.catalog is catalog
    assert servers.latest("filesystem").methods_sent().count("tools/list") == listed
    await manager.disconnect()
