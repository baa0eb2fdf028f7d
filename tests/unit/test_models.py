from datetime import timedelta

import pytest

from mcpbridge.mcp.models import CatalogStatus, ServerCatalog, ToolDefinition, ToolResult
from tests.support.bridge_helpers import BridgeTestClock, catalog_of


def test_tool_definition_defaults() -> None:
    tool = ToolDefinition.from_payload({"name": "read_file"}, server_id="fs")
    assert tool.description == "No description available"
    assert tool.input_schema == {"type": "object", "properties": {}}
    assert tool.examples == ()


def test_tool_definition_requires_name() -> None:
    with pytest.raises(ValueError):
        ToolDefinition.from_payload({"description": "nameless"}, server_id="fs")


def test_tool_result_normalizes_content() -> None:
    result = ToolResult.from_payload(
        {"content": [{"type": "text", "text": "a"}, "b"], "isError": True}
    )
    assert result.is_error
    assert result.text() == "a\nb"
    assert ToolResult.from_payload({"content": "plain"}).text() == "plain"
    assert ToolResult.from_payload(None).content == []
    assert ToolResult.from_payload(42).text() == "42"


def test_catalog_lookups_and_staleness() -> None:
    clock = BridgeTestClock()
    catalog = catalog_of({"git": ["git_status"]}, when=clock())

    assert catalog.has_tool("git", "git_status")
    assert not catalog.has_tool("git", "git_push")
    assert not catalog.has_tool("ghost", "git_status")
    assert [entry.status for entry in catalog.connected()] == [CatalogStatus.CONNECTED]
    assert not catalog.is_stale(timedelta(minutes=5), now=clock())
    clock.advance(seconds=301)
    assert catalog.is_stale(timedelta(minutes=5), now=clock())
    assert ServerCatalog().is_stale(timedelta(minutes=5))
