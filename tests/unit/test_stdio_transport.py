from __future__ import annotations

import asyncio
import sys

import pytest

from mcpbridge.mcp.errors import (
    RequestTimeoutError,
    ToolServerConnectionError,
    ToolServerError,
)
from mcpbridge.mcp.jsonrpc import PendingRequests
from mcpbridge.mcp.transport import StdioTransport, iter_lines
from tests.support.bridge_helpers import FAKE_SERVER


def _transport(*flags: str, timeout_seconds: float = 5.0) -> StdioTransport:
    return StdioTransport(
        "fake",
        PendingRequests("fake"),
        command=sys.executable,
        args=[str(FAKE_SERVER), *flags],
        timeout_seconds=timeout_seconds,
        grace_period_seconds=0.5,
    )


@pytest.mark.asyncio
async def test_connect_handshake_and_list_tools() -> None:
    transport = _transport()
    await transport.connect()
    try:
        assert transport.connected
        assert transport.server_info is not None
        assert transport.server_info["serverInfo"] == {"name": "fake-stdio", "version": "1.0.0"}
        tools = await transport.list_tools()
        assert "echo" in [tool.name for tool in tools]
        assert all(tool.server_id == "fake" for tool in tools)
    finally:
        await transport.disconnect()
    assert not transport.connected


@pytest.mark.asyncio
async def test_call_tool_round_trip_and_resources() -> None:
    transport = _transport()
    await transport.connect()
    try:
        result = await transport.call_tool("echo", {"text": "hello"})
        assert result.text() == "hello"
        assert not result.is_error
        resources = await transport.list_resources()
        assert resources[0]["uri"] == "memo://readme"
        contents = await transport.read_resource("memo://readme")
        assert contents[0]["text"] == "hello"
    finally:
        await transport.disconnect()


@pytest.mark.asyncio
async def test_garbage_line_is_skipped_and_reader_continues() -> None:
    transport = _transport()
    await transport.connect()
    try:
        result = await transport.call_tool("garbage")
        assert result.text() == "after garbage"
        assert (await transport.call_tool("echo", {"text": "still alive"})).text() == "still alive"
    finally:
        await transport.disconnect()


@pytest.mark.asyncio
async def test_deeply_nested_line_does_not_stop_the_reader() -> None:
    transport = _transport()
    await transport.connect()
    try:
        result = await transport.call_tool("nested")
        assert result.text() == "after nesting"
        assert transport.connected
        assert (await transport.call_tool("echo", {"text": "still alive"})).text() == "still alive"
    finally:
        await transport.disconnect()


@pytest.mark.asyncio
async def test_lines_longer_than_one_chunk_are_reassembled() -> None:
    transport = _transport()
    await transport.connect()
    try:
        result = await transport.call_tool("big")
        assert len(result.text()) == 200_000
    finally:
        await transport.disconnect()


@pytest.mark.asyncio
async def test_rpc_error_reply_raises_tool_server_error() -> None:
    transport = _transport()
    await transport.connect()
    try:
        with pytest.raises(ToolServerError, match="tool exploded"):
            await transport.call_tool("fail")
        assert transport.connected
    finally:
        await transport.disconnect()


@pytest.mark.asyncio
async def test_timeout_removes_pending_entry() -> None:
    transport = _transport()
    await transport.connect()
    try:
        with pytest.raises(RequestTimeoutError):
            await transport.call_tool("slow", {"seconds": 3}, timeout_seconds=0.1)
        assert len(transport._pending) == 0
    finally:
        await transport.disconnect()


@pytest.mark.asyncio
async def test_disconnect_rejects_outstanding_requests() -> None:
    transport = _transport()
    await transport.connect()
    call = asyncio.create_task(transport.call_tool("slow", {"seconds": 5}))
    await asyncio.sleep(0.1)
    assert len(transport._pending) == 1

    await transport.disconnect()

    with pytest.raises(ToolServerConnectionError, match="connection closed"):
        await call
    assert len(transport._pending) == 0


@pytest.mark.asyncio
async def test_process_exit_rejects_pending_and_clears_connected() -> None:
    transport = _transport()
    await transport.connect()
    try:
        with pytest.raises(ToolServerConnectionError, match="connection closed"):
            await transport.call_tool("crash")
        await asyncio.sleep(0.05)
        assert not transport.connected
    finally:
        await transport.disconnect()


@pytest.mark.asyncio
async def test_handshake_timeout_raises_connection_error() -> None:
    transport = _transport("--silent", timeout_seconds=0.3)
    with pytest.raises(ToolServerConnectionError, match="Handshake"):
        await transport.connect()
    assert not transport.connected
    assert transport.pid is None


@pytest.mark.asyncio
async def test_spawn_failure_raises_connection_error() -> None:
    transport = StdioTransport(
        "missing",
        PendingRequests("missing"),
        command="/nonexistent/mcp-server-binary",
        timeout_seconds=1.0,
    )
    with pytest.raises(ToolServerConnectionError, match="Failed to start"):
        await transport.connect()


@pytest.mark.asyncio
async def test_stderr_is_captured_for_diagnostics() -> None:
    transport = _transport()
    await transport.connect()
    try:
        await transport.list_tools()
        await asyncio.sleep(0.05)
        assert "fake-stdio ready" in transport.stderr_tail()
        assert transport.stderr_tail(limit=0) == []
    finally:
        await transport.disconnect()


@pytest.mark.asyncio
async def test_iter_lines_splits_across_chunks() -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(b'{"a":1}\n{"b"')
    reader.feed_data(b":2}\n\ntrailing")
    reader.feed_eof()

    lines = [line async for line in iter_lines(reader)]

    assert lines == [b'{"a":1}', b'{"b":2}', b"", b"trailing"]
