"""Transport abstraction and the newline-framed pipe transport.

Every transport variant exposes the same surface: connect, disconnect,
call_tool, list_tools, list_resources, read_resource. Variants only supply
raw message I/O (`_open`, `_send`, `_close`); request correlation and
timeouts live in the shared base through the connection's
:class:`PendingRequests` table.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import AsyncIterator, Sequence
from typing import ClassVar, cast

from mcpbridge.mcp.errors import BridgeError, ProtocolError, ToolServerConnectionError
from mcpbridge.mcp.jsonrpc import (
    JSONObject,
    JSONValue,
    PendingRequests,
    build_notification,
    build_request,
    decode_frame,
    encode_frame,
    initialize_params,
)
from mcpbridge.mcp.models import ToolDefinition, ToolResult

logger = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_SECONDS = 2.0
_READ_CHUNK_BYTES = 64 * 1024


class Transport(ABC):
    """Base for all transport variants."""

    kind: ClassVar[str]

    def __init__(self, server_id: str, pending: PendingRequests, *, timeout_seconds: float) -> None:
        self.server_id = server_id
        self.timeout_seconds = timeout_seconds
        self.server_info: JSONObject | None = None
        self._pending = pending
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected and self._is_open()

    async def connect(self) -> None:
        """Open the channel and complete the `initialize` handshake."""
        await self._open()
        try:
            result = await self.request("initialize", initialize_params())
            await self._send(build_notification("notifications/initialized"))
        except BridgeError as exc:
            await self._shutdown("handshake failed")
            msg = f"Handshake with {self.server_id} failed: {exc}"
            raise ToolServerConnectionError(msg, server_id=self.server_id) from exc
        self.server_info = cast(JSONObject, result) if isinstance(result, dict) else {}
        self._connected = True
        logger.info("Initialized %s connection to %s", self.kind, self.server_id)

    async def disconnect(self) -> None:
        await self._shutdown("connection closed")
        logger.debug("Disconnected from %s", self.server_id)

    async def request(
        self,
        method: str,
        params: JSONObject | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> JSONValue:
        """Send one request and await its correlated reply."""
        if not self._is_open():
            msg = f"Transport to {self.server_id} is not connected"
            raise ToolServerConnectionError(msg, server_id=self.server_id)
        entry = self._pending.register(method)
        message = build_request(method, request_id=entry.request_id, params=params)
        logger.debug("Sending %s (id=%s) to %s", method, entry.request_id, self.server_id)
        try:
            await self._send(message)
        except ToolServerConnectionError:
            self._pending.discard(entry.request_id)
            raise
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        return await self._pending.wait(entry, timeout)

    async def call_tool(
        self,
        name: str,
        arguments: JSONObject | None = None,
        *,
        timeout_seconds: float | None = None,
    ) -> ToolResult:
        result = await self.request(
            "tools/call",
            {"name": name, "arguments": arguments or {}},
            timeout_seconds=timeout_seconds,
        )
        return ToolResult.from_payload(result)

    async def list_tools(self, *, timeout_seconds: float | None = None) -> list[ToolDefinition]:
        result = await self.request("tools/list", timeout_seconds=timeout_seconds)
        tools: list[ToolDefinition] = []
        for payload in self._result_items(result, "tools"):
            try:
                tools.append(ToolDefinition.from_payload(payload, server_id=self.server_id))
            except ValueError:
                logger.warning("Skipping malformed tool entry from %s: %r", self.server_id, payload)
        return tools

    async def list_resources(self, *, timeout_seconds: float | None = None) -> list[JSONObject]:
        result = await self.request("resources/list", timeout_seconds=timeout_seconds)
        return self._result_items(result, "resources")

    async def read_resource(
        self,
        uri: str,
        *,
        timeout_seconds: float | None = None,
    ) -> list[JSONObject]:
        result = await self.request("resources/read", {"uri": uri}, timeout_seconds=timeout_seconds)
        return self._result_items(result, "contents")

    def _dispatch(self, message: JSONObject) -> None:
        if self._pending.resolve(message):
            return
        method = message.get("method")
        if isinstance(method, str):
            logger.debug("Notification %s from %s", method, self.server_id)

    def _handle_closed(self, reason: str) -> None:
        self._connected = False
        failed = self._pending.fail_all(reason)
        if failed:
            logger.warning(
                "Rejected %d pending request(s) for %s: %s", failed, self.server_id, reason
            )

    async def _shutdown(self, reason: str) -> None:
        self._connected = False
        try:
            await self._close()
        finally:
            self._pending.fail_all(reason)

    def _result_items(self, result: JSONValue, key: str) -> list[JSONObject]:
        items: JSONValue = result
        if isinstance(result, dict):
            items = result.get(key)
        if not isinstance(items, list):
            msg = f"Invalid {key} payload from {self.server_id}"
            raise ProtocolError(msg, server_id=self.server_id)
        return [cast(JSONObject, item) for item in items if isinstance(item, dict)]

    @abstractmethod
    async def _open(self) -> None:
        """Establish the channel; raise ToolServerConnectionError on failure."""

    @abstractmethod
    async def _send(self, message: JSONObject) -> None:
        """Write one message; raise ToolServerConnectionError on failure."""

    @abstractmethod
    async def _close(self) -> None:
        """Release the channel. Must be idempotent."""

    @abstractmethod
    def _is_open(self) -> bool:
        """Whether the channel can carry messages."""


async def iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield newline-delimited lines of any length until EOF."""
    buffer = b""
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            break
        buffer += chunk
        *lines, buffer = buffer.split(b"\n")
        for line in lines:
            yield line
    if buffer:
        yield buffer


class StdioTransport(Transport):
    """JSON-RPC over a child process's stdin/stdout, one message per line."""

    kind: ClassVar[str] = "stdio"

    def __init__(
        self,
        server_id: str,
        pending: PendingRequests,
        *,
        command: str,
        args: Sequence[str] = (),
        env: dict[str, str] | None = None,
        working_directory: str | None = None,
        timeout_seconds: float = 30.0,
        grace_period_seconds: float = GRACEFUL_SHUTDOWN_SECONDS,
        max_stderr_lines: int = 200,
    ) -> None:
        super().__init__(server_id, pending, timeout_seconds=timeout_seconds)
        self.command = command
        self.args = list(args)
        self.env = dict(env or {})
        self.working_directory = working_directory
        self._grace_period_seconds = grace_period_seconds
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr: deque[str] = deque(maxlen=max(1, max_stderr_lines))

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def stderr_tail(self, limit: int | None = None) -> list[str]:
        """Most recent stderr lines captured for diagnostics."""
        lines = list(self._stderr)
        if limit is not None:
            return lines[-limit:] if limit > 0 else []
        return lines

    async def _open(self) -> None:
        logger.info(
            "Starting process for %s: %s %s", self.server_id, self.command, " ".join(self.args)
        )
        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env},
                cwd=self.working_directory or None,
            )
        except OSError as exc:
            msg = f"Failed to start {self.command} for {self.server_id}: {exc}"
            raise ToolServerConnectionError(msg, server_id=self.server_id) from exc
        self._process = process
        self._reader_task = asyncio.create_task(
            self._read_stdout(process), name=f"mcpbridge-stdout-{self.server_id}"
        )
        self._stderr_task = asyncio.create_task(
            self._read_stderr(process), name=f"mcpbridge-stderr-{self.server_id}"
        )

    async def _send(self, message: JSONObject) -> None:
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            msg = f"Process for {self.server_id} is not running"
            raise ToolServerConnectionError(msg, server_id=self.server_id)
        try:
            process.stdin.write(encode_frame(message))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            msg = f"Failed to write to {self.server_id}: {exc}"
            raise ToolServerConnectionError(msg, server_id=self.server_id) from exc

    async def _close(self) -> None:
        process, self._process = self._process, None
        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self._grace_period_seconds)
                except TimeoutError:
                    logger.debug("Force killing unresponsive process for %s", self.server_id)
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reader_task = None
        self._stderr_task = None

    def _is_open(self) -> bool:
        return (
            self._process is not None
            and self._process.returncode is None
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        try:
            try:
                async for line in iter_lines(process.stdout):
                    self._handle_line(line)
            except OSError as exc:
                logger.error("Error reading stdout for %s: %s", self.server_id, exc)
            if process.returncode is None:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(process.wait(), timeout=self._grace_period_seconds)
            logger.info("Process for %s exited with code %s", self.server_id, process.returncode)
        finally:
            self._handle_closed("connection closed")

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        try:
            async for raw in iter_lines(process.stderr):
                text = raw.decode("utf-8", errors="replace").strip()
                if text:
                    self._stderr.append(text)
                    logger.debug("Server stderr [%s]: %s", self.server_id, text)
        except OSError as exc:
            logger.debug("Error reading stderr for %s: %s", self.server_id, exc)

    def _handle_line(self, raw: bytes) -> None:
        line = raw.strip()
        if not line:
            return
        try:
            message = decode_frame(line)
        except ProtocolError as exc:
            logger.error("Failed to parse message from %s: %s", self.server_id, exc)
            return
        self._dispatch(message)
