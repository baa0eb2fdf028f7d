"""Network transports: WebSocket and HTTP server-sent events."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, ClassVar
from urllib.parse import urljoin

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from mcpbridge.mcp.errors import ProtocolError, ToolServerConnectionError
from mcpbridge.mcp.jsonrpc import JSONObject, PendingRequests, decode_frame
from mcpbridge.mcp.transport import Transport

logger = logging.getLogger(__name__)

type WebSocketConnector = Callable[..., Awaitable[Any]]
type ClientFactory = Callable[[], httpx.AsyncClient]


class WebSocketTransport(Transport):
    """One persistent duplex socket; each text frame is one JSON-RPC message."""

    kind: ClassVar[str] = "websocket"

    def __init__(
        self,
        server_id: str,
        pending: PendingRequests,
        *,
        url: str,
        timeout_seconds: float = 30.0,
        connector: WebSocketConnector | None = None,
    ) -> None:
        super().__init__(server_id, pending, timeout_seconds=timeout_seconds)
        self.url = url
        self._connector = connector or websockets.connect
        self._socket: Any = None
        self._reader_task: asyncio.Task[None] | None = None

    async def _open(self) -> None:
        logger.info("Opening websocket to %s at %s", self.server_id, self.url)
        try:
            self._socket = await self._connector(self.url, open_timeout=self.timeout_seconds)
        except (OSError, TimeoutError, WebSocketException) as exc:
            msg = f"Failed to open websocket {self.url} for {self.server_id}: {exc}"
            raise ToolServerConnectionError(msg, server_id=self.server_id) from exc
        self._reader_task = asyncio.create_task(
            self._read_frames(self._socket), name=f"mcpbridge-ws-{self.server_id}"
        )

    async def _send(self, message: JSONObject) -> None:
        if self._socket is None:
            msg = f"Websocket to {self.server_id} is not open"
            raise ToolServerConnectionError(msg, server_id=self.server_id)
        try:
            await self._socket.send(json.dumps(message, separators=(",", ":")))
        except (OSError, WebSocketException) as exc:
            msg = f"Failed to send to {self.server_id}: {exc}"
            raise ToolServerConnectionError(msg, server_id=self.server_id) from exc

    async def _close(self) -> None:
        socket, self._socket = self._socket, None
        if socket is not None:
            with contextlib.suppress(OSError, WebSocketException):
                await socket.close()
        task, self._reader_task = self._reader_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _is_open(self) -> bool:
        return (
            self._socket is not None
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    async def _read_frames(self, socket: Any) -> None:
        try:
            async for frame in socket:
                if isinstance(frame, bytes):
                    frame = frame.decode("utf-8", errors="replace")
                try:
                    message = decode_frame(frame)
                except ProtocolError as exc:
                    logger.error("Failed to parse message from %s: %s", self.server_id, exc)
                    continue
                self._dispatch(message)
        except ConnectionClosed as exc:
            logger.info("Websocket to %s closed: %s", self.server_id, exc)
        except OSError as exc:
            logger.warning("Websocket to %s failed: %s", self.server_id, exc)
        finally:
            self._handle_closed("connection closed")


@dataclass(frozen=True, slots=True)
class ServerSentEvent:
    """One dispatched event-stream event."""

    event: str = "message"
    data: str = ""
    id: str | None = None
    retry: int | None = None


class EventStreamDecoder:
    """Incremental `text/event-stream` decoder fed one line at a time."""

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._last_id: str | None = None
        self._retry: int | None = None

    @property
    def last_event_id(self) -> str | None:
        return self._last_id

    def feed(self, line: str) -> ServerSentEvent | None:
        """Consume one line (without its terminator); return an event on dispatch."""
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            if "\0" not in value:
                self._last_id = value
        elif name == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _dispatch(self) -> ServerSentEvent | None:
        if not self._data:
            self._event = ""
            return None
        event = ServerSentEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self._last_id,
            retry=self._retry,
        )
        self._event = ""
        self._data = []
        return event


class EventStreamTransport(Transport):
    """Replies arrive on a GET event stream; requests are POSTed to its endpoint."""

    kind: ClassVar[str] = "sse"

    def __init__(
        self,
        server_id: str,
        pending: PendingRequests,
        *,
        url: str,
        timeout_seconds: float = 30.0,
        headers: dict[str, str] | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        super().__init__(server_id, pending, timeout_seconds=timeout_seconds)
        self.url = url
        self.headers = dict(headers or {})
        self.endpoint: str | None = None
        self._client_factory = client_factory or self._default_client
        self._client: httpx.AsyncClient | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._endpoint_ready: asyncio.Future[str] | None = None

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds, read=None),
            headers=self.headers,
        )

    async def _open(self) -> None:
        logger.info("Opening event stream to %s at %s", self.server_id, self.url)
        self._client = self._client_factory()
        self._endpoint_ready = asyncio.get_running_loop().create_future()
        self._stream_task = asyncio.create_task(
            self._read_stream(self._client, self._endpoint_ready),
            name=f"mcpbridge-sse-{self.server_id}",
        )
        try:
            self.endpoint = await asyncio.wait_for(
                asyncio.shield(self._endpoint_ready), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            await self._close()
            msg = f"No endpoint event from {self.server_id} within {self.timeout_seconds:g}s"
            raise ToolServerConnectionError(msg, server_id=self.server_id) from exc
        except ToolServerConnectionError:
            await self._close()
            raise
        logger.debug("Event stream endpoint for %s: %s", self.server_id, self.endpoint)

    async def _send(self, message: JSONObject) -> None:
        if self._client is None or self.endpoint is None:
            msg = f"Event stream to {self.server_id} is not open"
            raise ToolServerConnectionError(msg, server_id=self.server_id)
        try:
            response = await self._client.post(self.endpoint, json=message)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f"Failed to post to {self.server_id}: {exc}"
            raise ToolServerConnectionError(msg, server_id=self.server_id) from exc
        if "application/json" in response.headers.get("content-type", "") and response.content:
            try:
                reply = decode_frame(response.content)
            except ProtocolError as exc:
                logger.error("Failed to parse POST reply from %s: %s", self.server_id, exc)
                return
            self._dispatch(reply)

    async def _close(self) -> None:
        task, self._stream_task = self._stream_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()
        self.endpoint = None

    def _is_open(self) -> bool:
        return (
            self._client is not None
            and self.endpoint is not None
            and self._stream_task is not None
            and not self._stream_task.done()
        )

    async def _read_stream(self, client: httpx.AsyncClient, ready: asyncio.Future[str]) -> None:
        decoder = EventStreamDecoder()
        reason = "connection closed"
        try:
            try:
                async with client.stream(
                    "GET", self.url, headers={"Accept": "text/event-stream"}
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        event = decoder.feed(line)
                        if event is not None:
                            self._handle_event(event, ready)
            except httpx.HTTPError as exc:
                logger.warning("Event stream to %s failed: %s", self.server_id, exc)
                reason = f"connection closed: {exc}"
            if not ready.done():
                ready.set_exception(ToolServerConnectionError(reason, server_id=self.server_id))
        finally:
            self._handle_closed("connection closed")

    def _handle_event(self, event: ServerSentEvent, ready: asyncio.Future[str]) -> None:
        if event.event == "endpoint":
            if not ready.done():
                ready.set_result(urljoin(self.url, event.data.strip()))
            return
        if event.event != "message":
            logger.debug("Ignoring %s event from %s", event.event, self.server_id)
            return
        try:
            message = decode_frame(event.data)
        except ProtocolError as exc:
            logger.error("Failed to parse event from %s: %s", self.server_id, exc)
            return
        self._dispatch(message)
