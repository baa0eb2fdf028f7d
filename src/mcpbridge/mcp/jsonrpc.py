"""JSON-RPC 2.0 framing and request correlation."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import cast

from mcpbridge.mcp.errors import (
    ProtocolError,
    RequestTimeoutError,
    ToolServerConnectionError,
    ToolServerError,
)

logger = logging.getLogger(__name__)

type JSONValue = None | bool | int | float | str | list[JSONValue] | dict[str, JSONValue]
type JSONObject = dict[str, JSONValue]

JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO: JSONObject = {"name": "mcpbridge", "version": "0.2.0"}


def build_request(method: str, *, request_id: int, params: JSONObject | None = None) -> JSONObject:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "method": method,
        "params": params if params is not None else {},
    }


def build_notification(method: str, params: JSONObject | None = None) -> JSONObject:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "method": method,
        "params": params if params is not None else {},
    }


def initialize_params() -> JSONObject:
    """Parameters for the `initialize` handshake."""
    return {
        "protocolVersion": MCP_PROTOCOL_VERSION,
        "capabilities": {"tools": {}, "resources": {}},
        "clientInfo": dict(CLIENT_INFO),
    }


def encode_frame(message: JSONObject) -> bytes:
    """Serialize one message as a newline-terminated frame."""
    return (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")


def decode_frame(raw: bytes | str) -> JSONObject:
    """Parse one frame into a JSON object or raise ProtocolError."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        payload = json.loads(text)
    except (ValueError, RecursionError) as exc:
        msg = f"Unparseable frame: {text[:200]!r}"
        raise ProtocolError(msg) from exc
    if not isinstance(payload, dict) or not all(isinstance(key, str) for key in payload):
        msg = f"Frame is not a JSON object: {text[:200]!r}"
        raise ProtocolError(msg)
    return cast(JSONObject, payload)


def extract_error(message: JSONObject) -> tuple[str, int | None] | None:
    """Return (message, code) when the reply carries an `error` member."""
    error_payload = message.get("error")
    if error_payload is None:
        return None
    if isinstance(error_payload, dict):
        code = error_payload.get("code")
        text = error_payload.get("message")
        return (
            text if isinstance(text, str) else "Unknown error",
            code if isinstance(code, int) else None,
        )
    return str(error_payload), None


class RequestIdSequence:
    """Strictly increasing request ids for one logical server.

    The sequence outlives individual connections so ids are never reused
    across reconnects.
    """

    def __init__(self, start: int = 1) -> None:
        self._next = start
        self._last: int | None = None

    def next_id(self) -> int:
        issued = self._next
        self._next += 1
        self._last = issued
        return issued

    @property
    def last_issued(self) -> int | None:
        return self._last


@dataclass(slots=True)
class PendingRequest:
    """One in-flight request awaiting its correlated reply."""

    request_id: int
    method: str
    future: asyncio.Future[JSONValue]
    sent_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class PendingRequests:
    """Pending-request table for one connection.

    Every entry leaves the table exactly once: by reply, by timeout, or by
    connection close.
    """

    def __init__(self, server_id: str, ids: RequestIdSequence | None = None) -> None:
        self.server_id = server_id
        self.ids = ids or RequestIdSequence()
        self._pending: dict[int, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def request_ids(self) -> list[int]:
        return sorted(self._pending)

    def register(self, method: str) -> PendingRequest:
        """Allocate an id and a future for one outbound request."""
        request_id = self.ids.next_id()
        if request_id in self._pending:
            msg = f"Request id collision: {request_id}"
            raise ProtocolError(msg, server_id=self.server_id)
        loop = asyncio.get_running_loop()
        entry = PendingRequest(request_id=request_id, method=method, future=loop.create_future())
        self._pending[request_id] = entry
        return entry

    def discard(self, request_id: int) -> bool:
        return self._pending.pop(request_id, None) is not None

    def resolve(self, message: JSONObject) -> bool:
        """Settle the pending request matching the reply's id.

        Returns False for notifications and replies with unknown ids.
        """
        request_id = message.get("id")
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            return False
        entry = self._pending.pop(request_id, None)
        if entry is None:
            logger.debug("Reply for unknown request id %s from %s", request_id, self.server_id)
            return False
        if entry.future.done():
            return True
        rpc_error = extract_error(message)
        if rpc_error is not None:
            text, code = rpc_error
            entry.future.set_exception(ToolServerError(text, code=code, server_id=self.server_id))
        else:
            entry.future.set_result(message.get("result"))
        return True

    def fail_all(self, reason: str = "connection closed") -> int:
        """Reject every outstanding request and clear the table."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            if not entry.future.done():
                entry.future.set_exception(
                    ToolServerConnectionError(reason, server_id=self.server_id)
                )
                # Retrieved here so an abandoned future never logs "exception never retrieved".
                entry.future.exception()
        return len(entries)

    async def wait(self, entry: PendingRequest, timeout_seconds: float) -> JSONValue:
        """Await one reply, removing the entry on timeout or cancellation."""
        try:
            return await asyncio.wait_for(entry.future, timeout=timeout_seconds)
        except TimeoutError as exc:
            raise RequestTimeoutError(
                entry.method,
                entry.request_id,
                timeout_seconds,
                server_id=self.server_id,
            ) from exc
        finally:
            self._pending.pop(entry.request_id, None)
