"""Per-server connection health and the retry/backoff state machine."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from mcpbridge.config import RetrySettings
from mcpbridge.mcp.errors import BridgeError, ErrorCategory, ToolNotFoundError

logger = logging.getLogger(__name__)

type Sleep = Callable[[float], Awaitable[None]]
type Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff: delay before retry n is min(cap, base * factor**(n-1))."""

    base_delay_ms: int = 1000
    backoff_factor: float = 2.0
    max_delay_ms: int = 30000

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            base_delay_ms=settings.base_delay_ms,
            backoff_factor=settings.backoff_factor,
            max_delay_ms=settings.max_delay_ms,
        )

    def delay_for(self, retry_number: int) -> float:
        """Seconds to wait before the given retry (1-based)."""
        if retry_number < 1:
            return 0.0
        delay_ms = min(
            float(self.max_delay_ms),
            self.base_delay_ms * self.backoff_factor ** (retry_number - 1),
        )
        return delay_ms / 1000.0

    def delays(self, attempts: int) -> list[float]:
        """Delays between `attempts` consecutive attempts."""
        return [self.delay_for(n) for n in range(1, max(attempts, 1))]


@dataclass(slots=True)
class HealthEvent:
    """Connected-state transition for one server."""

    server_id: str
    connected: bool
    reason: str
    timestamp: datetime
    error_category: ErrorCategory | None = None


@dataclass(slots=True)
class ConnectionHealth:
    """Health record for one logical server; survives reconnects."""

    server_id: str
    connected: bool = False
    last_error: str | None = None
    last_error_category: ErrorCategory | None = None
    retry_count: int = 0
    last_retry_at: datetime | None = None
    last_checked_at: datetime | None = None
    total_failures: int = 0

    def copy(self) -> ConnectionHealth:
        return replace(self)


class HealthMonitor:
    """Track connection health and drive connect retries."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = _utcnow,
        max_events: int = 500,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock
        self._records: dict[str, ConnectionHealth] = {}
        self._events: deque[HealthEvent] = deque(maxlen=max(1, max_events))

    def get(self, server_id: str) -> ConnectionHealth | None:
        record = self._records.get(server_id)
        return record.copy() if record is not None else None

    def snapshot(self) -> dict[str, ConnectionHealth]:
        """Copy of every health record keyed by server id."""
        return {server_id: record.copy() for server_id, record in sorted(self._records.items())}

    def forget(self, server_id: str) -> None:
        self._records.pop(server_id, None)

    def list_events(
        self,
        *,
        server_id: str | None = None,
        limit: int | None = None,
    ) -> list[HealthEvent]:
        events = [
            event for event in self._events if server_id is None or event.server_id == server_id
        ]
        if limit is not None:
            if limit <= 0:
                return []
            events = events[-limit:]
        return events

    def record_attempt(
        self,
        server_id: str,
        *,
        connected: bool,
        error: BaseException | str | None = None,
        is_retry: bool = False,
    ) -> ConnectionHealth:
        """Apply one connect attempt outcome."""
        record = self._record(server_id)
        when = self._clock()
        if is_retry:
            record.last_retry_at = when
        if connected:
            self._apply(record, connected=True, reason="connected", when=when)
            record.retry_count = 0
        else:
            record.retry_count += 1
            self._apply_failure(record, error, when=when, fallback="connect failed")
        return record.copy()

    def record_call(self, server_id: str, *, error: BaseException | None = None) -> None:
        """Apply a forwarded call outcome. Unknown-tool rejections leave health unchanged."""
        if isinstance(error, ToolNotFoundError):
            return
        record = self._record(server_id)
        when = self._clock()
        if error is None:
            record.last_error = None
            record.last_error_category = None
            record.last_checked_at = when
            return
        self._apply_failure(record, error, when=when, fallback="call failed", keep_connected=True)

    def record_probe(self, server_id: str, *, error: BaseException | None = None) -> None:
        """Apply a health probe; a failed probe degrades without disconnecting."""
        self.record_call(server_id, error=error)

    def mark_disconnected(self, server_id: str, *, reason: str = "disconnected") -> None:
        record = self._record(server_id)
        self._apply(record, connected=False, reason=reason, when=self._clock())

    async def connect_with_retry[T](
        self,
        server_id: str,
        connect: Callable[[], Awaitable[T]],
        *,
        attempts: int,
    ) -> T:
        """Run `connect` up to `attempts` times, sleeping with backoff in between.

        Every attempt updates the server's health. The last error is re-raised
        once attempts are exhausted.
        """
        total = max(1, attempts)
        last_error: BaseException | None = None
        for attempt in range(1, total + 1):
            if attempt > 1:
                delay = self.policy.delay_for(attempt - 1)
                logger.info(
                    "Retrying %s in %.2fs (attempt %d/%d)", server_id, delay, attempt, total
                )
                await self._sleep(delay)
            try:
                result = await connect()
            except BridgeError as exc:
                last_error = exc
                self.record_attempt(server_id, connected=False, error=exc, is_retry=attempt > 1)
                logger.warning(
                    "Connection attempt %d/%d for %s failed: %s", attempt, total, server_id, exc
                )
                continue
            self.record_attempt(server_id, connected=True, is_retry=attempt > 1)
            logger.info("Connected to %s on attempt %d", server_id, attempt)
            return result
        assert last_error is not None
        raise last_error

    def _record(self, server_id: str) -> ConnectionHealth:
        record = self._records.get(server_id)
        if record is None:
            record = ConnectionHealth(server_id=server_id)
            self._records[server_id] = record
        return record

    def _apply_failure(
        self,
        record: ConnectionHealth,
        error: BaseException | str | None,
        *,
        when: datetime,
        fallback: str,
        keep_connected: bool = False,
    ) -> None:
        record.total_failures += 1
        record.last_error = str(error) if error else fallback
        record.last_error_category = error.category if isinstance(error, BridgeError) else None
        connected = record.connected if keep_connected else False
        self._apply(
            record,
            connected=connected,
            reason=record.last_error,
            when=when,
            error_category=record.last_error_category,
        )

    def _apply(
        self,
        record: ConnectionHealth,
        *,
        connected: bool,
        reason: str,
        when: datetime,
        error_category: ErrorCategory | None = None,
    ) -> None:
        old = record.connected
        record.connected = connected
        record.last_checked_at = when
        if connected:
            record.last_error = None
            record.last_error_category = None
        if old is not connected or error_category is not None:
            self._events.append(
                HealthEvent(
                    server_id=record.server_id,
                    connected=connected,
                    reason=reason,
                    timestamp=when,
                    error_category=error_category,
                )
            )
