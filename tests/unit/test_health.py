from __future__ import annotations

import pytest

from mcpbridge.config import RetrySettings
from mcpbridge.mcp.errors import (
    RequestTimeoutError,
    ToolNotFoundError,
    ToolServerConnectionError,
)
from mcpbridge.mcp.health import HealthMonitor, RetryPolicy
from tests.support.bridge_helpers import BridgeTestClock, RecordingSleep


def _monitor(
    sleep: RecordingSleep | None = None,
    clock: BridgeTestClock | None = None,
) -> HealthMonitor:
    return HealthMonitor(
        RetryPolicy(), sleep=sleep or RecordingSleep(), clock=clock or BridgeTestClock()
    )


class FlakyConnect:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise ToolServerConnectionError(f"spawn failed #{self.calls}", server_id="fs")
        return "connected"


def test_default_policy_delays() -> None:
    policy = RetryPolicy()
    assert policy.delay_for(0) == 0.0
    assert policy.delay_for(1) == 1.0
    assert policy.delay_for(2) == 2.0
    assert policy.delay_for(3) == 4.0
    assert policy.delays(3) == [1.0, 2.0]
    assert policy.delays(1) == []


def test_delay_is_capped() -> None:
    policy = RetryPolicy(base_delay_ms=1000, backoff_factor=2.0, max_delay_ms=5000)
    assert policy.delay_for(10) == 5.0


def test_policy_from_settings() -> None:
    policy = RetryPolicy.from_settings(
        RetrySettings(base_delay_ms=250, backoff_factor=3.0, max_delay_ms=2000)
    )
    assert policy.delays(4) == [0.25, 0.75, 2.0]


@pytest.mark.asyncio
async def test_connect_with_retry_gives_up_after_exact_attempts() -> None:
    sleep = RecordingSleep()
    monitor = _monitor(sleep)
    connect = FlakyConnect(failures=10)

    with pytest.raises(ToolServerConnectionError, match="#3"):
        await monitor.connect_with_retry("fs", connect, attempts=3)

    assert connect.calls == 3
    assert sleep.delays == [1.0, 2.0]
    health = monitor.get("fs")
    assert health is not None
    assert not health.connected
    assert health.retry_count == 3
    assert health.total_failures == 3
    assert health.last_error == "spawn failed #3"
    assert health.last_error_category == "connection"
    assert health.last_retry_at is not None


@pytest.mark.asyncio
async def test_success_after_failures_resets_retry_count() -> None:
    sleep = RecordingSleep()
    monitor = _monitor(sleep)

    result = await monitor.connect_with_retry("fs", FlakyConnect(failures=2), attempts=3)

    assert result == "connected"
    assert sleep.delays == [1.0, 2.0]
    health = monitor.get("fs")
    assert health is not None
    assert health.connected
    assert health.retry_count == 0
    assert health.last_error is None
    assert health.total_failures == 2


@pytest.mark.asyncio
async def test_first_attempt_success_never_sleeps() -> None:
    sleep = RecordingSleep()
    monitor = _monitor(sleep)

    await monitor.connect_with_retry("fs", FlakyConnect(failures=0), attempts=3)

    assert sleep.delays == []
    health = monitor.get("fs")
    assert health is not None
    assert health.retry_count == 0
    assert health.last_retry_at is None


def test_call_failure_keeps_connected_state() -> None:
    monitor = _monitor()
    monitor.record_attempt("fs", connected=True)

    monitor.record_call("fs", error=RequestTimeoutError("tools/call", 4, 1.0, server_id="fs"))

    health = monitor.get("fs")
    assert health is not None
    assert health.connected
    assert health.last_error_category == "timeout"
    assert health.total_failures == 1

    monitor.record_call("fs")
    health = monitor.get("fs")
    assert health is not None
    assert health.last_error is None


def test_unknown_tool_does_not_touch_health() -> None:
    monitor = _monitor()
    monitor.record_attempt("fs", connected=True)

    monitor.record_call("fs", error=ToolNotFoundError("nope", server_id="fs"))

    health = monitor.get("fs")
    assert health is not None
    assert health.last_error is None
    assert health.total_failures == 0


def test_events_record_transitions_in_order() -> None:
    clock = BridgeTestClock()
    monitor = _monitor(clock=clock)

    monitor.record_attempt("fs", connected=True)
    clock.advance(seconds=5)
    monitor.mark_disconnected("fs", reason="connection closed")
    monitor.record_attempt("git", connected=True)

    events = monitor.list_events()
    assert [(event.server_id, event.connected) for event in events] == [
        ("fs", True),
        ("fs", False),
        ("git", True),
    ]
    assert events[1].reason == "connection closed"
    assert events[1].timestamp > events[0].timestamp
    assert [event.server_id for event in monitor.list_events(server_id="fs", limit=1)] == ["fs"]
    assert monitor.list_events(limit=0) == []


def test_snapshot_returns_copies() -> None:
    monitor = _monitor()
    monitor.record_attempt("fs", connected=True)

    snapshot = monitor.snapshot()
    snapshot["fs"].connected = False

    health = monitor.get("fs")
    assert health is not None
    assert health.connected
    monitor.forget("fs")
    assert monitor.get("fs") is None
