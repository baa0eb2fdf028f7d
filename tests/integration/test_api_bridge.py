from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from mcpbridge.api.app import create_app
from mcpbridge.config import BridgeSettings
from mcpbridge.mcp.health import HealthMonitor
from mcpbridge.mcp.jsonrpc import JSONObject
from mcpbridge.mcp.manager import ConnectionManager
from mcpbridge.runtime import BridgeRuntime
from tests.support.bridge_helpers import (
    RecordingSleep,
    ScriptedServers,
    default_responder,
    error_reply,
    settings_for,
)

FS_TOOLS = ["read_file", "write_file", "list_directory"]


def _broken(message: JSONObject) -> JSONObject | None:
    if message.get("method") == "tools/call":
        return error_reply(message, "lookup crashed")
    return default_responder(["lookup_thing"])(message)


def _hanging(message: JSONObject) -> JSONObject | None:
    if message.get("method") == "tools/call":
        return None
    return default_responder(["wait_forever"])(message)


@pytest.fixture
def servers() -> ScriptedServers:
    scripted = ScriptedServers()
    scripted.add("filesystem", FS_TOOLS)
    scripted.add("git", ["git_status", "git_log"])
    scripted.add("notes", ["search"])
    scripted.add("broken", ["lookup_thing"], _broken)
    scripted.add("hang", ["wait_forever"], _hanging)
    scripted.fail_opens("offline", 100)
    return scripted


@pytest.fixture
def client(servers: ScriptedServers) -> Iterator[TestClient]:
    settings = settings_for(
        "filesystem", "git", "notes", "broken", "hang", "offline", retry_attempts=2
    )

    def runtime_factory(resolved: BridgeSettings) -> BridgeRuntime:
        manager = ConnectionManager(
            resolved,
            health=HealthMonitor(sleep=RecordingSleep()),
            connection_factory=servers,
        )
        return BridgeRuntime(resolved, manager=manager, periodic_discovery=False)

    app = create_app(settings, runtime_factory=runtime_factory)
    with TestClient(app) as test_client:
        yield test_client


def test_servers_report_health(client: TestClient) -> None:
    response = client.get("/api/v1/servers")

    assert response.status_code == 200
    items = {item["server_id"]: item for item in response.json()["items"]}
    assert items["filesystem"]["connected"] is True
    assert items["filesystem"]["retry_count"] == 0
    assert items["offline"]["connected"] is False
    assert items["offline"]["retry_count"] == 2
    assert items["offline"]["last_error_category"] == "connection"


def test_server_events_filter(client: TestClient) -> None:
    response = client.get("/api/v1/servers/events", params={"server_id": "offline"})

    assert response.status_code == 200
    events = response.json()["items"]
    assert len(events) == 2
    assert all(event["server_id"] == "offline" for event in events)
    assert all(event["connected"] is False for event in events)


def test_call_tool(client: TestClient) -> None:
    response = client.post(
        "/api/v1/tools/call",
        json={"server_id": "filesystem", "tool_name": "read_file", "arguments": {"path": "a"}},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["content"] == [{"type": "text", "text": "read_file:{'path': 'a'}"}]
    assert payload["is_error"] is False


@pytest.mark.parametrize(
    ("body", "status_code", "category"),
    [
        ({"server_id": "filesystem", "tool_name": "rm_rf"}, 404, "tool_not_found"),
        ({"server_id": "offline", "tool_name": "anything"}, 404, "not_connected"),
        ({"server_id": "broken", "tool_name": "lookup_thing"}, 502, "rpc_error"),
        (
            {"server_id": "hang", "tool_name": "wait_forever", "timeout_seconds": 0.05},
            503,
            "timeout",
        ),
    ],
)
def test_call_tool_error_mapping(
    client: TestClient,
    body: dict[str, object],
    status_code: int,
    category: str,
) -> None:
    response = client.post("/api/v1/tools/call", json=body)

    assert response.status_code == status_code
    detail = response.json()["detail"]
    assert detail["category"] == category
    assert detail["server_id"] == body["server_id"]


def test_search_tags_sources(client: TestClient) -> None:
    response = client.post("/api/v1/search", json={"query": "roadmap"})

    assert response.status_code == 200
    assert response.json()["items"] == [
        {"type": "text", "text": "search:{'query': 'roadmap'}", "source": "notes"}
    ]


def test_catalog_lists_every_enabled_server(client: TestClient) -> None:
    response = client.get("/api/v1/catalog", params={"refresh": "true"})

    assert response.status_code == 200
    items = {item["server_id"]: item for item in response.json()["items"]}
    assert set(items) == {"filesystem", "git", "notes", "broken", "hang", "offline"}
    assert items["filesystem"]["name"] == "File System"
    assert items["offline"]["status"] == "disconnected"
    git_tools = {tool["name"]: tool for tool in items["git"]["tools"]}
    assert git_tools["git_status"]["examples"] == [
        "git status",
        "check git state",
        "show changes",
    ]


def test_route_returns_plan(client: TestClient) -> None:
    response = client.post("/api/v1/route", json={"query": "show git status"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["plan"]["selected_server"] == "git"
    assert payload["plan"]["selected_tool"] == "git_status"
    assert payload["plan"]["confidence"] == pytest.approx(0.7)
    assert payload["needs_clarification"] is False


def test_ask_executes_confident_plan(client: TestClient) -> None:
    response = client.post("/api/v1/ask", json={"query": "show git status"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["needs_clarification"] is False
    assert payload["result"]["content"] == [{"type": "text", "text": "git_status:{}"}]


def test_ask_requests_clarification_for_weak_plan(client: TestClient) -> None:
    response = client.post("/api/v1/ask", json={"query": "do something magical"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["needs_clarification"] is True
    assert payload["plan"]["confidence"] == pytest.approx(0.2)
    assert payload["message"]
    assert payload["result"] is None


def test_health_check_and_reconnect(client: TestClient, servers: ScriptedServers) -> None:
    check = client.post("/api/v1/servers/health-check")
    assert check.status_code == 200

    servers.open_failures["offline"] = 0
    response = client.post("/api/v1/servers/offline/reconnect")

    assert response.status_code == 200
    assert response.json()["connected"] is True
    assert response.json()["retry_count"] == 0

    missing = client.post("/api/v1/servers/ghost/reconnect")
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Server not found"


def test_empty_query_is_rejected(client: TestClient) -> None:
    response = client.post("/api/v1/route", json={"query": ""})
    assert response.status_code == 422
