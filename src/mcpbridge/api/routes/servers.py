"""Server health and catalog routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from mcpbridge.api.deps import get_runtime
from mcpbridge.api.schemas.servers import (
    CatalogEntryResponse,
    CatalogResponse,
    ConnectionHealthResponse,
    HealthEventResponse,
    HealthEventsResponse,
    ServersResponse,
    ToolResponse,
)
from mcpbridge.mcp.errors import ServerNotConnectedError
from mcpbridge.mcp.health import ConnectionHealth
from mcpbridge.mcp.models import ServerCatalog
from mcpbridge.runtime import BridgeRuntime

router = APIRouter(prefix="/api/v1", tags=["servers"])


def _as_response(record: ConnectionHealth) -> ConnectionHealthResponse:
    return ConnectionHealthResponse(
        server_id=record.server_id,
        connected=record.connected,
        last_error=record.last_error,
        last_error_category=record.last_error_category,
        retry_count=record.retry_count,
        last_retry_at=record.last_retry_at,
        last_checked_at=record.last_checked_at,
        total_failures=record.total_failures,
    )


def _catalog_response(catalog: ServerCatalog) -> CatalogResponse:
    return CatalogResponse(
        created_at=catalog.created_at,
        items=[
            CatalogEntryResponse(
                server_id=entry.server_id,
                name=entry.name,
                description=entry.description,
                status=entry.status,
                tools=[
                    ToolResponse(
                        name=tool.name,
                        description=tool.description,
                        input_schema=tool.input_schema,
                        examples=list(tool.examples),
                    )
                    for tool in entry.tools
                ],
                resources=list(entry.resources),
                last_updated=entry.last_updated,
            )
            for entry in catalog.entries
        ],
    )


@router.get("/servers", response_model=ServersResponse)
async def list_servers(runtime: BridgeRuntime = Depends(get_runtime)) -> ServersResponse:
    snapshot = runtime.manager.health_snapshot()
    return ServersResponse(items=[_as_response(record) for record in snapshot.values()])


@router.get("/servers/events", response_model=HealthEventsResponse)
async def list_server_events(
    server_id: str | None = None,
    limit: int | None = None,
    runtime: BridgeRuntime = Depends(get_runtime),
) -> HealthEventsResponse:
    events = runtime.manager.health.list_events(server_id=server_id, limit=limit)
    return HealthEventsResponse(
        items=[
            HealthEventResponse(
                server_id=event.server_id,
                connected=event.connected,
                reason=event.reason,
                timestamp=event.timestamp,
                error_category=event.error_category,
            )
            for event in events
        ]
    )


@router.post("/servers/health-check", response_model=ServersResponse)
async def check_servers(runtime: BridgeRuntime = Depends(get_runtime)) -> ServersResponse:
    snapshot = await runtime.manager.health_check()
    return ServersResponse(items=[_as_response(record) for record in snapshot.values()])


@router.post("/servers/{server_id}/reconnect", response_model=ConnectionHealthResponse)
async def reconnect_server(
    server_id: str,
    runtime: BridgeRuntime = Depends(get_runtime),
) -> ConnectionHealthResponse:
    try:
        record = await runtime.manager.reconnect_server(server_id)
    except ServerNotConnectedError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Server not found",
        ) from exc
    return _as_response(record)


@router.get("/catalog", response_model=CatalogResponse)
async def get_catalog(
    refresh: bool = False,
    runtime: BridgeRuntime = Depends(get_runtime),
) -> CatalogResponse:
    catalog = await runtime.discovery.get_catalog(refresh=refresh)
    runtime.router.update_catalog(catalog)
    return _catalog_response(catalog)
