"""FastAPI app entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from mcpbridge.api.routes.servers import router as servers_router
from mcpbridge.api.routes.tools import router as tools_router
from mcpbridge.config import BridgeSettings, configure_logging, load_settings
from mcpbridge.runtime import BridgeRuntime


def create_app(
    settings: BridgeSettings | None = None,
    *,
    runtime_factory: Callable[[BridgeSettings], BridgeRuntime] = BridgeRuntime,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        resolved = settings or load_settings()
        configure_logging(resolved.log_level)
        runtime = runtime_factory(resolved)
        await runtime.start()
        app.state.runtime = runtime
        try:
            yield
        finally:
            await runtime.stop()
            app.state.runtime = None

    app = FastAPI(title="mcpbridge API", version="0.2.0", lifespan=lifespan)
    app.include_router(servers_router)
    app.include_router(tools_router)

    @app.get("/api/v1/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


def run() -> None:
    uvicorn.run(
        "mcpbridge.api.app:create_app",
        factory=True,
        host="127.0.0.1",
        port=8000,
        reload=False,
    )
