"""Shared API dependency providers."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from mcpbridge.runtime import BridgeRuntime


def get_runtime(request: Request) -> BridgeRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Runtime not started",
        )
    return runtime
