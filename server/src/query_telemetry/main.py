"""Application entrypoints for running the query telemetry service."""

from __future__ import annotations

import os
from typing import Any

import uvicorn
from fastapi import FastAPI

from app.core.logging import get_logger
from app.core.request_context import RequestIdMiddleware

from .database import bootstrap_database, database_path
from .routes import router as api_router
from .scheduler import monitoring_scheduler

logger = get_logger("query_telemetry")

SERVER_HOST_ENV_VAR = "QUERY_TELEMETRY_HOST"
SERVER_PORT_ENV_VAR = "QUERY_TELEMETRY_PORT"


def _read_port(env_var: str, default: int) -> int:
    raw_value = os.getenv(env_var)
    if not raw_value:
        return default
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {env_var!s}: {raw_value!r} (expected integer port)") from exc
    if not (0 <= value <= 65535):
        raise ValueError(f"Invalid value for {env_var!s}: {value!r} (expected 0-65535)")
    return value


app = FastAPI(
    title="Query Telemetry",
    description="Collects and normalizes statement statistics of monitored databases",
    version="0.1.0",
)
app.include_router(api_router)
app.add_middleware(RequestIdMiddleware)


@app.on_event("startup")
async def startup_event() -> None:
    bootstrap_database()
    resumed = monitoring_scheduler.recover_sessions()
    logger.info("service_started", database=str(database_path()), resumed_sessions=len(resumed))


@app.on_event("shutdown")
async def shutdown_event() -> None:
    monitoring_scheduler.shutdown()
    logger.info("service_stopped")


@app.get("/", tags=["query-telemetry"])
async def root() -> dict[str, Any]:
    return {
        "message": "Query telemetry service is running",
        "docs_url": "/docs",
        "health": "/api/v1/healthz",
    }


def run() -> None:
    """Production oriented entrypoint (host/port configurable via env)."""
    host = os.getenv(SERVER_HOST_ENV_VAR, "0.0.0.0")
    port = _read_port(SERVER_PORT_ENV_VAR, 8000)

    uvicorn.run("query_telemetry.main:app", host=host, port=port, factory=False)


__all__ = ["app", "run"]
