"""FastAPI health endpoints for liveness and readiness probes."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import HealthStatus, ListenerStatus

if TYPE_CHECKING:
    from .service import ListenerService


def create_health_app(service: ListenerService) -> FastAPI:
    """Build a minimal FastAPI app with ``/health`` and ``/ready`` routes.

    ``/health`` reports the service status plus the listener's connection
    and coordinator details; ``/ready`` is 200 only while the mailbox
    connection is up and the service is running.
    """
    app = FastAPI(title=f"{service.config.name} health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        status = HealthStatus(
            name=service.config.name,
            status=service.status,
            uptime_seconds=time.monotonic() - service.start_time,
            details=service.listener.health_details(),
        )
        code = 200 if service.status in (ListenerStatus.RUNNING, ListenerStatus.STARTING) else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = service.status == ListenerStatus.RUNNING and service.listener.connected
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    return app
