"""FastAPI HTTP server exposing a session orchestrator to a local UI.

Endpoints:

    GET    /health                 -> {"status": "ok", ...}
    GET    /session                -> SessionSnapshot
    POST   /session/connect        <- {"user": "root", "host": "db1", "port": 22}
    POST   /session/disconnect
    POST   /session/teardown       (also closes the shared channel)
    POST   /exec                   <- {"command": "uptime", "timeout": 30}
    GET    /services
    POST   /services/refresh
    GET    /tunnels
    POST   /tunnels                <- {"local_port": 18080, "remote_port": 8080}
    DELETE /tunnels/{local_port}
    POST   /transfers/upload       <- {"local_path": "...", "remote_path": "..."}
    POST   /transfers/download     <- {"remote_path": "...", "local_path": "..."}

Operations that need a session answer 409 while disconnected.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from muxlink.domain.models import (
    CommandResult,
    DetectedService,
    SessionEndpoint,
    SessionSnapshot,
    TransferProgress,
    TransferResult,
    Tunnel,
)
from muxlink.session.orchestrator import NOT_CONNECTED, SessionOrchestrator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class ConnectRequest(BaseModel):
    user: str = Field(min_length=1)
    host: str = Field(min_length=1)
    port: int = Field(default=22, ge=1, le=65535)


class ExecRequest(BaseModel):
    command: str = Field(min_length=1, description="Shell command to run on the peer")
    timeout: float | None = Field(default=None, gt=0)


class TunnelRequest(BaseModel):
    local_port: int = Field(ge=1, le=65535)
    remote_port: int = Field(ge=1, le=65535)
    remote_host: str | None = Field(default=None)
    service_name: str = Field(default="")


class UploadRequest(BaseModel):
    local_path: str = Field(min_length=1)
    remote_path: str = Field(min_length=1)


class DownloadRequest(BaseModel):
    remote_path: str = Field(min_length=1)
    local_path: str = Field(min_length=1)


class HealthResponse(BaseModel):
    status: str = "ok"
    state: str = "disconnected"
    connected: bool = False


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(orchestrator: SessionOrchestrator | None = None) -> FastAPI:
    """Create the control API application.

    Args:
        orchestrator: Optional pre-configured orchestrator (for testing).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.orchestrator is None:
            app.state.orchestrator = SessionOrchestrator()
        logger.info("Control endpoint started")
        yield
        # The terminal keeps owning the shared channel after we exit.
        await app.state.orchestrator.disconnect()
        logger.info("Control endpoint stopped")

    app = FastAPI(
        title="muxlink",
        description="Local control API for an SSH session shared with a terminal",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    def session() -> SessionOrchestrator:
        return app.state.orchestrator

    def connected_session() -> SessionOrchestrator:
        orch = session()
        if not orch.is_connected:
            raise HTTPException(status_code=409, detail=NOT_CONNECTED)
        return orch

    @app.get("/health")
    async def health_check() -> HealthResponse:
        orch = session()
        return HealthResponse(state=orch.state.value, connected=orch.is_connected)

    @app.get("/session")
    async def get_session() -> SessionSnapshot:
        return session().snapshot()

    @app.post("/session/connect", status_code=202)
    async def connect(request: ConnectRequest) -> SessionSnapshot:
        orch = session()
        endpoint = SessionEndpoint(user=request.user, host=request.host, port=request.port)
        if orch.connect(endpoint) is None:
            raise HTTPException(status_code=409, detail="Already connecting")
        return orch.snapshot()

    @app.post("/session/disconnect")
    async def disconnect() -> SessionSnapshot:
        orch = session()
        await orch.disconnect()
        return orch.snapshot()

    @app.post("/session/teardown")
    async def teardown() -> SessionSnapshot:
        orch = session()
        await orch.teardown()
        return orch.snapshot()

    @app.post("/exec")
    async def run_command(request: ExecRequest) -> CommandResult:
        return await connected_session().exec(request.command, request.timeout)

    @app.get("/services")
    async def list_services() -> list[DetectedService]:
        return session().services

    @app.post("/services/refresh")
    async def refresh_services() -> list[DetectedService]:
        return await connected_session().refresh_services()

    @app.get("/tunnels")
    async def list_tunnels() -> list[Tunnel]:
        return session().tunnels

    @app.post("/tunnels", status_code=201)
    async def start_tunnel(request: TunnelRequest) -> list[Tunnel]:
        orch = connected_session()
        started = await orch.start_tunnel(
            request.local_port, request.remote_port, request.remote_host, request.service_name
        )
        if not started:
            raise HTTPException(
                status_code=502, detail=f"Could not forward local port {request.local_port}"
            )
        return orch.tunnels

    @app.delete("/tunnels/{local_port}")
    async def stop_tunnel(local_port: int) -> list[Tunnel]:
        orch = connected_session()
        if not any(t.local_port == local_port for t in orch.tunnels):
            raise HTTPException(status_code=404, detail=f"No tunnel on local port {local_port}")
        await orch.stop_tunnel(local_port)
        return orch.tunnels

    @app.post("/transfers/upload")
    async def upload(request: UploadRequest) -> TransferResult:
        return await connected_session().upload(
            request.local_path, request.remote_path, on_progress=_log_progress
        )

    @app.post("/transfers/download")
    async def download(request: DownloadRequest) -> TransferResult:
        return await connected_session().download(
            request.remote_path, request.local_path, on_progress=_log_progress
        )

    return app


def _log_progress(progress: TransferProgress) -> None:
    logger.debug("Transfer %d%% at %s, eta %s", progress.percent, progress.speed, progress.eta)


def serve(orchestrator: SessionOrchestrator, host: str = "127.0.0.1", port: int = 8765) -> None:
    """Run the control endpoint until interrupted."""
    uvicorn.run(create_app(orchestrator), host=host, port=port)
