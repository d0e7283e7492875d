"""Per-session orchestrator: the state machine the UI layer talks to.

Ties together waiting for the shared channel, service detection,
default tunnel establishment, remote commands and file transfers.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> DETECTING -> CONNECTED
                         |
                         +-> DISCONNECTED (error_message set)

All mutable session state is owned by the orchestrator and mutated on
the event loop only. Each connect flow carries a generation number and
checks it before touching state, so a superseded flow can never
overwrite the current one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from muxlink.backend.base import SSHBackend
from muxlink.config.settings import Settings
from muxlink.domain.models import (
    CommandResult,
    DetectedService,
    SessionEndpoint,
    SessionSnapshot,
    SessionState,
    TransferProgress,
    TransferResult,
    Tunnel,
)

logger = logging.getLogger(__name__)

NOT_CONNECTED = "Not connected"

BackendFactory = Callable[[SessionEndpoint], SSHBackend]

# Panels the UI can offer, keyed by detected service name.
PANEL_BY_SERVICE = {
    "mysql": "database",
    "postgresql": "database",
    "redis": "redis",
    "docker": "docker",
}
CONNECTED_PANELS = ("monitor", "files", "logs")


class SessionOrchestrator:
    """Owns one remote session and exposes its operations to the UI."""

    def __init__(
        self,
        settings: Settings | None = None,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._backend_factory = backend_factory or self._system_backend
        self._state = SessionState.DISCONNECTED
        self._backend: SSHBackend | None = None
        self._endpoint: SessionEndpoint | None = None
        self._services: list[DetectedService] = []
        self._connected_host = ""
        self._status_message = ""
        self._error_message: str | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._generation = 0

    def _system_backend(self, endpoint: SessionEndpoint) -> SSHBackend:
        from muxlink.backend.system import SystemSSHBackend

        return SystemSSHBackend(endpoint, self._settings)

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state in (SessionState.CONNECTED, SessionState.DETECTING)

    @property
    def is_connecting(self) -> bool:
        return self._state == SessionState.CONNECTING

    @property
    def endpoint(self) -> SessionEndpoint | None:
        return self._endpoint

    @property
    def services(self) -> list[DetectedService]:
        return list(self._services)

    @property
    def tunnels(self) -> list[Tunnel]:
        return self._backend.active_tunnels if self._backend is not None else []

    @property
    def error_message(self) -> str | None:
        return self._error_message

    @property
    def status_message(self) -> str:
        return self._status_message

    @property
    def available_panels(self) -> list[str]:
        if not self.is_connected:
            return []
        panels = list(CONNECTED_PANELS)
        for service in self._services:
            panel = PANEL_BY_SERVICE.get(service.name)
            if panel is not None and panel not in panels:
                panels.append(panel)
        return panels

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            endpoint=self._endpoint,
            connected_host=self._connected_host,
            status_message=self._status_message,
            error_message=self._error_message,
            services=self.services,
            tunnels=self.tunnels,
            panels=self.available_panels,
        )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, endpoint: SessionEndpoint) -> asyncio.Task[None] | None:
        """Start connecting to ``endpoint``.

        Returns the task running the connect flow (await it to join the
        wait, detection and tunnel steps), or None when a connect is
        already in progress. Must be called from the event loop.
        """
        if self._state == SessionState.CONNECTING:
            logger.info("Already connecting to %s, ignoring connect(%s)", self._endpoint, endpoint)
            return None

        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()

        self._generation += 1
        previous = self._backend
        backend = self._backend_factory(endpoint)

        self._backend = backend
        self._endpoint = endpoint
        self._state = SessionState.CONNECTING
        self._status_message = "Connecting"
        self._error_message = None
        self._services = []
        self._connected_host = ""

        logger.info("Connecting to %s via %s", endpoint, backend.address.path)
        self._connect_task = asyncio.create_task(
            self._run_connect(self._generation, backend, previous)
        )
        return self._connect_task

    async def disconnect(self) -> None:
        """Leave the session. The shared channel itself stays up.

        Cancels a pending connect flow, stops all tunnels (best effort)
        and clears detected services and tunnel state.
        """
        self._generation += 1
        task, self._connect_task = self._connect_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        backend, self._backend = self._backend, None
        if backend is not None:
            try:
                await backend.stop_all_port_forwards()
            except Exception as e:
                logger.warning("Stopping tunnels for %s failed: %s", backend.endpoint, e)

        if self._endpoint is not None:
            logger.info("Disconnected from %s", self._endpoint)
        self._state = SessionState.DISCONNECTED
        self._status_message = "Disconnected"
        self._services = []
        self._connected_host = ""
        self._endpoint = None

    async def teardown(self) -> None:
        """Disconnect and close the shared channel.

        The one place that terminates the ControlMaster; call it only
        when the whole session, terminal included, is going away.
        """
        backend = self._backend
        await self.disconnect()
        if backend is not None:
            backend.cleanup()

    async def _run_connect(
        self, generation: int, backend: SSHBackend, previous: SSHBackend | None
    ) -> None:
        endpoint = backend.endpoint
        try:
            if previous is not None and previous.active_tunnels:
                await previous.stop_all_port_forwards()

            live = await backend.wait_for_live(self._settings.broker.max_wait)
            if not self._is_current(generation):
                return

            if not live:
                reason = backend.failure_reason
                self._state = SessionState.DISCONNECTED
                self._status_message = "Disconnected"
                self._error_message = f"Timed out waiting for the SSH session to {endpoint}"
                if reason:
                    self._error_message += f": {reason}"
                logger.warning("Connect to %s failed: %s", endpoint, self._error_message)
                return

            self._state = SessionState.CONNECTED
            self._connected_host = f"{endpoint.host}:{endpoint.port}"
            self._status_message = "Connected"
            logger.info("Connected to %s", endpoint)

            await self._detect_and_tunnel(generation, backend)
        except Exception as e:
            logger.error("Connect flow for %s failed: %s", endpoint, e)
            if self._is_current(generation):
                self._state = SessionState.DISCONNECTED
                self._status_message = "Disconnected"
                self._error_message = str(e)

    async def _detect_and_tunnel(self, generation: int, backend: SSHBackend) -> list[DetectedService]:
        self._state = SessionState.DETECTING
        self._status_message = "Detecting services"

        services = await backend.detect_all_services()
        if not self._is_current(generation):
            return services

        self._services = services
        self._state = SessionState.CONNECTED
        running = sum(1 for s in services if s.is_running)
        self._status_message = f"{len(services)} services detected, {running} running"

        if self._settings.tunnels.auto_establish:
            tunnels = await backend.establish_default_tunnels(services)
            if not self._is_current(generation):
                # Disconnected while forwarding; do not leave forwards behind.
                await backend.stop_all_port_forwards()
                return services
            if tunnels:
                logger.info(
                    "Established %d default tunnels: %s",
                    len(tunnels),
                    ", ".join(f"{t.service_name}@{t.local_port}" for t in tunnels),
                )
        return services

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    # ------------------------------------------------------------------
    # Operations available while connected
    # ------------------------------------------------------------------

    async def exec(self, command: str, timeout: float | None = None) -> CommandResult:
        if self._backend is None or not self.is_connected:
            return CommandResult(exit_code=-1, stdout=NOT_CONNECTED)
        return await self._backend.exec(command, timeout or self._settings.execution.default_timeout)

    async def refresh_services(self) -> list[DetectedService]:
        """Re-run detection and establish tunnels for newly running services."""
        if self._backend is None or not self.is_connected:
            logger.info("refresh_services() while disconnected, nothing to do")
            return []
        return await self._detect_and_tunnel(self._generation, self._backend)

    async def start_tunnel(
        self,
        local_port: int,
        remote_port: int,
        remote_host: str | None = None,
        service_name: str = "",
    ) -> bool:
        if self._backend is None or not self.is_connected:
            return False
        return await self._backend.start_port_forward(
            local_port, remote_host or self._settings.tunnels.remote_host, remote_port, service_name
        )

    async def stop_tunnel(self, local_port: int) -> bool:
        """Stop the active tunnel listening on ``local_port``."""
        if self._backend is None or not self.is_connected:
            return False
        for tunnel in self._backend.active_tunnels:
            if tunnel.local_port == local_port:
                return await self._backend.stop_port_forward(
                    tunnel.local_port, tunnel.remote_host, tunnel.remote_port
                )
        return False

    async def upload(
        self,
        local_path: str,
        remote_path: str,
        on_progress: Callable[[TransferProgress], None] | None = None,
    ) -> TransferResult:
        if self._backend is None or not self.is_connected:
            return TransferResult(success=False, error=NOT_CONNECTED)
        return await self._backend.upload_file(local_path, remote_path, on_progress)

    async def download(
        self,
        remote_path: str,
        local_path: str,
        on_progress: Callable[[TransferProgress], None] | None = None,
    ) -> TransferResult:
        if self._backend is None or not self.is_connected:
            return TransferResult(success=False, error=NOT_CONNECTED)
        return await self._backend.download_file(remote_path, local_path, on_progress)
