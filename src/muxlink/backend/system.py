"""SSH backend over the system ssh/scp clients and a ControlMaster socket.

A thin composition of the broker, detector, forward manager and
transfer engine, all sharing one process executor and one session
address.
"""

from __future__ import annotations

import logging
from typing import Callable

from muxlink.backend.base import SSHBackend
from muxlink.broker.broker import ConnectionBroker
from muxlink.config.settings import Settings
from muxlink.detect.detector import ServiceDetector
from muxlink.domain.models import (
    CommandResult,
    DetectedService,
    SessionAddress,
    SessionEndpoint,
    TransferProgress,
    TransferResult,
    Tunnel,
)
from muxlink.process.executor import ProcessExecutor
from muxlink.process.resolver import resolve_client
from muxlink.transfer.engine import TransferEngine
from muxlink.tunnels.forward import PortForwardManager

logger = logging.getLogger(__name__)


class SystemSSHBackend(SSHBackend):
    """Drives ``ssh``/``scp`` through the terminal session's ControlMaster."""

    def __init__(
        self,
        endpoint: SessionEndpoint,
        settings: Settings | None = None,
        executor: ProcessExecutor | None = None,
    ) -> None:
        settings = settings or Settings()
        self._endpoint = endpoint
        self._settings = settings
        self._executor = executor or ProcessExecutor(kill_grace=settings.execution.kill_grace)

        ssh_path = resolve_client(settings.ssh.ssh_path, "ssh", "/usr/bin/ssh")
        scp_path = resolve_client(settings.ssh.scp_path, "scp", "/usr/bin/scp")

        self._broker = ConnectionBroker(
            self._executor,
            ssh_path=ssh_path,
            ssh_config=settings.ssh,
            broker_config=settings.broker,
            execution_config=settings.execution,
        )
        self._address = self._broker.address_for(endpoint)
        self._detector = ServiceDetector(
            self._broker,
            probe_timeout=settings.execution.probe_timeout,
            container_timeout=settings.execution.container_timeout,
        )
        self._forwards = PortForwardManager(
            self._broker,
            mappings=settings.tunnels.mappings,
            remote_host=settings.tunnels.remote_host,
            timeout=settings.execution.control_timeout,
        )
        self._transfers = TransferEngine(
            self._executor,
            self._broker,
            scp_path=scp_path,
            timeout=settings.transfer.timeout,
            recursive=settings.transfer.recursive,
        )
        logger.debug("Backend for %s using %s (ssh=%s)", endpoint, self._address.path, ssh_path)

    @property
    def endpoint(self) -> SessionEndpoint:
        return self._endpoint

    @property
    def address(self) -> SessionAddress:
        return self._address

    @property
    def broker(self) -> ConnectionBroker:
        return self._broker

    @property
    def failure_reason(self) -> str | None:
        return self._broker.last_spawn_error

    async def is_connected(self) -> bool:
        return await self._broker.is_live(self._address)

    async def wait_for_live(self, max_wait: float | None = None) -> bool:
        return await self._broker.wait_for_live(self._address, max_wait=max_wait)

    async def exec(self, command: str, timeout: float | None = None) -> CommandResult:
        return await self._broker.exec(self._address, command, timeout)

    async def start_port_forward(
        self, local_port: int, remote_host: str, remote_port: int, service_name: str = ""
    ) -> bool:
        return await self._forwards.start(
            self._address, local_port, remote_host, remote_port, service_name
        )

    async def stop_port_forward(self, local_port: int, remote_host: str, remote_port: int) -> bool:
        return await self._forwards.stop(self._address, local_port, remote_host, remote_port)

    async def stop_all_port_forwards(self) -> None:
        await self._forwards.stop_all(self._address)

    async def establish_default_tunnels(self, services: list[DetectedService]) -> list[Tunnel]:
        return await self._forwards.auto_establish(self._address, services)

    @property
    def active_tunnels(self) -> list[Tunnel]:
        return self._forwards.active_tunnels

    async def detect_all_services(self) -> list[DetectedService]:
        return await self._detector.detect_all(self._address)

    async def upload_file(
        self,
        local_path: str,
        remote_path: str,
        on_progress: Callable[[TransferProgress], None] | None = None,
    ) -> TransferResult:
        return await self._transfers.upload(self._address, local_path, remote_path, on_progress)

    async def download_file(
        self,
        remote_path: str,
        local_path: str,
        on_progress: Callable[[TransferProgress], None] | None = None,
    ) -> TransferResult:
        return await self._transfers.download(self._address, remote_path, local_path, on_progress)

    def cleanup(self) -> None:
        self._broker.cleanup(self._address)
