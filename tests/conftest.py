"""Shared test fixtures for the muxlink test suite.

Provides common fixtures used across unit tests: endpoints and their
addresses, fast settings, mock executors and brokers, and an in-memory
SSH backend for orchestrator tests.
"""

from __future__ import annotations

from typing import Callable
from unittest.mock import AsyncMock

import pytest

from muxlink.backend.base import SSHBackend
from muxlink.broker.broker import ConnectionBroker, address_for
from muxlink.config.settings import BrokerConfig, Settings, SSHConfig, TunnelConfig
from muxlink.domain.models import (
    CommandResult,
    DetectedService,
    ServiceStatus,
    SessionAddress,
    SessionEndpoint,
    TransferProgress,
    TransferResult,
    Tunnel,
)
from muxlink.process.executor import ProcessExecutor


# ---------------------------------------------------------------------------
# Identity Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def endpoint() -> SessionEndpoint:
    """A sample remote peer."""
    return SessionEndpoint(user="deploy", host="db1.example.com", port=2222)


@pytest.fixture
def address(endpoint: SessionEndpoint, tmp_path) -> SessionAddress:
    """The address of ``endpoint`` inside a temporary control directory."""
    return address_for(endpoint, str(tmp_path), "muxlink-test")


# ---------------------------------------------------------------------------
# Settings Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fast_settings(tmp_path) -> Settings:
    """Settings with short broker intervals and a temporary control dir."""
    return Settings(
        ssh=SSHConfig(
            ssh_path="/usr/bin/ssh",
            scp_path="/usr/bin/scp",
            control_dir=str(tmp_path),
            control_prefix="muxlink-test",
        ),
        broker=BrokerConfig(
            max_wait=1.0, check_interval=0.01, spawn_delay=0.5, check_timeout=0.5
        ),
        tunnels=TunnelConfig(),
    )


# ---------------------------------------------------------------------------
# Executor / Broker Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_executor() -> AsyncMock:
    """A ProcessExecutor whose run() succeeds with empty output."""
    executor = AsyncMock(spec=ProcessExecutor)
    executor.run.return_value = CommandResult(exit_code=0, stdout="")
    return executor


def scripted_exec(responses: dict[str, CommandResult]) -> Callable:
    """Build a broker.exec side effect answering by command substring.

    Commands that match no key fail with exit code 1.
    """

    async def _exec(address, command, timeout=None) -> CommandResult:
        for fragment, result in responses.items():
            if fragment in command:
                return result
        return CommandResult(exit_code=1, stdout="")

    return _exec


@pytest.fixture
def mock_broker() -> AsyncMock:
    """A ConnectionBroker with all async methods stubbed."""
    broker = AsyncMock(spec=ConnectionBroker)
    broker.exec.return_value = CommandResult(exit_code=1, stdout="")
    broker.control.return_value = CommandResult(exit_code=0, stdout="")
    broker.client_options.return_value = ["-o", "ControlPath=/tmp/test"]
    return broker


# ---------------------------------------------------------------------------
# Backend Fixtures
# ---------------------------------------------------------------------------


class FakeBackend(SSHBackend):
    """In-memory backend driven by plain attributes.

    ``live_after`` is the number of wait polls before the channel
    counts as live; ``None`` means it never does.
    """

    def __init__(
        self,
        endpoint: SessionEndpoint,
        services: list[DetectedService] | None = None,
        live_after: int | None = 0,
        failing_stops: set[int] | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._address = address_for(endpoint)
        self.services = services or []
        self.live_after = live_after
        self.failing_stops = failing_stops or set()
        self.polls = 0
        self.cleanup_calls = 0
        self.commands: list[str] = []
        self._tunnels: dict[int, Tunnel] = {}

    @property
    def endpoint(self) -> SessionEndpoint:
        return self._endpoint

    @property
    def address(self) -> SessionAddress:
        return self._address

    async def is_connected(self) -> bool:
        return self.live_after is not None and self.polls >= self.live_after

    async def wait_for_live(self, max_wait: float | None = None) -> bool:
        while True:
            self.polls += 1
            if self.live_after is not None and self.polls >= self.live_after:
                return True
            if self.live_after is None:
                return False

    async def exec(self, command: str, timeout: float | None = None) -> CommandResult:
        self.commands.append(command)
        return CommandResult(exit_code=0, stdout=f"ran {command}")

    async def start_port_forward(
        self, local_port: int, remote_host: str, remote_port: int, service_name: str = ""
    ) -> bool:
        if local_port in self._tunnels:
            return False
        self._tunnels[local_port] = Tunnel(
            service_name=service_name,
            local_port=local_port,
            remote_host=remote_host,
            remote_port=remote_port,
        )
        return True

    async def stop_port_forward(self, local_port: int, remote_host: str, remote_port: int) -> bool:
        self._tunnels.pop(local_port, None)
        return local_port not in self.failing_stops

    async def stop_all_port_forwards(self) -> None:
        for tunnel in list(self._tunnels.values()):
            await self.stop_port_forward(tunnel.local_port, tunnel.remote_host, tunnel.remote_port)

    async def establish_default_tunnels(self, services: list[DetectedService]) -> list[Tunnel]:
        mappings = {"mysql": (13306, 3306), "redis": (16379, 6379), "postgresql": (15432, 5432)}
        established = []
        for service in services:
            if service.is_running and service.name in mappings:
                local_port, remote_port = mappings[service.name]
                if await self.start_port_forward(local_port, "127.0.0.1", remote_port, service.name):
                    established.append(self._tunnels[local_port])
        return established

    @property
    def active_tunnels(self) -> list[Tunnel]:
        return list(self._tunnels.values())

    async def detect_all_services(self) -> list[DetectedService]:
        return list(self.services)

    async def upload_file(
        self,
        local_path: str,
        remote_path: str,
        on_progress: Callable[[TransferProgress], None] | None = None,
    ) -> TransferResult:
        if on_progress is not None:
            on_progress(TransferProgress(percent=100, size="1KB", speed="1KB/s", eta="00:00"))
        return TransferResult(success=True)

    async def download_file(
        self,
        remote_path: str,
        local_path: str,
        on_progress: Callable[[TransferProgress], None] | None = None,
    ) -> TransferResult:
        return TransferResult(success=True)

    def cleanup(self) -> None:
        self.cleanup_calls += 1


@pytest.fixture
def redis_running() -> DetectedService:
    return DetectedService(name="redis", version="7.2.4", status=ServiceStatus.RUNNING, port=6379)


@pytest.fixture
def fake_backend() -> type[FakeBackend]:
    """The in-memory backend class, for tests that build their own."""
    return FakeBackend


@pytest.fixture
def scripted() -> Callable[[dict[str, CommandResult]], Callable]:
    """The :func:`scripted_exec` side effect builder."""
    return scripted_exec
