"""Abstract base class for SSH backends.

All remote operations of a session (command execution, port forwarding,
service detection, file transfer) go through this interface, so the
orchestrator does not depend on how the transport is reached. The
current implementation drives the system ssh/scp clients over a
ControlMaster socket; an in-process implementation can be swapped in
without changing any caller.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable

from muxlink.domain.models import (
    CommandResult,
    DetectedService,
    SessionAddress,
    SessionEndpoint,
    TransferProgress,
    TransferResult,
    Tunnel,
)

logger = logging.getLogger(__name__)


class SSHBackend(ABC):
    """Abstract interface to one remote peer.

    Implementations never raise for remote or process failures; every
    operation returns a typed result instead.

    Example usage::

        backend = SystemSSHBackend(SessionEndpoint(user="root", host="db1"))
        if await backend.wait_for_live(max_wait=30):
            result = await backend.exec("uname -a")
            services = await backend.detect_all_services()
    """

    @property
    @abstractmethod
    def endpoint(self) -> SessionEndpoint:
        """The remote peer this backend talks to."""
        ...

    @property
    @abstractmethod
    def address(self) -> SessionAddress:
        """The shared channel address derived from the endpoint."""
        ...

    @property
    def failure_reason(self) -> str | None:
        """Extra detail on why the channel could not be reached, if known."""
        return None

    @abstractmethod
    async def is_connected(self) -> bool:
        """Whether the shared channel is currently live."""
        ...

    @abstractmethod
    async def wait_for_live(self, max_wait: float | None = None) -> bool:
        """Wait for the shared channel to become available.

        Args:
            max_wait: Maximum seconds to wait; None uses the configured value.

        Returns:
            True if the channel is live, False if the wait timed out.
        """
        ...

    @abstractmethod
    async def exec(self, command: str, timeout: float | None = None) -> CommandResult:
        """Execute a shell command on the peer.

        Returns:
            The exit code and output. ``exit_code == -1`` indicates a
            timeout or a failure to launch the client.
        """
        ...

    @abstractmethod
    async def start_port_forward(
        self, local_port: int, remote_host: str, remote_port: int, service_name: str = ""
    ) -> bool:
        """Start a local port forward and track it as an active tunnel."""
        ...

    @abstractmethod
    async def stop_port_forward(self, local_port: int, remote_host: str, remote_port: int) -> bool:
        """Stop a port forward. It leaves the active set even on failure."""
        ...

    @abstractmethod
    async def stop_all_port_forwards(self) -> None:
        """Best-effort stop of every active tunnel."""
        ...

    @abstractmethod
    async def establish_default_tunnels(self, services: list[DetectedService]) -> list[Tunnel]:
        """Forward the default ports of running services that have a mapping."""
        ...

    @property
    @abstractmethod
    def active_tunnels(self) -> list[Tunnel]:
        """Tunnels currently carried by this backend."""
        ...

    @abstractmethod
    async def detect_all_services(self) -> list[DetectedService]:
        """Run a full detection pass over the known service catalog."""
        ...

    @abstractmethod
    async def upload_file(
        self,
        local_path: str,
        remote_path: str,
        on_progress: Callable[[TransferProgress], None] | None = None,
    ) -> TransferResult:
        """Upload a local file or directory to the peer."""
        ...

    @abstractmethod
    async def download_file(
        self,
        remote_path: str,
        local_path: str,
        on_progress: Callable[[TransferProgress], None] | None = None,
    ) -> TransferResult:
        """Download a remote file or directory."""
        ...

    @abstractmethod
    def cleanup(self) -> None:
        """Terminate the shared channel. Fire-and-forget.

        Only called at full session teardown; an ordinary disconnect must
        leave the channel to the session that created it.
        """
        ...
