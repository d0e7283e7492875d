"""Local port forward lifecycle over the shared channel.

Forwards are added and cancelled with ``ssh -O forward`` / ``ssh -O
cancel`` against the existing master; no new authenticated connection
is ever opened. The manager keeps the set of active tunnels for one
session, keyed by local port.
"""

from __future__ import annotations

import asyncio
import logging

from muxlink.broker.broker import ConnectionBroker
from muxlink.config.settings import DEFAULT_TUNNEL_MAPPINGS
from muxlink.domain.models import DetectedService, SessionAddress, Tunnel

logger = logging.getLogger(__name__)


class PortForwardManager:
    """Starts, stops and tracks tunnels for one session.

    Invariants: a local port appears at most once among active tunnels,
    and a stopped tunnel is always removed from the active set, even
    when the cancel operation fails.
    """

    def __init__(
        self,
        broker: ConnectionBroker,
        mappings: dict[str, tuple[int, int]] | None = None,
        remote_host: str = "127.0.0.1",
        timeout: float = 10.0,
    ) -> None:
        self._broker = broker
        self._mappings = dict(DEFAULT_TUNNEL_MAPPINGS if mappings is None else mappings)
        self._remote_host = remote_host
        self._timeout = timeout
        self._active: dict[int, Tunnel] = {}

    @property
    def active_tunnels(self) -> list[Tunnel]:
        return list(self._active.values())

    @property
    def mappings(self) -> dict[str, tuple[int, int]]:
        return dict(self._mappings)

    def find(self, service_name: str) -> Tunnel | None:
        for tunnel in self._active.values():
            if tunnel.service_name == service_name:
                return tunnel
        return None

    async def start(
        self,
        address: SessionAddress,
        local_port: int,
        remote_host: str,
        remote_port: int,
        service_name: str = "",
    ) -> bool:
        """Add a forward to the master and record it on success."""
        if local_port in self._active:
            logger.warning("Local port %d already forwarded, not starting another", local_port)
            return False

        tunnel = Tunnel(
            service_name=service_name,
            local_port=local_port,
            remote_host=remote_host,
            remote_port=remote_port,
        )
        result = await self._broker.control(address, "forward", "-L", tunnel.spec, timeout=self._timeout)
        if result.exit_code != 0:
            logger.warning("Port forward %s failed: %s", tunnel.spec, result.stdout or result.exit_code)
            return False

        # A concurrent start may have claimed the port while we waited.
        if local_port in self._active:
            return False
        self._active[local_port] = tunnel
        logger.info("Port forward started: 127.0.0.1:%d -> %s:%d", local_port, remote_host, remote_port)
        return True

    async def stop(
        self,
        address: SessionAddress,
        local_port: int,
        remote_host: str,
        remote_port: int,
    ) -> bool:
        """Cancel a forward. The tunnel leaves the active set regardless."""
        self._active.pop(local_port, None)
        spec = f"{local_port}:{remote_host}:{remote_port}"
        try:
            result = await self._broker.control(address, "cancel", "-L", spec, timeout=self._timeout)
        except Exception as e:
            logger.warning("Cancelling port forward %s raised: %s", spec, e)
            return False
        if result.exit_code != 0:
            logger.warning("Cancelling port forward %s failed: %s", spec, result.stdout or result.exit_code)
            return False
        logger.info("Port forward stopped: 127.0.0.1:%d", local_port)
        return True

    async def stop_all(self, address: SessionAddress) -> None:
        """Best-effort cancel of every active tunnel; bookkeeping is cleared."""
        tunnels = self.active_tunnels
        self._active.clear()
        if not tunnels:
            return
        await asyncio.gather(
            *(self.stop(address, t.local_port, t.remote_host, t.remote_port) for t in tunnels)
        )

    async def auto_establish(
        self, address: SessionAddress, services: list[DetectedService]
    ) -> list[Tunnel]:
        """Forward the default ports of every running service with a mapping.

        Returns the tunnels established by this call. Failures are logged
        and omitted; services whose default local port is already
        forwarded are skipped.
        """
        established: list[Tunnel] = []
        for service in services:
            if not service.is_running:
                continue
            mapping = self._mappings.get(service.name)
            if mapping is None:
                continue
            local_port, remote_port = mapping
            if local_port in self._active:
                continue
            if await self.start(address, local_port, self._remote_host, remote_port, service.name):
                established.append(self._active[local_port])
            else:
                logger.warning("Could not establish default tunnel for %s", service.name)
        return established
