"""Parallel remote service detection over the shared channel.

A single generic routine walks one :class:`ProbeSpec` row: existence,
version, ordered liveness checks, and the containerized fallback when
the native binary is absent. All rows run concurrently, so a full pass
costs as much as the slowest probe rather than the sum of them.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shlex

from muxlink.broker.broker import ConnectionBroker
from muxlink.detect.probes import DEFAULT_PROBES, ProbeSpec, StatusCheck
from muxlink.domain.models import (
    CommandResult,
    DetectedService,
    ServiceStatus,
    SessionAddress,
)

logger = logging.getLogger(__name__)


def parse_version(output: str) -> str:
    """Extract a version string from command output.

    Returns the first whitespace-delimited token containing both a digit
    and a ``.``; otherwise the first line of the output, or ``"unknown"``
    when the output is empty.

    >>> parse_version("mysql  Ver 8.0.35 for Linux on x86_64")
    '8.0.35'
    """
    for token in output.split():
        token = token.strip(",;()")
        if "." in token and any(ch.isdigit() for ch in token):
            return token
    lines = output.strip().splitlines()
    return lines[0].strip() if lines else "unknown"


def parse_published_port(ports: str, container_port: int) -> int | None:
    """Find the host port published for ``container_port``.

    Matches mappings like ``0.0.0.0:13306->3306/tcp``.
    """
    match = re.search(rf"(\d+)->{container_port}\b", ports)
    return int(match.group(1)) if match else None


class ServiceDetector:
    """Runs the probe catalog against a session address."""

    def __init__(
        self,
        broker: ConnectionBroker,
        probes: tuple[ProbeSpec, ...] = DEFAULT_PROBES,
        probe_timeout: float = 10.0,
        container_timeout: float = 15.0,
    ) -> None:
        self._broker = broker
        self._probes = probes
        self._probe_timeout = probe_timeout
        self._container_timeout = container_timeout

    @property
    def probes(self) -> tuple[ProbeSpec, ...]:
        return self._probes

    async def detect_all(self, address: SessionAddress) -> list[DetectedService]:
        """Run every probe concurrently and return the services found.

        Absent services are omitted. Results follow catalog order.
        """
        results = await asyncio.gather(
            *(self._probe_isolated(address, spec) for spec in self._probes)
        )
        services = [service for service in results if service is not None]
        logger.info(
            "Detected %d services on %s (%d running)",
            len(services),
            address.endpoint,
            sum(1 for s in services if s.is_running),
        )
        return services

    async def probe(self, address: SessionAddress, spec: ProbeSpec) -> DetectedService | None:
        """Probe one service type. Returns None when it is absent."""
        exists = await self._exec(address, spec.exists_command)
        if exists.exit_code != 0:
            if spec.container is None:
                return None
            return await self._probe_container(address, spec)

        version_result = await self._exec(address, spec.version_command)
        version = parse_version(version_result.stdout)
        status = await self._check_status(address, spec.status_checks)
        return DetectedService(
            name=spec.name, version=version, status=status, port=spec.default_port
        )

    async def _probe_isolated(
        self, address: SessionAddress, spec: ProbeSpec
    ) -> DetectedService | None:
        try:
            return await self.probe(address, spec)
        except Exception as e:
            logger.warning("Probe %s failed, treating as absent: %s", spec.name, e)
            return None

    async def _check_status(
        self, address: SessionAddress, checks: tuple[StatusCheck, ...]
    ) -> ServiceStatus:
        for check in checks:
            result = await self._exec(address, check.command)
            if result.exit_code == 0 and check.expect in result.stdout:
                return ServiceStatus.RUNNING
        return ServiceStatus.STOPPED

    async def _probe_container(
        self, address: SessionAddress, spec: ProbeSpec
    ) -> DetectedService | None:
        container = spec.container
        listing = await self._exec(address, container.list_command, self._container_timeout)
        lines = listing.stdout.strip().splitlines()
        if listing.exit_code != 0 or not lines:
            return None

        parts = [part.strip() for part in lines[0].split("|")]
        if len(parts) < 2 or not parts[0]:
            return None
        container_id, image = parts[0], parts[1]
        ports = parts[2] if len(parts) >= 3 else ""

        version_result = await self._exec(
            address, container.version_command.format(container_id=shlex.quote(container_id))
        )
        if version_result.exit_code == 0 and version_result.stdout.strip():
            version = parse_version(version_result.stdout)
        else:
            version = parse_version(image.rpartition(":")[2] if ":" in image else image)

        port = parse_published_port(ports, spec.default_port) or spec.default_port
        logger.debug("Found %s in container %s (%s)", spec.name, container_id, image)
        return DetectedService(
            name=spec.name, version=version, status=ServiceStatus.RUNNING, port=port
        )

    async def _exec(
        self, address: SessionAddress, command: str, timeout: float | None = None
    ) -> CommandResult:
        return await self._broker.exec(address, command, timeout or self._probe_timeout)
