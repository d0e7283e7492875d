"""Connection liveness broker for the shared ControlMaster channel.

The terminal's ssh process owns the authenticated connection and creates
a multiplexing socket at a path derived from ``(user, host, port)``.
The broker derives that same path, polls it for liveness, runs commands
and control operations through it, and as a fallback spawns its own
background master when the terminal session did not request
multiplexing.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess

from muxlink.config.settings import BrokerConfig, ExecutionConfig, SSHConfig
from muxlink.domain.models import (
    CommandResult,
    Liveness,
    ProcessOutcome,
    SessionAddress,
    SessionEndpoint,
)
from muxlink.process.executor import ProcessExecutor

logger = logging.getLogger(__name__)


def address_for(
    endpoint: SessionEndpoint,
    control_dir: str = "/tmp",
    control_prefix: str = "muxlink-ssh",
) -> SessionAddress:
    """Derive the session address for an endpoint.

    Pure and deterministic: identical triples always yield the same path
    and distinct ports on one host yield distinct paths. Whatever
    establishes the terminal session must configure ssh's ControlPath
    with this same formula.
    """
    name = f"{control_prefix}-{endpoint.user}@{endpoint.host}:{endpoint.port}"
    return SessionAddress(endpoint=endpoint, path=os.path.join(control_dir, name))


class ConnectionBroker:
    """Routes ssh invocations through an existing ControlMaster socket.

    Example usage::

        broker = ConnectionBroker(ProcessExecutor(), ssh_path="/usr/bin/ssh")
        address = broker.address_for(SessionEndpoint(user="root", host="db1"))
        if await broker.wait_for_live(address, max_wait=30):
            result = await broker.exec(address, "uname -a")
    """

    def __init__(
        self,
        executor: ProcessExecutor,
        ssh_path: str = "/usr/bin/ssh",
        ssh_config: SSHConfig | None = None,
        broker_config: BrokerConfig | None = None,
        execution_config: ExecutionConfig | None = None,
    ) -> None:
        self._executor = executor
        self._ssh_path = ssh_path
        self._ssh = ssh_config or SSHConfig()
        self._config = broker_config or BrokerConfig()
        self._execution = execution_config or ExecutionConfig()
        self._last_spawn_error: str | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def ssh_path(self) -> str:
        return self._ssh_path

    @property
    def last_spawn_error(self) -> str | None:
        """Why the most recent background master spawn failed, if it did."""
        return self._last_spawn_error

    def address_for(self, endpoint: SessionEndpoint) -> SessionAddress:
        return address_for(endpoint, self._ssh.control_dir, self._ssh.control_prefix)

    # ------------------------------------------------------------------
    # Argument builders
    # ------------------------------------------------------------------

    def client_options(self, address: SessionAddress) -> list[str]:
        """Options shared by every multiplexed client invocation."""
        return [
            "-o", f"ControlPath={address.path}",
            "-o", f"StrictHostKeyChecking={'yes' if self._ssh.strict_host_key_checking else 'no'}",
            "-o", f"BatchMode={'yes' if self._ssh.batch_mode else 'no'}",
        ]

    def master_options(self, address: SessionAddress) -> list[str]:
        """Options that make an ssh invocation create the shared socket.

        The terminal session adds these to its own ssh command line.
        """
        return [
            "-o", "ControlMaster=auto",
            "-o", f"ControlPath={address.path}",
            "-o", f"ControlPersist={self._ssh.control_persist}",
        ]

    def _target(self, address: SessionAddress) -> list[str]:
        return ["-p", str(address.endpoint.port), address.endpoint.destination]

    # ------------------------------------------------------------------
    # Commands and control operations
    # ------------------------------------------------------------------

    async def exec(
        self, address: SessionAddress, command: str, timeout: float | None = None
    ) -> CommandResult:
        """Run a remote shell command over the shared channel."""
        args = [*self.client_options(address), *self._target(address), command]
        return await self._executor.run(
            self._ssh_path, args, timeout or self._execution.default_timeout
        )

    async def control(
        self,
        address: SessionAddress,
        operation: str,
        *extra: str,
        timeout: float | None = None,
    ) -> CommandResult:
        """Send a ``-O`` control operation (check, forward, cancel, exit)."""
        args = [
            "-o", f"ControlPath={address.path}",
            "-O", operation,
            *extra,
            *self._target(address),
        ]
        logger.debug("Control %s on %s", operation, address.path)
        return await self._executor.run(
            self._ssh_path, args, timeout or self._execution.control_timeout
        )

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def probe(self, address: SessionAddress) -> Liveness:
        """Classify the address as absent, stale or live."""
        if not os.path.exists(address.path):
            return Liveness.ABSENT
        result = await self.control(address, "check", timeout=self._config.check_timeout)
        if result.exit_code == 0:
            return Liveness.LIVE
        logger.debug("Control socket %s is stale: %s", address.path, result.stdout)
        return Liveness.STALE

    async def is_live(self, address: SessionAddress) -> bool:
        return await self.probe(address) == Liveness.LIVE

    async def wait_for_live(
        self,
        address: SessionAddress,
        max_wait: float | None = None,
        check_interval: float | None = None,
        spawn_delay: float | None = None,
    ) -> bool:
        """Poll until the shared channel is live or ``max_wait`` elapses.

        If the socket still has not appeared after ``spawn_delay`` seconds,
        one background master is spawned (non-interactive auth only) and
        polling continues on the same address. Returns within ``max_wait``
        plus scheduling slack.
        """
        max_wait = self._config.max_wait if max_wait is None else max_wait
        check_interval = self._config.check_interval if check_interval is None else check_interval
        spawn_delay = self._config.spawn_delay if spawn_delay is None else spawn_delay

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + max_wait
        spawn_task: asyncio.Task | None = None
        self._last_spawn_error = None

        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    status = await asyncio.wait_for(self.probe(address), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                if status == Liveness.LIVE:
                    logger.info(
                        "Shared channel %s live after %.1fs", address.path, loop.time() - started
                    )
                    return True

                if (
                    spawn_task is None
                    and self._config.spawn_master
                    and status == Liveness.ABSENT
                    and loop.time() - started >= spawn_delay
                ):
                    spawn_task = asyncio.create_task(self.spawn_master(address))

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(check_interval, remaining))
        finally:
            if spawn_task is not None and not spawn_task.done():
                spawn_task.cancel()
                try:
                    await spawn_task
                except asyncio.CancelledError:
                    pass

        logger.warning("Shared channel %s not live after %.1fs", address.path, max_wait)
        return False

    async def spawn_master(self, address: SessionAddress) -> ProcessOutcome:
        """Start a background ControlMaster for the address.

        Uses ``BatchMode=yes``, so it only succeeds with key or agent
        authentication. A password-only host fails fast; the reason is
        kept in :attr:`last_spawn_error`.
        """
        args = [
            *self.master_options(address),
            "-o", f"StrictHostKeyChecking={'yes' if self._ssh.strict_host_key_checking else 'no'}",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self._ssh.connect_timeout}",
            "-N", "-f",
            *self._target(address),
        ]
        logger.info("Spawning background ControlMaster for %s", address.endpoint)
        outcome = await self._executor.detach(self._ssh_path, args, self._config.spawn_timeout)

        if outcome.succeeded:
            self._last_spawn_error = None
        elif outcome.launch_error is not None:
            self._last_spawn_error = outcome.launch_error
        elif outcome.timed_out:
            self._last_spawn_error = f"Background master timed out after {self._config.spawn_timeout:.0f}s"
        else:
            self._last_spawn_error = outcome.stderr.strip() or f"ssh exited with code {outcome.exit_code}"

        if self._last_spawn_error is not None:
            logger.warning(
                "Background ControlMaster for %s failed: %s", address.endpoint, self._last_spawn_error
            )
        return outcome

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup(self, address: SessionAddress) -> None:
        """Ask the master to exit. Fire-and-forget, never blocks.

        The only path in muxlink that terminates the shared channel.
        """
        logger.info("Closing shared channel %s", address.path)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(self.control(address, "exit"))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return

        args = ["-o", f"ControlPath={address.path}", "-O", "exit", *self._target(address)]
        try:
            subprocess.Popen(
                [self._ssh_path, *args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning("Failed to send exit to %s: %s", address.path, e)
