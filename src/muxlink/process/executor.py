"""Local process execution with a timeout race.

Every external client invocation in muxlink (ssh control operations,
remote commands, scp transfers) goes through :class:`ProcessExecutor`.
It drains stdout and stderr concurrently before waiting on process
exit, so a child that writes more than the OS pipe buffer never
deadlocks, and it races normal completion against a timer through a
:class:`ResolveOnce` guard so the caller receives exactly one result.

Example usage::

    executor = ProcessExecutor()
    result = await executor.run("/usr/bin/ssh", ["-O", "check", "host"], timeout=5)
    if result.exit_code == -1:
        ...  # timed out or failed to launch
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import tempfile
import threading
from typing import Any, Awaitable, Callable

from muxlink.domain.models import CommandResult, ProcessOutcome

logger = logging.getLogger(__name__)

StreamCallback = Callable[[str], None]


class ResolveOnce:
    """Single-flight guard shared by racing completion sources.

    The first caller of :meth:`claim` wins and must deliver the result;
    every later caller gets ``False`` and discards its own. The flag is
    lock-guarded because the racers may run on different threads
    (callbacks fired from executor threads, timers on the event loop).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claimed = False

    @property
    def claimed(self) -> bool:
        return self._claimed

    def claim(self) -> bool:
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True


class _StreamCollector:
    """Accumulates decoded output of one pipe, optionally forwarding chunks."""

    def __init__(self, on_chunk: StreamCallback | None = None) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: list[str] = []
        self._on_chunk = on_chunk

    async def drain(self, reader: asyncio.StreamReader | None, read_size: int) -> None:
        if reader is None:
            return
        while True:
            data = await reader.read(read_size)
            if not data:
                break
            self._feed(self._decoder.decode(data))
        self._feed(self._decoder.decode(b"", final=True))

    def text(self) -> str:
        return "".join(self._parts)

    def _feed(self, text: str) -> None:
        if not text:
            return
        self._parts.append(text)
        if self._on_chunk is not None:
            try:
                self._on_chunk(text)
            except Exception:
                logger.exception("Stream callback raised, continuing")


def combine_output(stdout: str, stderr: str, exit_code: int) -> str:
    """Assemble the single output string reported for a finished command.

    stdout wins; an empty stdout falls back to stderr, and a failing
    command with both streams populated reports both.
    """
    out = stdout.strip()
    err = stderr.strip()
    if not out:
        return err
    if exit_code != 0 and err:
        return f"{out}\n{err}"
    return out


class ProcessExecutor:
    """Runs external processes with concurrent draining and a timeout race.

    Never raises across its boundary for launch failures or timeouts:
    both are reported as results with ``exit_code == -1``.
    """

    def __init__(self, kill_grace: float = 2.0, read_size: int = 65536) -> None:
        self._kill_grace = kill_grace
        self._read_size = read_size

    async def run(self, executable: str, args: list[str], timeout: float) -> CommandResult:
        """Run a process to completion and return its exit code and output.

        On timeout the process is terminated and the stdout collected so
        far is returned with ``exit_code=-1``. On spawn failure the reason
        is returned as output with ``exit_code=-1``.
        """
        outcome = await self._execute(executable, args, timeout, on_stderr=None)
        if outcome.launch_error is not None:
            return CommandResult(exit_code=-1, stdout=outcome.launch_error)
        if outcome.timed_out:
            return CommandResult(exit_code=-1, stdout=outcome.stdout.strip())
        return CommandResult(
            exit_code=outcome.exit_code,
            stdout=combine_output(outcome.stdout, outcome.stderr, outcome.exit_code),
        )

    async def stream(
        self,
        executable: str,
        args: list[str],
        timeout: float,
        on_stderr: StreamCallback | None = None,
    ) -> ProcessOutcome:
        """Run a process, delivering stderr to ``on_stderr`` as it arrives.

        The callback is invoked on the event loop for every decoded chunk
        and must not block. Exceptions it raises are logged and ignored.
        """
        return await self._execute(executable, args, timeout, on_stderr=on_stderr)

    async def detach(self, executable: str, args: list[str], timeout: float) -> ProcessOutcome:
        """Run a process that forks a background child and wait for the parent.

        Used for clients such as ``ssh -f`` whose background child inherits
        the standard streams: stdout goes to /dev/null and stderr to an
        unlinked temporary file, so the parent's exit is observed without
        waiting for EOF on a pipe the child keeps open.
        """
        with tempfile.TemporaryFile() as errfile:
            process = await self._launch(
                executable, args, stdout=asyncio.subprocess.DEVNULL, stderr=errfile
            )
            if isinstance(process, ProcessOutcome):
                return process

            def read_stderr() -> str:
                errfile.seek(0)
                return errfile.read().decode("utf-8", errors="replace")

            async def complete() -> ProcessOutcome:
                exit_code = await process.wait()
                return ProcessOutcome(exit_code=exit_code, stderr=read_stderr())

            def expired() -> ProcessOutcome:
                return ProcessOutcome(exit_code=-1, stderr=read_stderr(), timed_out=True)

            return await self._race(process, executable, timeout, complete, expired)

    async def _execute(
        self,
        executable: str,
        args: list[str],
        timeout: float,
        on_stderr: StreamCallback | None,
    ) -> ProcessOutcome:
        process = await self._launch(
            executable, args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        if isinstance(process, ProcessOutcome):
            return process

        stdout = _StreamCollector()
        stderr = _StreamCollector(on_stderr)

        async def complete() -> ProcessOutcome:
            # Both pipes must reach EOF before waiting on exit.
            await asyncio.gather(
                stdout.drain(process.stdout, self._read_size),
                stderr.drain(process.stderr, self._read_size),
            )
            exit_code = await process.wait()
            return ProcessOutcome(exit_code=exit_code, stdout=stdout.text(), stderr=stderr.text())

        def expired() -> ProcessOutcome:
            return ProcessOutcome(
                exit_code=-1, stdout=stdout.text(), stderr=stderr.text(), timed_out=True
            )

        return await self._race(process, executable, timeout, complete, expired)

    async def _launch(
        self, executable: str, args: list[str], stdout: Any, stderr: Any
    ) -> asyncio.subprocess.Process | ProcessOutcome:
        logger.debug("Launching %s %s", executable, " ".join(args))
        try:
            return await asyncio.create_subprocess_exec(
                executable, *args, stdin=asyncio.subprocess.DEVNULL, stdout=stdout, stderr=stderr
            )
        except (OSError, ValueError) as e:
            logger.warning("Failed to launch %s: %s", executable, e)
            return ProcessOutcome(exit_code=-1, launch_error=f"Failed to launch: {e}")

    async def _race(
        self,
        process: asyncio.subprocess.Process,
        executable: str,
        timeout: float,
        complete: Callable[[], Awaitable[ProcessOutcome]],
        expired: Callable[[], ProcessOutcome],
    ) -> ProcessOutcome:
        """Resolve with whichever of completion or the timer comes first.

        The loser's result is discarded. The process is always reaped
        before returning, including when the caller is cancelled.
        """
        guard = ResolveOnce()
        resolved: asyncio.Future[ProcessOutcome] = asyncio.get_running_loop().create_future()

        def resolve(outcome: ProcessOutcome) -> bool:
            if not guard.claim() or resolved.done():
                return False
            resolved.set_result(outcome)
            return True

        async def on_exit() -> None:
            try:
                outcome = await complete()
            except Exception as e:
                logger.error("Collecting output of %s failed: %s", executable, e)
                outcome = ProcessOutcome(
                    exit_code=-1, launch_error=f"Failed to collect output: {e}"
                )
            if not resolve(outcome):
                logger.debug("%s finished after its timeout, result discarded", executable)

        async def on_timer() -> None:
            await asyncio.sleep(timeout)
            if resolve(expired()):
                logger.warning("%s timed out after %.1fs, terminating", executable, timeout)

        racers = [asyncio.create_task(on_exit()), asyncio.create_task(on_timer())]
        try:
            return await resolved
        finally:
            for task in racers:
                task.cancel()
            await asyncio.gather(*racers, return_exceptions=True)
            await self._reap(process)

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the process if it is still running and wait for it."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=self._kill_grace)
            return
        except asyncio.TimeoutError:
            logger.debug("Process %d ignored SIGTERM, killing", process.pid)
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
