"""File transfer over the shared channel with progress parsing.

Uploads and downloads run the scp client through the ControlMaster
socket. scp redraws its progress meter on stderr using carriage
returns, in the form::

    archive.zip                42%  128KB   1.2MB/s   00:03 ETA

Each complete meter line is parsed into a :class:`TransferProgress`
and handed to the caller's callback as it streams in.
"""

from __future__ import annotations

import logging
import re
from typing import Callable

from muxlink.broker.broker import ConnectionBroker
from muxlink.domain.models import SessionAddress, TransferProgress, TransferResult
from muxlink.process.executor import ProcessExecutor

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TransferProgress], None]

_PROGRESS_RE = re.compile(
    r"(?<!\d)(\d{1,3})%\s+([\d.]+\w+)\s+([\d.]+\w+/s)\s+(\d+:\d+(?::\d+)?|--:--)"
)
_SEGMENT_SPLIT_RE = re.compile(r"[\r\n]")


def parse_progress(line: str) -> TransferProgress | None:
    """Parse one progress meter line, or return None if it is not one."""
    match = _PROGRESS_RE.search(line.strip())
    if match is None:
        return None
    percent = int(match.group(1))
    if percent > 100:
        return None
    return TransferProgress(
        percent=percent, size=match.group(2), speed=match.group(3), eta=match.group(4)
    )


class ProgressStream:
    """Incremental parser over a carriage-return delimited stderr stream."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[TransferProgress]:
        segments = _SEGMENT_SPLIT_RE.split(self._pending + chunk)
        self._pending = segments.pop()
        return _parse_segments(segments)

    def flush(self) -> list[TransferProgress]:
        pending, self._pending = self._pending, ""
        return _parse_segments([pending])


def _parse_segments(segments: list[str]) -> list[TransferProgress]:
    updates = []
    for segment in segments:
        progress = parse_progress(segment)
        if progress is not None:
            updates.append(progress)
    return updates


def escape_remote_path(path: str) -> str:
    """Escape a path for the remote shell scp hands it to."""
    return path.replace("\\", "\\\\").replace(" ", "\\ ")


def diagnostic_text(stderr: str, stdout: str, exit_code: int) -> str:
    """Pick the error text for a failed transfer.

    Prefers stderr with progress meter lines removed, then stdout, then
    a generic exit code message.
    """
    lines = [
        segment.strip()
        for segment in _SEGMENT_SPLIT_RE.split(stderr)
        if segment.strip() and parse_progress(segment) is None
    ]
    return "\n".join(lines) or stdout.strip() or f"scp failed with exit code {exit_code}"


class TransferEngine:
    """Runs uploads and downloads through the shared channel."""

    def __init__(
        self,
        executor: ProcessExecutor,
        broker: ConnectionBroker,
        scp_path: str = "/usr/bin/scp",
        timeout: float = 300.0,
        recursive: bool = True,
    ) -> None:
        self._executor = executor
        self._broker = broker
        self._scp_path = scp_path
        self._timeout = timeout
        self._recursive = recursive

    async def upload(
        self,
        address: SessionAddress,
        local_path: str,
        remote_path: str,
        on_progress: ProgressCallback | None = None,
    ) -> TransferResult:
        """Copy a local file or directory to the peer."""
        remote = f"{address.endpoint.destination}:{escape_remote_path(remote_path)}"
        return await self._transfer(address, local_path, remote, on_progress)

    async def download(
        self,
        address: SessionAddress,
        remote_path: str,
        local_path: str,
        on_progress: ProgressCallback | None = None,
    ) -> TransferResult:
        """Copy a remote file or directory to the local machine."""
        remote = f"{address.endpoint.destination}:{escape_remote_path(remote_path)}"
        return await self._transfer(address, remote, local_path, on_progress)

    async def _transfer(
        self,
        address: SessionAddress,
        source: str,
        destination: str,
        on_progress: ProgressCallback | None,
    ) -> TransferResult:
        args = [*self._broker.client_options(address), "-P", str(address.endpoint.port)]
        if self._recursive:
            args.append("-r")
        args += [source, destination]

        stream = ProgressStream()

        def on_stderr(chunk: str) -> None:
            for update in stream.feed(chunk):
                _emit(on_progress, update)

        outcome = await self._executor.stream(
            self._scp_path, args, self._timeout, on_stderr=on_stderr if on_progress else None
        )

        if outcome.launch_error is not None:
            return TransferResult(success=False, error=outcome.launch_error)
        if outcome.timed_out:
            return TransferResult(
                success=False, error=f"Transfer timed out after {int(self._timeout)}s"
            )
        for update in stream.flush():
            _emit(on_progress, update)
        if outcome.exit_code == 0:
            logger.info("Transfer complete: %s -> %s", source, destination)
            return TransferResult(success=True)

        error = diagnostic_text(outcome.stderr, outcome.stdout, outcome.exit_code)
        logger.warning("Transfer %s -> %s failed: %s", source, destination, error)
        return TransferResult(success=False, error=error)


def _emit(on_progress: ProgressCallback | None, update: TransferProgress) -> None:
    if on_progress is None:
        return
    try:
        on_progress(update)
    except Exception:
        logger.exception("Progress callback raised, continuing transfer")
