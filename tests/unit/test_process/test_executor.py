"""Tests for the process executor and its single-flight guard.

Child processes are the running interpreter, so these tests need no
ssh client.
"""

from __future__ import annotations

import asyncio
import sys
import threading
import time

import pytest

from muxlink.process.executor import ProcessExecutor, ResolveOnce, combine_output

PYTHON = sys.executable


@pytest.fixture
def executor() -> ProcessExecutor:
    return ProcessExecutor(kill_grace=0.5)


class TestResolveOnce:
    def test_first_claim_wins(self) -> None:
        guard = ResolveOnce()
        assert guard.claim() is True
        assert guard.claim() is False
        assert guard.claimed

    def test_exactly_one_winner_across_threads(self) -> None:
        guard = ResolveOnce()
        wins: list[bool] = []
        barrier = threading.Barrier(16)

        def racer() -> None:
            barrier.wait()
            wins.append(guard.claim())

        threads = [threading.Thread(target=racer) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert wins.count(True) == 1
        assert len(wins) == 16


class TestCombineOutput:
    def test_stdout_preferred(self) -> None:
        assert combine_output(" hello \n", "warning", 0) == "hello"

    def test_stderr_when_stdout_empty(self) -> None:
        assert combine_output("", "Permission denied\n", 255) == "Permission denied"

    def test_both_on_failure(self) -> None:
        assert combine_output("partial", "boom", 1) == "partial\nboom"


class TestProcessExecutorRun:
    @pytest.mark.asyncio
    async def test_successful_run(self, executor: ProcessExecutor) -> None:
        result = await executor.run(PYTHON, ["-c", "print('hello')"], timeout=10)
        assert result.exit_code == 0
        assert result.stdout == "hello"

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_reported(self, executor: ProcessExecutor) -> None:
        result = await executor.run(
            PYTHON, ["-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"], timeout=10
        )
        assert result.exit_code == 3
        assert result.stdout == "bad"

    @pytest.mark.asyncio
    async def test_spawn_failure_returns_minus_one(self, executor: ProcessExecutor) -> None:
        result = await executor.run("/nonexistent/muxlink-client", ["-V"], timeout=5)
        assert result.exit_code == -1
        assert result.stdout.startswith("Failed to launch")

    @pytest.mark.asyncio
    async def test_large_output_does_not_deadlock(self, executor: ProcessExecutor) -> None:
        script = (
            "import sys; sys.stdout.write('x' * 200000); "
            "sys.stderr.write('y' * 200000); sys.stdout.flush()"
        )
        result = await executor.run(PYTHON, ["-c", script], timeout=10)
        assert result.exit_code == 0
        assert len(result.stdout) == 200000

    @pytest.mark.asyncio
    async def test_timeout_returns_partial_output(self, executor: ProcessExecutor) -> None:
        script = "import sys, time; print('started', flush=True); time.sleep(30)"
        started = time.monotonic()
        result = await executor.run(PYTHON, ["-c", script], timeout=1.0)
        elapsed = time.monotonic() - started

        assert result.exit_code == -1
        assert result.stdout == "started"
        assert elapsed < 5

    @pytest.mark.asyncio
    async def test_timeout_wins_single_resolution(self, executor: ProcessExecutor) -> None:
        """A child finishing after its timeout yields exactly one result."""
        outcome = await executor.stream(
            PYTHON, ["-c", "import time; time.sleep(0.5); print('late')"], timeout=0.05
        )
        assert outcome.timed_out is True
        assert outcome.exit_code == -1
        assert "late" not in outcome.stdout

        # The discarded completion must not surface later.
        await asyncio.sleep(0.6)
        assert outcome.timed_out is True

    @pytest.mark.asyncio
    async def test_stubborn_child_is_killed(self, executor: ProcessExecutor) -> None:
        script = (
            "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
            "print('ready', flush=True); time.sleep(30)"
        )
        started = time.monotonic()
        result = await executor.run(PYTHON, ["-c", script], timeout=0.5)
        assert result.exit_code == -1
        assert time.monotonic() - started < 5

    @pytest.mark.asyncio
    async def test_cancellation_terminates_child(self, executor: ProcessExecutor) -> None:
        task = asyncio.create_task(
            executor.run(PYTHON, ["-c", "import time; time.sleep(30)"], timeout=60)
        )
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestProcessExecutorStream:
    @pytest.mark.asyncio
    async def test_stderr_delivered_incrementally(self, executor: ProcessExecutor) -> None:
        chunks: list[str] = []
        script = (
            "import sys, time\n"
            "for i in range(3):\n"
            "    sys.stderr.write(f'step {i}\\r'); sys.stderr.flush(); time.sleep(0.05)\n"
        )
        outcome = await executor.stream(PYTHON, ["-c", script], timeout=10, on_stderr=chunks.append)
        assert outcome.exit_code == 0
        assert "".join(chunks) == "step 0\rstep 1\rstep 2\r"
        assert outcome.stderr == "step 0\rstep 1\rstep 2\r"

    @pytest.mark.asyncio
    async def test_callback_errors_are_ignored(self, executor: ProcessExecutor) -> None:
        def explode(chunk: str) -> None:
            raise RuntimeError("callback failure")

        outcome = await executor.stream(
            PYTHON, ["-c", "import sys; sys.stderr.write('x')"], timeout=10, on_stderr=explode
        )
        assert outcome.exit_code == 0
        assert outcome.stderr == "x"


class TestProcessExecutorDetach:
    @pytest.mark.asyncio
    async def test_returns_when_parent_exits(self, executor: ProcessExecutor) -> None:
        """A background child holding the streams does not block the caller."""
        script = (
            "import subprocess, sys\n"
            "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(5)'])\n"
            "sys.stderr.write('forked')\n"
        )
        started = time.monotonic()
        outcome = await executor.detach(PYTHON, ["-c", script], timeout=10)
        assert outcome.exit_code == 0
        assert outcome.stderr == "forked"
        assert time.monotonic() - started < 4

    @pytest.mark.asyncio
    async def test_launch_failure(self, executor: ProcessExecutor) -> None:
        outcome = await executor.detach("/nonexistent/muxlink-client", [], timeout=5)
        assert outcome.exit_code == -1
        assert outcome.launch_error is not None
