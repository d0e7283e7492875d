"""Command-line interface for muxlink.

Runs single operations against a shared SSH session from the shell, or
starts the local HTTP control endpoint for a UI process.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="muxlink",
        description="Run commands, tunnels and transfers over an existing SSH session",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/muxlink.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def add_target(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("target", type=str, help="Remote peer as user@host[:port]")

    def add_wait(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--wait", type=float, default=None,
            help="Seconds to wait for the shared session (default: broker.max_wait)",
        )

    address_parser = subparsers.add_parser(
        "address", help="Print the control socket path and the ssh options that create it"
    )
    add_target(address_parser)

    check_parser = subparsers.add_parser("check", help="Report whether the shared session is live")
    add_target(check_parser)

    exec_parser = subparsers.add_parser("exec", help="Run a command on the peer")
    add_target(exec_parser)
    exec_parser.add_argument("remote_command", type=str, help="Shell command to run")
    exec_parser.add_argument(
        "--timeout", type=float, default=None,
        help="Command timeout in seconds (default: execution.default_timeout)",
    )
    add_wait(exec_parser)

    detect_parser = subparsers.add_parser("detect", help="Detect services on the peer")
    add_target(detect_parser)
    add_wait(detect_parser)

    forward_parser = subparsers.add_parser("forward", help="Forward a local port over the session")
    add_target(forward_parser)
    forward_parser.add_argument("local_port", type=int)
    forward_parser.add_argument("remote_port", type=int)
    forward_parser.add_argument(
        "--remote-host", type=str, default=None,
        help="Host the peer connects to (default: tunnels.remote_host)",
    )
    add_wait(forward_parser)

    unforward_parser = subparsers.add_parser("unforward", help="Cancel a local port forward")
    add_target(unforward_parser)
    unforward_parser.add_argument("local_port", type=int)
    unforward_parser.add_argument("remote_port", type=int)
    unforward_parser.add_argument("--remote-host", type=str, default=None)
    add_wait(unforward_parser)

    upload_parser = subparsers.add_parser("upload", help="Copy a local path to the peer")
    add_target(upload_parser)
    upload_parser.add_argument("local_path", type=str)
    upload_parser.add_argument("remote_path", type=str)
    add_wait(upload_parser)

    download_parser = subparsers.add_parser("download", help="Copy a remote path from the peer")
    add_target(download_parser)
    download_parser.add_argument("remote_path", type=str)
    download_parser.add_argument("local_path", type=str)
    add_wait(download_parser)

    close_parser = subparsers.add_parser(
        "close", help="Ask the shared session's master to exit (ends the terminal session too)"
    )
    add_target(close_parser)

    subparsers.add_parser("serve", help="Start the local HTTP control endpoint")

    return parser.parse_args(argv)


def _backend(settings, target: str):
    from muxlink.backend.system import SystemSSHBackend
    from muxlink.domain.models import SessionEndpoint

    return SystemSSHBackend(SessionEndpoint.parse(target), settings)


async def _wait(backend, wait: float | None) -> bool:
    if await backend.wait_for_live(wait):
        return True
    print(f"Shared session to {backend.endpoint} is not available", file=sys.stderr)
    if backend.failure_reason:
        print(f"  Background master: {backend.failure_reason}", file=sys.stderr)
    print(
        "  Start the terminal session with: ssh "
        + " ".join(backend.broker.master_options(backend.address))
        + f" -p {backend.endpoint.port} {backend.endpoint.destination}",
        file=sys.stderr,
    )
    return False


def _address(settings, args) -> int:
    backend = _backend(settings, args.target)
    print(backend.address.path)
    print(" ".join(backend.broker.master_options(backend.address)))
    return 0


async def _check(settings, args) -> int:
    from muxlink.domain.models import Liveness

    backend = _backend(settings, args.target)
    status = await backend.broker.probe(backend.address)
    print(f"{backend.endpoint}: {status.value} ({backend.address.path})")
    return 0 if status == Liveness.LIVE else 1


async def _exec(settings, args) -> int:
    backend = _backend(settings, args.target)
    if not await _wait(backend, args.wait):
        return 2
    result = await backend.exec(args.remote_command, args.timeout)
    if result.stdout:
        print(result.stdout)
    return 255 if result.exit_code == -1 else result.exit_code


async def _detect(settings, args) -> int:
    backend = _backend(settings, args.target)
    if not await _wait(backend, args.wait):
        return 2
    services = await backend.detect_all_services()
    if not services:
        print("No services detected")
        return 0
    print(f"{'SERVICE':<12} {'VERSION':<20} {'STATUS':<8} PORT")
    for service in services:
        print(f"{service.name:<12} {service.version:<20} {service.status.value:<8} {service.port}")
    return 0


async def _forward(settings, args) -> int:
    backend = _backend(settings, args.target)
    if not await _wait(backend, args.wait):
        return 2
    remote_host = args.remote_host or settings.tunnels.remote_host
    if not await backend.start_port_forward(args.local_port, remote_host, args.remote_port):
        print(f"Could not forward local port {args.local_port}", file=sys.stderr)
        return 1
    print(f"127.0.0.1:{args.local_port} -> {remote_host}:{args.remote_port}")
    return 0


async def _unforward(settings, args) -> int:
    backend = _backend(settings, args.target)
    if not await _wait(backend, args.wait):
        return 2
    remote_host = args.remote_host or settings.tunnels.remote_host
    if not await backend.stop_port_forward(args.local_port, remote_host, args.remote_port):
        print(f"Could not cancel forward on local port {args.local_port}", file=sys.stderr)
        return 1
    return 0


def _print_progress(progress) -> None:
    print(
        f"\r{progress.percent:3d}%  {progress.size:>8}  {progress.speed:>10}  {progress.eta}",
        end="",
        flush=True,
    )


async def _transfer(settings, args) -> int:
    backend = _backend(settings, args.target)
    if not await _wait(backend, args.wait):
        return 2
    if args.command == "upload":
        result = await backend.upload_file(args.local_path, args.remote_path, _print_progress)
    else:
        result = await backend.download_file(args.remote_path, args.local_path, _print_progress)
    print()
    if not result.success:
        print(f"Transfer failed: {result.error}", file=sys.stderr)
        return 1
    return 0


def _close(settings, args) -> int:
    backend = _backend(settings, args.target)
    backend.cleanup()
    print(f"Sent exit to {backend.address.path}")
    return 0


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the muxlink CLI."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return

    from muxlink.config.settings import load_settings
    from muxlink.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)

    try:
        if args.command == "address":
            code = _address(settings, args)
        elif args.command == "check":
            code = asyncio.run(_check(settings, args))
        elif args.command == "exec":
            code = asyncio.run(_exec(settings, args))
        elif args.command == "detect":
            code = asyncio.run(_detect(settings, args))
        elif args.command == "forward":
            code = asyncio.run(_forward(settings, args))
        elif args.command == "unforward":
            code = asyncio.run(_unforward(settings, args))
        elif args.command in ("upload", "download"):
            code = asyncio.run(_transfer(settings, args))
        elif args.command == "close":
            code = _close(settings, args)
        else:
            logger.info("Starting control endpoint")
            from muxlink.endpoint.server import serve
            from muxlink.session.orchestrator import SessionOrchestrator

            ep = settings.endpoint
            serve(SessionOrchestrator(settings), host=ep.host, port=ep.port)
            code = 0
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        code = 2

    sys.exit(code)


if __name__ == "__main__":
    main()
