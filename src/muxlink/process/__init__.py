"""Process execution module for muxlink.

Runs the external ssh/scp clients with concurrent output draining and a
single-flight timeout race, and resolves their executable paths.

Public API:
    ProcessExecutor -- Runs processes, never raising for launch/timeout
    ResolveOnce -- Single-flight guard for racing completion sources
    ExecutableResolver -- Cached executable path lookup
"""

from muxlink.process.executor import ProcessExecutor, ResolveOnce, combine_output
from muxlink.process.resolver import (
    ExecutableResolver,
    get_resolver,
    reset_resolver,
    resolve_client,
)

__all__ = [
    "ExecutableResolver",
    "ProcessExecutor",
    "ResolveOnce",
    "combine_output",
    "get_resolver",
    "reset_resolver",
    "resolve_client",
]
