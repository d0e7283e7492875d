"""SSH backend module for muxlink.

Public API:
    SSHBackend -- Abstract base class
    SystemSSHBackend -- system ssh/scp over a ControlMaster socket
"""

from muxlink.backend.base import SSHBackend

__all__ = ["SSHBackend", "SystemSSHBackend"]


def __getattr__(name: str) -> type:
    """Lazy import for the concrete backend."""
    if name == "SystemSSHBackend":
        from muxlink.backend.system import SystemSSHBackend
        return SystemSSHBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
