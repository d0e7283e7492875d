"""Core domain models for the muxlink system.

These models represent the data flowing through the orchestration
layer: the remote peer identity and its derived control-socket address,
results of remote commands and local processes, detected services,
active tunnels, and transfer progress updates.
"""

from __future__ import annotations

import enum
import getpass
import re

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ServiceStatus(str, enum.Enum):
    """Observed state of a service on the remote peer."""

    RUNNING = "running"
    STOPPED = "stopped"
    ABSENT = "absent"


class Liveness(str, enum.Enum):
    """Result of probing a session address."""

    ABSENT = "absent"  # The control socket has not been created yet
    STALE = "stale"  # The socket exists but the master does not answer
    LIVE = "live"


class SessionState(str, enum.Enum):
    """State of an orchestrated session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    DETECTING = "detecting"
    CONNECTED = "connected"


# ---------------------------------------------------------------------------
# Session identity
# ---------------------------------------------------------------------------

_TARGET_RE = re.compile(r"^(?:(?P<user>[^@\s]+)@)?(?P<host>[^@:\s]+|\[[^\]]+\])(?::(?P<port>\d+))?$")


class SessionEndpoint(BaseModel):
    """Immutable identity of the remote peer."""

    model_config = ConfigDict(frozen=True)

    user: str = Field(min_length=1, description="Remote login name")
    host: str = Field(min_length=1, description="Remote host name or address")
    port: int = Field(default=22, ge=1, le=65535, description="Remote SSH port")

    @classmethod
    def parse(cls, target: str, default_user: str | None = None) -> SessionEndpoint:
        """Parse a ``user@host[:port]`` target.

        The user defaults to ``default_user`` or the local login name and
        the port defaults to 22.

        Raises:
            ValueError: If the target is not of the expected form.
        """
        match = _TARGET_RE.match(target.strip())
        if match is None:
            raise ValueError(f"Invalid target {target!r}, expected user@host[:port]")
        user = match.group("user") or default_user or getpass.getuser()
        host = match.group("host").strip("[]")
        port = int(match.group("port")) if match.group("port") else 22
        return cls(user=user, host=host, port=port)

    @property
    def destination(self) -> str:
        """The ``user@host`` argument passed to the ssh client."""
        return f"{self.user}@{self.host}"

    def __str__(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"


class SessionAddress(BaseModel):
    """Opaque handle of the shared multiplexed channel.

    Wraps the ControlPath the terminal's ssh process creates its
    multiplexing socket at, together with the endpoint it belongs to.
    """

    model_config = ConfigDict(frozen=True)

    endpoint: SessionEndpoint
    path: str = Field(min_length=1, description="Filesystem path of the control socket")

    def __str__(self) -> str:
        return self.path


# ---------------------------------------------------------------------------
# Process / command results
# ---------------------------------------------------------------------------


class CommandResult(BaseModel):
    """Result of a single ``exec`` call.

    ``exit_code == -1`` is reserved for infrastructure failures (timeout,
    spawn failure), distinct from a non-zero exit reported by the peer.
    """

    model_config = ConfigDict(frozen=True)

    exit_code: int
    stdout: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class ProcessOutcome(BaseModel):
    """Full outcome of a local process run, with separate streams."""

    model_config = ConfigDict(frozen=True)

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    launch_error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


# ---------------------------------------------------------------------------
# Services and tunnels
# ---------------------------------------------------------------------------


class DetectedService(BaseModel):
    """A service found on the remote peer by a detection pass."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    status: ServiceStatus
    port: int = Field(ge=0, le=65535)

    @property
    def is_running(self) -> bool:
        return self.status == ServiceStatus.RUNNING


class Tunnel(BaseModel):
    """A local port forward carried by the shared session."""

    model_config = ConfigDict(frozen=True)

    service_name: str = ""
    local_port: int = Field(ge=1, le=65535)
    remote_host: str = "127.0.0.1"
    remote_port: int = Field(ge=1, le=65535)

    @property
    def spec(self) -> str:
        """The ``-L`` forward specification."""
        return f"{self.local_port}:{self.remote_host}:{self.remote_port}"


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------


class TransferProgress(BaseModel):
    """A single progress update parsed from the copy client's meter."""

    model_config = ConfigDict(frozen=True)

    percent: int = Field(ge=0, le=100)
    size: str = ""
    speed: str
    eta: str


class TransferResult(BaseModel):
    """Terminal outcome of an upload or download."""

    model_config = ConfigDict(frozen=True)

    success: bool
    error: str | None = None


# ---------------------------------------------------------------------------
# Session snapshot for the UI layer
# ---------------------------------------------------------------------------


class SessionSnapshot(BaseModel):
    """Read-only view of an orchestrated session."""

    state: SessionState
    endpoint: SessionEndpoint | None = None
    connected_host: str = ""
    status_message: str = ""
    error_message: str | None = None
    services: list[DetectedService] = Field(default_factory=list)
    tunnels: list[Tunnel] = Field(default_factory=list)
    panels: list[str] = Field(default_factory=list)
