"""Domain models for muxlink.

This package contains the core data structures, enumerations, and value
objects used throughout the system. All models use Pydantic v2 for
validation and serialization.
"""

from muxlink.domain.models import (
    CommandResult,
    DetectedService,
    Liveness,
    ProcessOutcome,
    ServiceStatus,
    SessionAddress,
    SessionEndpoint,
    SessionSnapshot,
    SessionState,
    TransferProgress,
    TransferResult,
    Tunnel,
)

__all__ = [
    "CommandResult",
    "DetectedService",
    "Liveness",
    "ProcessOutcome",
    "ServiceStatus",
    "SessionAddress",
    "SessionEndpoint",
    "SessionSnapshot",
    "SessionState",
    "TransferProgress",
    "TransferResult",
    "Tunnel",
]
