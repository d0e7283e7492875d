"""Session orchestration module for muxlink.

Public API:
    SessionOrchestrator -- Per-session state machine
"""

from muxlink.session.orchestrator import SessionOrchestrator

__all__ = ["SessionOrchestrator"]
