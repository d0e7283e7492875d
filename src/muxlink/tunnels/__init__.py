"""Port forwarding module for muxlink.

Public API:
    PortForwardManager -- Tunnel lifecycle and bookkeeping per session
"""

from muxlink.tunnels.forward import PortForwardManager

__all__ = ["PortForwardManager"]
