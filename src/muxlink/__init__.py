"""muxlink -- Orchestration over an already-established SSH session.

This package lets a desktop terminal client run auxiliary commands,
service detection, port forwards and file transfers against a server
it is already connected to, by piggybacking on the SSH ControlMaster
socket created by the interactive terminal session instead of opening
a second authenticated connection.
"""

__version__ = "0.1.0"
