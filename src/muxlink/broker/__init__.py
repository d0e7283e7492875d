"""Connection broker module for muxlink.

Derives the shared session address, checks and waits for its liveness,
and routes commands and control operations through it.

Public API:
    ConnectionBroker -- Liveness polling and multiplexed invocations
    address_for -- Pure address derivation
"""

from muxlink.broker.broker import ConnectionBroker, address_for

__all__ = ["ConnectionBroker", "address_for"]
