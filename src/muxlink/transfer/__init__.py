"""File transfer module for muxlink.

Public API:
    TransferEngine -- scp upload/download over the shared channel
    parse_progress -- Parse one scp progress meter line
    ProgressStream -- Incremental progress parser
"""

from muxlink.transfer.engine import ProgressStream, TransferEngine, parse_progress

__all__ = ["ProgressStream", "TransferEngine", "parse_progress"]
