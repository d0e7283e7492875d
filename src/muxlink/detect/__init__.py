"""Service detection module for muxlink.

Public API:
    ServiceDetector -- Runs the probe catalog concurrently
    ProbeSpec -- One row of the declarative probe table
    DEFAULT_PROBES -- mysql, redis, docker, postgresql
"""

from muxlink.detect.detector import ServiceDetector, parse_published_port, parse_version
from muxlink.detect.probes import DEFAULT_PROBES, ContainerProbe, ProbeSpec, StatusCheck

__all__ = [
    "ContainerProbe",
    "DEFAULT_PROBES",
    "ProbeSpec",
    "ServiceDetector",
    "StatusCheck",
    "parse_published_port",
    "parse_version",
]
