"""
Container Runtime
=================

Per-session runner containers and the primitives they are built from.

Components:
- circuit_breaker: failure-threshold gate in front of the Docker daemon
- ports: host port pair allocation
- retry: backoff retry for 409 conflicts
- log_stream: stdout/stderr frame demultiplexer
- readiness: HTTP readiness poller
- service: ContainerService composing the above
"""

from genstack.containers.circuit_breaker import CircuitBreaker
from genstack.containers.log_stream import LogStreamDemultiplexer
from genstack.containers.models import AppLogEntry, ContainerInfo, ContainerStatus
from genstack.containers.ports import PortManager
from genstack.containers.readiness import HttpReadinessPoller
from genstack.containers.retry import retry_on_conflict
from genstack.containers.service import ContainerService

__all__ = [
    "AppLogEntry",
    "CircuitBreaker",
    "ContainerInfo",
    "ContainerService",
    "ContainerStatus",
    "HttpReadinessPoller",
    "LogStreamDemultiplexer",
    "PortManager",
    "retry_on_conflict",
]
