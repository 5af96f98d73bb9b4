"""
Container Runtime Models
========================

Data structures shared by the container service and its primitives.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ContainerStatus(str, Enum):
    """Lifecycle of a session's runner container.

    creating -> running -> stopping -> stopped, with error reachable from any
    non-terminal state.
    """
    CREATING = "creating"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogStream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass
class ContainerInfo:
    """Public view of one session's container. At most one per session."""
    session_id: str
    container_id: Optional[str]
    client_port: int
    server_port: int
    status: ContainerStatus = ContainerStatus.CREATING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None

    @property
    def client_url(self) -> str:
        return f"http://localhost:{self.client_port}"

    @property
    def server_url(self) -> str:
        return f"http://localhost:{self.server_port}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "session_id": self.session_id,
            "container_id": self.container_id,
            "status": self.status.value,
            "client_port": self.client_port,
            "server_port": self.server_port,
            "client_url": self.client_url,
            "server_url": self.server_url,
            "created_at": self.created_at.isoformat(),
            "error": self.error,
        }


@dataclass(frozen=True)
class AppLogEntry:
    """One demultiplexed line of container output."""
    timestamp: datetime
    stream: LogStream
    level: LogLevel
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.stream.value,
            "level": self.level.value,
            "message": self.message,
        }
