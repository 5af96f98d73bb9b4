"""
Host port allocation for runner containers.

A port is free when no live container uses it as its client or server port.
The manager holds no state of its own; callers pass the live containers and
must hold the registry lock across allocation and registration so the
check-and-reserve is atomic.
"""

from typing import Collection, Iterable, Optional, Set, Tuple

from genstack.containers.models import ContainerInfo
from genstack.utils.errors import PortExhausted


class PortManager:
    """Linear scan over an inclusive port range."""

    def __init__(self, start: int, end: int):
        if start > end:
            raise ValueError(f"Invalid port range {start}-{end}")
        self.start = start
        self.end = end

    @staticmethod
    def used_ports(containers: Iterable[ContainerInfo]) -> Set[int]:
        used: Set[int] = set()
        for info in containers:
            used.add(info.client_port)
            used.add(info.server_port)
        return used

    def find_available_port(
        self,
        used: Collection[int],
        exclude: Optional[int] = None
    ) -> int:
        for port in range(self.start, self.end + 1):
            if port != exclude and port not in used:
                return port
        raise PortExhausted(self.start, self.end)

    def find_two_available_ports(self, containers: Iterable[ContainerInfo]) -> Tuple[int, int]:
        """
        Pick a (client, server) pair of distinct free ports.

        Raises:
            PortExhausted: fewer than two ports are free
        """
        used = self.used_ports(containers)
        client_port = self.find_available_port(used)
        server_port = self.find_available_port(used, exclude=client_port)
        return client_port, server_port
