"""
Container runtime contract.

Defines what the accounting loop needs from a container runtime: the list
of monitored containers, cumulative network counters and start/stop.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol


class RuntimeUnavailable(Exception):
    """Raised when the runtime endpoint cannot be reached."""


class RuntimeQueryError(Exception):
    """Raised when the runtime returns malformed or missing data, or rejects a call."""


@dataclass(frozen=True)
class RuntimeEntity:
    """A container as listed by the runtime."""
    id: str
    name: str
    running: bool
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ContainerStats:
    """Point-in-time stats snapshot of a running container.

    ``rx_bytes`` and ``tx_bytes`` are cumulative counters summed over every
    network interface of the container.
    """
    id: str
    name: str
    status: str
    rx_bytes: int
    tx_bytes: int
    memory_usage: int = 0
    memory_limit: int = 0

    @property
    def total_bytes(self) -> int:
        """Received plus transmitted bytes."""
        return self.rx_bytes + self.tx_bytes


class RuntimeAdapter(Protocol):
    """Async contract consumed by the accumulator, discovery and scheduler."""

    async def list_monitored_entities(self) -> List[RuntimeEntity]:
        ...

    async def get_stats(self, entity_id: str) -> Optional[ContainerStats]:
        ...

    async def is_running(self, entity_id: str) -> bool:
        ...

    async def start(self, entity_id: str) -> None:
        ...

    async def stop(self, entity_id: str) -> None:
        ...

    async def close(self) -> None:
        ...
