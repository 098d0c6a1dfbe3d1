"""
Data models for storage layer.

Defines monitored containers, traffic deltas and audit records.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class EntityStatus(Enum):
    """Lifecycle status of a monitored container."""
    ACTIVE = "active"
    STOPPED = "stopped"
    EXPIRED = "expired"


class AuditAction(Enum):
    """Tags for append-only audit records."""
    START = "start"
    STOP = "stop"
    RESET = "reset"
    LIMIT_EXCEEDED = "limit_exceeded"
    EXPIRED = "expired"
    CONFIG_UPDATE = "config_update"
    DELETE = "delete"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_millis(value: Optional[datetime]) -> Optional[int]:
    """Convert a datetime to epoch milliseconds (storage unit)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_millis(value: Optional[int]) -> Optional[datetime]:
    """Convert epoch milliseconds back to a UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class Entity:
    """Durable record of a monitored container.

    Usage only grows between resets. A reset sets usage to 0 and stamps
    ``last_reset_at``.
    """
    id: str
    name: str
    quota: Optional[int] = None
    extra_quota: int = 0
    usage: int = 0
    reset_day: int = 1
    last_reset_at: Optional[datetime] = None
    expire_at: Optional[datetime] = None
    status: EntityStatus = EntityStatus.ACTIVE
    share_token: Optional[str] = None
    share_token_expire: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate quota values and reset day."""
        if not self.id:
            raise ValueError("id is required and cannot be empty")
        if self.quota is not None and self.quota < 0:
            raise ValueError("quota cannot be negative")
        if self.extra_quota < 0:
            raise ValueError("extra_quota cannot be negative")
        if self.usage < 0:
            raise ValueError("usage cannot be negative")
        if not 1 <= self.reset_day <= 31:
            raise ValueError("reset_day must be between 1 and 31")

    @property
    def allowance(self) -> Optional[int]:
        """Quota plus extra quota, or None when unlimited."""
        if self.quota is None:
            return None
        return self.quota + self.extra_quota

    @property
    def remaining(self) -> Optional[int]:
        """Bytes left before the allowance is crossed (never negative)."""
        allowance = self.allowance
        if allowance is None:
            return None
        return max(0, allowance - self.usage)


@dataclass(frozen=True)
class TrafficDelta:
    """Traffic observed between two consecutive samples of one container."""
    entity_id: str
    rx_bytes: int
    tx_bytes: int
    total_bytes: int
    timestamp: datetime


@dataclass(frozen=True)
class AuditRecord:
    """Append-only audit trail entry.

    ``entity_id`` is None for system-wide events.
    """
    entity_id: Optional[str]
    action: AuditAction
    details: Optional[str]
    timestamp: datetime
    id: Optional[int] = None
