"""
Quota enforcement.

Decides whether a container's live usage has crossed its allowance and, if
so, stops it and records the action.

Enforcement Order:
1. Unlimited quota - never enforced
2. Allowance check - quota plus extra quota against live usage
3. Status check - only active containers are stopped
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from bandwidth_guard.runtime.base import RuntimeAdapter, RuntimeQueryError, RuntimeUnavailable
from bandwidth_guard.storage.models import AuditAction, AuditRecord, Entity, EntityStatus, utcnow
from bandwidth_guard.storage.repository import EntityRepository

logger = logging.getLogger(__name__)


class EnforcementActionFailed(Exception):
    """Raised when the runtime refuses to stop a container over its quota."""
    def __init__(self, message: str, entity_id: str):
        super().__init__(message)
        self.entity_id = entity_id


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of checking live usage against a container's allowance."""
    used: int
    allowance: Optional[int]
    exceeded: bool
    should_stop: bool


def evaluate_quota(entity: Entity, usage: int) -> QuotaDecision:
    """Check live usage against quota plus extra quota.

    Usage equal to the allowance is still within quota; only strictly more
    is a breach.

    Args:
        entity: Container with its quota settings and current status
        usage: Live accumulated usage in bytes

    Returns:
        QuotaDecision; ``should_stop`` is set only for active containers
    """
    allowance = entity.allowance
    if allowance is None:
        return QuotaDecision(used=usage, allowance=None, exceeded=False, should_stop=False)

    exceeded = usage > allowance
    return QuotaDecision(
        used=usage,
        allowance=allowance,
        exceeded=exceeded,
        should_stop=exceeded and entity.status == EntityStatus.ACTIVE,
    )


class EnforcementPolicy:
    """Stops containers whose live usage exceeds their allowance."""

    def __init__(
        self,
        store: EntityRepository,
        runtime: RuntimeAdapter,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.runtime = runtime
        self._clock = clock

    async def enforce(self, entity: Entity, usage: int) -> QuotaDecision:
        """Apply the quota decision for one container.

        The status is only changed after the runtime confirmed the stop, so a
        failed stop is retried on the next tick while usage stays over the
        allowance.

        Raises:
            EnforcementActionFailed: If the runtime stop call fails
            StoreError: If the status or audit write fails
        """
        decision = evaluate_quota(entity, usage)
        if not decision.should_stop:
            return decision

        try:
            await self.runtime.stop(entity.id)
        except (RuntimeQueryError, RuntimeUnavailable) as e:
            raise EnforcementActionFailed(
                f"Failed to stop container {entity.name} over quota: {e}", entity.id
            ) from e

        await asyncio.to_thread(self.store.update_status, entity.id, EntityStatus.STOPPED)
        await asyncio.to_thread(
            self.store.append_audit,
            AuditRecord(
                entity_id=entity.id,
                action=AuditAction.LIMIT_EXCEEDED,
                details=json.dumps({"used": usage, "limit": decision.allowance}),
                timestamp=self._clock(),
            ),
        )
        logger.warning(
            "Container %s stopped due to bandwidth limit exceeded (%d/%d)",
            entity.name, usage, decision.allowance,
        )
        return decision
