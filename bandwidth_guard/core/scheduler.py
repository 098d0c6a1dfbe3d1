"""
Calendar quota resets and expiry shutdowns.

Both jobs walk every stored container and isolate failures per container,
so one bad record never aborts the pass.
"""

import asyncio
import calendar
import logging
from datetime import datetime, timezone, tzinfo
from typing import TYPE_CHECKING, Callable, List, Optional, Set

from bandwidth_guard.runtime.base import RuntimeAdapter, RuntimeQueryError, RuntimeUnavailable
from bandwidth_guard.storage.models import AuditAction, AuditRecord, Entity, EntityStatus, utcnow
from bandwidth_guard.storage.repository import EntityRepository, StoreError

if TYPE_CHECKING:
    from .accounting import TrafficAccumulator

logger = logging.getLogger(__name__)


def effective_reset_day(reset_day: int, year: int, month: int) -> int:
    """Clamp a reset day to the length of the given month (31 -> 28 in February)."""
    return min(reset_day, calendar.monthrange(year, month)[1])


def should_reset(last_reset_at: Optional[datetime], reset_day: int, now: datetime) -> bool:
    """Decide whether a container's usage is due for its monthly reset.

    Rules:
    - Never reset before: reset now
    - Today is the reset day and the last reset did not happen on a reset day
    - The calendar month advanced since the last reset and today is on or
      past the reset day

    Reset days beyond the end of a month are clamped to the month's last day.
    Both datetimes should be in the calendar's timezone.
    """
    if last_reset_at is None:
        return True

    today_reset_day = effective_reset_day(reset_day, now.year, now.month)
    last_reset_day = effective_reset_day(reset_day, last_reset_at.year, last_reset_at.month)

    if now.day == today_reset_day and last_reset_at.day != last_reset_day:
        return True

    if (now.year, now.month) > (last_reset_at.year, last_reset_at.month):
        if now.day >= today_reset_day:
            return True

    return False


class ResetExpiryScheduler:
    """Periodic reset and expiry jobs.

    A container whose expiry stop fails keeps its status and is retried by
    ``retry_expiry`` on a shorter interval until the stop succeeds.
    """

    def __init__(
        self,
        store: EntityRepository,
        runtime: RuntimeAdapter,
        accumulator: "TrafficAccumulator",
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.runtime = runtime
        self.accumulator = accumulator
        self.tz = tz
        self._clock = clock
        self._expiry_retry: Set[str] = set()

    @property
    def pending_expiry(self) -> Set[str]:
        return set(self._expiry_retry)

    async def run_reset_pass(self) -> List[str]:
        """Reset usage of every container past its reset boundary.

        Returns:
            Ids of containers that were reset
        """
        now = self._clock().astimezone(self.tz)
        entities = await asyncio.to_thread(self.store.find_all)

        reset = []
        for entity in entities:
            try:
                last = entity.last_reset_at.astimezone(self.tz) if entity.last_reset_at else None
                if not should_reset(last, entity.reset_day, now):
                    continue
                await self.accumulator.reset_entity(
                    entity.id,
                    details=f"Automatic bandwidth reset on day {entity.reset_day}",
                    now=now,
                )
                reset.append(entity.id)
                logger.info("Bandwidth reset for container %s (%s)", entity.name, entity.id)
            except Exception:
                logger.exception("Error resetting bandwidth for container %s", entity.name)
        return reset

    async def run_expiry_pass(self) -> List[str]:
        """Stop and mark expired every container past its expiry time.

        Returns:
            Ids of containers marked expired
        """
        now = self._clock()
        entities = await asyncio.to_thread(self.store.find_all)

        expired = []
        for entity in entities:
            if entity.expire_at is None or entity.expire_at > now:
                continue
            if entity.status == EntityStatus.EXPIRED:
                continue
            try:
                if await self._expire(entity, now):
                    expired.append(entity.id)
            except Exception:
                logger.exception("Error checking expiration for container %s", entity.name)
        return expired

    async def retry_expiry(self) -> List[str]:
        """Re-attempt expiry of containers whose stop failed earlier."""
        if not self._expiry_retry:
            return []

        now = self._clock()
        expired = []
        for entity_id in sorted(self._expiry_retry):
            try:
                entity = await asyncio.to_thread(self.store.find_by_id, entity_id)
                if entity is None or entity.status == EntityStatus.EXPIRED:
                    self._expiry_retry.discard(entity_id)
                    continue
                if entity.expire_at is None or entity.expire_at > now:
                    # Expiry was extended in the meantime
                    self._expiry_retry.discard(entity_id)
                    continue
                if await self._expire(entity, now):
                    expired.append(entity_id)
            except Exception:
                logger.exception("Error retrying expiration for container %s", entity_id)
        return expired

    async def _expire(self, entity: Entity, now: datetime) -> bool:
        if await self.runtime.is_running(entity.id):
            try:
                await self.runtime.stop(entity.id)
            except (RuntimeQueryError, RuntimeUnavailable) as e:
                self._expiry_retry.add(entity.id)
                logger.error("Failed to stop expired container %s, will retry: %s", entity.name, e)
                return False

        try:
            await asyncio.to_thread(self.store.update_status, entity.id, EntityStatus.EXPIRED)
            await asyncio.to_thread(
                self.store.append_audit,
                AuditRecord(
                    entity_id=entity.id,
                    action=AuditAction.EXPIRED,
                    details=f"Container expired at {entity.expire_at.isoformat()}",
                    timestamp=now,
                ),
            )
        except StoreError:
            self._expiry_retry.add(entity.id)
            raise

        self._expiry_retry.discard(entity.id)
        logger.info("Container %s (%s) expired and stopped", entity.name, entity.id)
        return True
