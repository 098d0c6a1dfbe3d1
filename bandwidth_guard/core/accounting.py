"""
Traffic accounting.

Turns cumulative network counters into per-interval deltas and keeps a
running usage total per container ahead of durable storage.

Per-container processing on each sampling tick:
1. Skip containers that are not running
2. Mark a running container active if it was started out of band
3. Seed the cache on first observation (no delta, the baseline is not traffic)
4. Compute the delta, tolerating counter resets
5. Advance the cache, queue the delta, run quota enforcement
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from bandwidth_guard.runtime.base import RuntimeAdapter, RuntimeQueryError, RuntimeUnavailable
from bandwidth_guard.storage.models import (
    AuditAction,
    AuditRecord,
    Entity,
    EntityStatus,
    TrafficDelta,
    from_millis,
    to_millis,
    utcnow,
)
from bandwidth_guard.storage.repository import EntityRepository, StoreError

from .batcher import PersistenceBatcher
from .enforcement import EnforcementActionFailed, EnforcementPolicy

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Last observed counters and live usage of one container."""
    rx_bytes: int
    tx_bytes: int
    accumulated: int
    last_check: datetime
    last_reset_at: Optional[datetime] = None


class SampleCache:
    """In-memory write-ahead cache of counters and accumulated usage.

    Owned and mutated by the accumulator only. Other components get read
    access through ``accumulated``.
    """

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, entity_id: str) -> Optional[CacheEntry]:
        return self._entries.get(entity_id)

    def accumulated(self, entity_id: str) -> Optional[int]:
        """Live usage of a container, or None if it has not been sampled yet."""
        entry = self._entries.get(entity_id)
        return entry.accumulated if entry else None

    def seed(
        self,
        entity_id: str,
        rx_bytes: int,
        tx_bytes: int,
        baseline: int,
        now: datetime,
        last_reset_at: Optional[datetime] = None,
    ) -> CacheEntry:
        entry = CacheEntry(
            rx_bytes=rx_bytes,
            tx_bytes=tx_bytes,
            accumulated=baseline,
            last_check=now,
            last_reset_at=last_reset_at,
        )
        self._entries[entity_id] = entry
        return entry

    def reset(self, entity_id: str, at: Optional[datetime] = None) -> None:
        """Zero accumulated usage in place, keeping the last counters."""
        entry = self._entries.get(entity_id)
        if entry is not None:
            entry.accumulated = 0
            entry.last_reset_at = at

    def discard(self, entity_id: str) -> None:
        self._entries.pop(entity_id, None)

    def retain(self, entity_ids: Iterable[str]) -> List[str]:
        """Drop entries for containers no longer in the store."""
        keep = set(entity_ids)
        dropped = [entity_id for entity_id in self._entries if entity_id not in keep]
        for entity_id in dropped:
            del self._entries[entity_id]
        return dropped


def compute_delta(prev_rx: int, prev_tx: int, rx: int, tx: int) -> Tuple[int, int, bool]:
    """Compute rx/tx deltas between two cumulative counter samples.

    If either counter went backwards (container restart or counter rollover)
    the current absolute values are taken as the deltas. This can undercount
    traffic sent between the last sample and the reset, but it never double
    counts and never goes negative.

    Returns:
        Tuple of (rx_delta, tx_delta, counter_reset)
    """
    rx_delta = rx - prev_rx
    tx_delta = tx - prev_tx
    if rx_delta < 0 or tx_delta < 0:
        return rx, tx, True
    return rx_delta, tx_delta, False


class TrafficAccumulator:
    """Samples every known container and accumulates its usage.

    Containers are processed concurrently. A per-container lock guarantees
    that only one tick's worth of work for a given container runs at a time;
    a container still busy from the previous tick is skipped.
    """

    def __init__(
        self,
        store: EntityRepository,
        runtime: RuntimeAdapter,
        cache: SampleCache,
        batcher: PersistenceBatcher,
        enforcement: EnforcementPolicy,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.runtime = runtime
        self.cache = cache
        self.batcher = batcher
        self.enforcement = enforcement
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, entity_id: str) -> asyncio.Lock:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = self._locks[entity_id] = asyncio.Lock()
        return lock

    async def sample_once(self) -> List[TrafficDelta]:
        """Run one sampling pass over all stored containers.

        Returns:
            Deltas produced during this pass

        Raises:
            StoreError: If the container list cannot be loaded
        """
        entities = await asyncio.to_thread(self.store.find_all)

        live_ids = {entity.id for entity in entities}
        for entity_id in self.cache.retain(live_ids):
            logger.info("Container %s no longer tracked, dropping its sample cache", entity_id)
        for entity_id in [i for i in self._locks if i not in live_ids]:
            if not self._locks[entity_id].locked():
                del self._locks[entity_id]

        results = await asyncio.gather(*(self._sample_guarded(entity) for entity in entities))
        return [delta for delta in results if delta is not None]

    async def _sample_guarded(self, entity: Entity) -> Optional[TrafficDelta]:
        lock = self._lock_for(entity.id)
        if lock.locked():
            logger.debug("Container %s still busy from previous tick, skipping", entity.name)
            return None
        async with lock:
            try:
                return await self._sample_entity(entity)
            except (RuntimeQueryError, RuntimeUnavailable) as e:
                logger.warning("Skipping %s this tick: %s", entity.name, e)
            except EnforcementActionFailed as e:
                logger.error("%s; will retry next tick", e)
            except StoreError as e:
                logger.error("Store error while sampling %s: %s", entity.name, e)
            except Exception:
                logger.exception("Error collecting traffic for container %s", entity.name)
        return None

    async def sample_entity(self, entity: Entity) -> Optional[TrafficDelta]:
        """Sample one container under its lock, propagating errors."""
        async with self._lock_for(entity.id):
            return await self._sample_entity(entity)

    async def _sample_entity(self, entity: Entity) -> Optional[TrafficDelta]:
        if not await self.runtime.is_running(entity.id):
            return None
        entity = await self._heal_status(entity)

        stats = await self.runtime.get_stats(entity.id)
        if stats is None:
            return None

        now = self._clock()
        entry = self.cache.get(entity.id)
        if entry is None:
            # Re-read under the lock so a reset that raced this tick is honoured
            fresh = await asyncio.to_thread(self.store.find_by_id, entity.id)
            if fresh is not None:
                entity = fresh
            baseline = entity.usage
            self.cache.seed(
                entity.id, stats.rx_bytes, stats.tx_bytes, baseline, now,
                last_reset_at=entity.last_reset_at,
            )
            logger.debug("Seeded %s at rx=%d tx=%d usage=%d", entity.name, stats.rx_bytes, stats.tx_bytes, baseline)
            return None

        if _reset_out_of_band(entry, entity):
            # Usage was reset by another process (e.g. the CLI); drop live usage too
            logger.info("Container %s was reset externally, zeroing live usage", entity.name)
            self.cache.reset(entity.id, at=entity.last_reset_at)
            self.batcher.touch(entity.id)

        rx_delta, tx_delta, counter_reset = compute_delta(
            entry.rx_bytes, entry.tx_bytes, stats.rx_bytes, stats.tx_bytes
        )
        if counter_reset:
            logger.warning("Container %s network counters reset, recalculating", entity.name)

        total_delta = rx_delta + tx_delta
        entry.accumulated += total_delta
        entry.rx_bytes = stats.rx_bytes
        entry.tx_bytes = stats.tx_bytes
        entry.last_check = now

        delta = TrafficDelta(
            entity_id=entity.id,
            rx_bytes=rx_delta,
            tx_bytes=tx_delta,
            total_bytes=total_delta,
            timestamp=now,
        )
        self.batcher.enqueue(delta)

        await self.enforcement.enforce(entity, entry.accumulated)
        return delta

    async def _heal_status(self, entity: Entity) -> Entity:
        """Mark a container seen running as active if it is stored as stopped.

        Only a positive running observation changes the status; a failed
        runtime query never marks a container stopped. Expired containers keep
        their status whatever the runtime says.
        """
        if entity.status != EntityStatus.STOPPED:
            return entity
        desired = EntityStatus.ACTIVE
        try:
            await asyncio.to_thread(self.store.update_status, entity.id, desired)
            logger.info("Container %s status corrected %s -> %s", entity.name, entity.status.value, desired.value)
        except StoreError as e:
            logger.error("Failed to correct status of %s: %s", entity.name, e)
        return replace(entity, status=desired)

    async def reset_entity(
        self,
        entity_id: str,
        details: str = "Bandwidth manually reset",
        now: Optional[datetime] = None,
    ) -> None:
        """Zero a container's usage in storage and in the live cache.

        Raises:
            StoreError: If the durable reset fails (the cache is left untouched)
        """
        now = now or self._clock()
        async with self._lock_for(entity_id):
            await asyncio.to_thread(self.store.reset_usage, entity_id, now)
            # Same millisecond precision as the stored stamp
            self.cache.reset(entity_id, at=from_millis(to_millis(now)))
            self.batcher.touch(entity_id)
        await asyncio.to_thread(
            self.store.append_audit,
            AuditRecord(entity_id=entity_id, action=AuditAction.RESET, details=details, timestamp=now),
        )
        logger.info("Traffic reset for container %s", entity_id)


def _reset_out_of_band(entry: CacheEntry, entity: Entity) -> bool:
    if entity.last_reset_at is None:
        return False
    return entry.last_reset_at is None or entity.last_reset_at > entry.last_reset_at
