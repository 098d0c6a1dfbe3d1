"""
Batched persistence of traffic deltas.

Deltas are queued by the accumulator on every sample and written to the
traffic ledger on a slower cadence together with each container's live
usage.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Set

from bandwidth_guard.storage.models import TrafficDelta
from bandwidth_guard.storage.repository import EntityRepository, StoreError

if TYPE_CHECKING:
    from .accounting import SampleCache

logger = logging.getLogger(__name__)


def fold_deltas(deltas: Iterable[TrafficDelta]) -> Dict[str, int]:
    """Sum total bytes per container."""
    totals: Dict[str, int] = {}
    for delta in deltas:
        totals[delta.entity_id] = totals.get(delta.entity_id, 0) + delta.total_bytes
    return totals


class PersistenceBatcher:
    """Queue of pending deltas flushed to the store in one transaction.

    Durable usage is overwritten with the cache's accumulated value rather
    than incremented, so re-flushing the same deltas after a failure never
    inflates usage.
    """

    def __init__(self, store: EntityRepository, cache: "SampleCache"):
        self.store = store
        self.cache = cache
        self._pending: List[TrafficDelta] = []
        self._dirty: Set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def enqueue(self, delta: TrafficDelta) -> None:
        self._pending.append(delta)

    def touch(self, entity_id: str) -> None:
        """Mark a container's usage for rewrite on the next flush without a delta."""
        self._dirty.add(entity_id)

    async def flush(self) -> int:
        """Write queued deltas and sync durable usage.

        Deltas queued while the write is in progress stay in the queue for the
        next flush. A failed ledger write leaves the queue intact.

        Returns:
            Number of deltas written (0 when nothing was pending or the write failed)
        """
        async with self._lock:
            if not self._pending and not self._dirty:
                return 0

            batch = list(self._pending)
            dirty = set(self._dirty)

            if batch:
                try:
                    known_ids = await asyncio.to_thread(self.store.find_ids)
                    writable = [d for d in batch if d.entity_id in known_ids]
                    await asyncio.to_thread(self.store.append_traffic_deltas, writable)
                except StoreError as e:
                    logger.error("Failed to persist %d traffic logs: %s", len(batch), e)
                    return 0
                if len(writable) < len(batch):
                    logger.warning(
                        "Dropped %d traffic deltas for containers no longer in the store",
                        len(batch) - len(writable),
                    )
                # Only the snapshot is removed; enqueue() only appends
                del self._pending[:len(batch)]
            else:
                writable = []

            self._dirty -= dirty
            for entity_id in set(fold_deltas(writable)) | dirty:
                accumulated = self.cache.accumulated(entity_id)
                if accumulated is None:
                    continue
                try:
                    await asyncio.to_thread(self.store.update_usage, entity_id, accumulated)
                except StoreError as e:
                    logger.error("Failed to update usage of %s: %s", entity_id, e)
                    self._dirty.add(entity_id)

            logger.debug("Persisted %d traffic logs", len(writable))
            return len(writable)
