"""
Container discovery.

Brings containers that appear under the monitoring label into the store.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from bandwidth_guard.runtime.base import RuntimeAdapter
from bandwidth_guard.storage.models import (
    AuditAction,
    AuditRecord,
    Entity,
    EntityStatus,
    utcnow,
)
from bandwidth_guard.storage.repository import EntityRepository, StoreError

logger = logging.getLogger(__name__)


class ContainerSync:
    """Coalescing discovery of runtime containers.

    Passes never overlap. A regular caller that arrives while a pass is in
    flight shares that pass's result. A forced caller waits for the in-flight
    pass and then always runs a pass of its own.
    """

    def __init__(
        self,
        store: EntityRepository,
        runtime: RuntimeAdapter,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.runtime = runtime
        self._clock = clock
        self._pass_lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Future] = None

    async def sync(self, force: bool = False) -> List[str]:
        """Synchronize runtime containers into the store.

        Args:
            force: Run a fresh pass even if one is already in flight

        Returns:
            Ids of containers created by the pass

        Raises:
            RuntimeUnavailable: If the runtime cannot be listed
        """
        current = self._inflight
        if current is not None and not current.done() and not force:
            return await asyncio.shield(current)

        task = asyncio.ensure_future(self._run_pass())
        self._inflight = task
        return await asyncio.shield(task)

    async def _run_pass(self) -> List[str]:
        async with self._pass_lock:
            runtime_entities = await self.runtime.list_monitored_entities()
            known_ids = await asyncio.to_thread(self.store.find_ids)

            created = []
            for runtime_entity in runtime_entities:
                if runtime_entity.id in known_ids:
                    continue

                entity = Entity(
                    id=runtime_entity.id,
                    name=runtime_entity.name,
                    status=EntityStatus.ACTIVE if runtime_entity.running else EntityStatus.STOPPED,
                )
                try:
                    await asyncio.to_thread(self.store.create, entity)
                    await asyncio.to_thread(
                        self.store.append_audit,
                        AuditRecord(
                            entity_id=entity.id,
                            action=AuditAction.START,
                            details="Container discovered and added to monitoring",
                            timestamp=self._clock(),
                        ),
                    )
                except StoreError as e:
                    logger.error("Failed to add container %s: %s", entity.name, e)
                    continue

                known_ids.add(entity.id)
                created.append(entity.id)
                logger.info("New container added to monitoring: %s (%s)", entity.name, entity.id)

            return created
