"""
Monitor service wiring and lifecycle.

Builds every component explicitly at startup and runs the periodic jobs:
sampling, persistence flush, discovery, quota reset, expiry and expiry retry.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from bandwidth_guard.config.loader import Settings
from bandwidth_guard.runtime.base import RuntimeAdapter
from bandwidth_guard.runtime.docker_runtime import DockerRuntime
from bandwidth_guard.storage.models import AuditAction, AuditRecord, utcnow
from bandwidth_guard.storage.repository import EntityRepository

from .accounting import SampleCache, TrafficAccumulator
from .batcher import PersistenceBatcher
from .discovery import ContainerSync
from .enforcement import EnforcementPolicy
from .periodic import PeriodicTask
from .scheduler import ResetExpiryScheduler

logger = logging.getLogger(__name__)


class MonitorService:
    """Long-running traffic monitor.

    Shutdown order: periodic jobs stop first, then pending deltas are
    flushed, then the runtime client is released.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[EntityRepository] = None,
        runtime: Optional[RuntimeAdapter] = None,
    ):
        self.settings = settings
        self.store = store or EntityRepository(settings.db_path)
        self.runtime = runtime or DockerRuntime(
            base_url=settings.docker_base_url,
            monitor_label=settings.monitor_label,
            self_container_id=settings.self_container_id,
            self_container_name=settings.self_container_name,
        )
        self.cache = SampleCache()
        self.batcher = PersistenceBatcher(self.store, self.cache)
        self.enforcement = EnforcementPolicy(self.store, self.runtime)
        self.accumulator = TrafficAccumulator(
            self.store, self.runtime, self.cache, self.batcher, self.enforcement
        )
        self.discovery = ContainerSync(self.store, self.runtime)
        self.scheduler = ResetExpiryScheduler(
            self.store, self.runtime, self.accumulator, tz=settings.tzinfo
        )
        self._tasks: List[PeriodicTask] = []
        self._stop_event: Optional[asyncio.Event] = None

    def _build_tasks(self) -> List[PeriodicTask]:
        s = self.settings
        return [
            PeriodicTask("sample", s.sample_interval_ms / 1000, self.accumulator.sample_once,
                         allow_overlap=True),
            PeriodicTask("flush", s.flush_interval_ms / 1000, self.batcher.flush),
            PeriodicTask("sync", s.sync_interval_ms / 1000, self.discovery.sync),
            PeriodicTask("reset", s.scheduler_interval_ms / 1000, self.scheduler.run_reset_pass,
                         run_immediately=True),
            PeriodicTask("expiry", s.scheduler_interval_ms / 1000, self.scheduler.run_expiry_pass,
                         run_immediately=True),
            PeriodicTask("expiry-retry", s.expiry_retry_interval_ms / 1000, self.scheduler.retry_expiry),
        ]

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Initialize storage, discover containers and start periodic jobs.

        Raises:
            StoreError: If the database cannot be initialized (fatal)
        """
        if self._tasks:
            return
        logger.info("Starting traffic collection service...")

        await asyncio.to_thread(self.store.initialize_schema)
        logger.info("Database initialized at %s", self.settings.db_path)

        try:
            await self.discovery.sync(force=True)
        except Exception as e:
            logger.error("Failed to sync containers: %s", e)

        self._tasks = self._build_tasks()
        for task in self._tasks:
            task.start()

        logger.info(
            "Traffic service started (collect: %dms, persist: %dms, sync: %dms)",
            self.settings.sample_interval_ms,
            self.settings.flush_interval_ms,
            self.settings.sync_interval_ms,
        )

    async def stop(self) -> None:
        """Stop periodic jobs, flush pending deltas, release the runtime."""
        for task in self._tasks:
            await task.stop()
        self._tasks = []

        flushed = await self.batcher.flush()
        if self.batcher.pending:
            logger.error("%d traffic deltas could not be persisted at shutdown", self.batcher.pending)
        else:
            logger.debug("Final flush wrote %d traffic logs", flushed)

        await self.runtime.close()
        logger.info("Traffic service stopped")

    async def refresh_now(self) -> List[str]:
        """Force discovery and an immediate sampling pass.

        Returns:
            Ids of containers discovered by the forced pass
        """
        created = await self.discovery.sync(force=True)
        await self.accumulator.sample_once()
        await asyncio.to_thread(
            self.store.append_audit,
            AuditRecord(
                entity_id=None,
                action=AuditAction.RESET,
                details="Manual traffic refresh triggered",
                timestamp=utcnow(),
            ),
        )
        return created

    async def reset_entity(self, entity_id: str) -> None:
        await self.accumulator.reset_entity(entity_id)

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def run_forever(self) -> None:
        """Run until SIGINT/SIGTERM or ``request_stop``."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                pass

        try:
            await self.start()
            await self._stop_event.wait()
        finally:
            logger.info("Shutting down gracefully...")
            await self.stop()
            for sig in installed:
                loop.remove_signal_handler(sig)
