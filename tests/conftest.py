"""
Shared fixtures for the test suite.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from bandwidth_guard.runtime.base import ContainerStats, RuntimeEntity, RuntimeQueryError
from bandwidth_guard.storage.repository import EntityRepository


class FakeRuntime:
    """In-memory runtime with scriptable counters and failures."""

    def __init__(self):
        self.entities: List[RuntimeEntity] = []
        self.counters: Dict[str, Tuple[int, int]] = {}
        self.running: Dict[str, bool] = {}
        self.stop_calls: List[str] = []
        self.start_calls: List[str] = []
        self.stop_error: Optional[Exception] = None
        self.list_delay = 0.0
        self.list_calls = 0
        self.closed = False

    def add(self, entity_id: str, name: str, running: bool = True, rx: int = 0, tx: int = 0):
        self.entities.append(RuntimeEntity(id=entity_id, name=name, running=running))
        self.running[entity_id] = running
        self.counters[entity_id] = (rx, tx)

    async def list_monitored_entities(self) -> List[RuntimeEntity]:
        self.list_calls += 1
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        return list(self.entities)

    async def get_stats(self, entity_id: str) -> Optional[ContainerStats]:
        if not self.running.get(entity_id):
            return None
        if entity_id not in self.counters:
            raise RuntimeQueryError(f"no stats for {entity_id}")
        rx, tx = self.counters[entity_id]
        return ContainerStats(id=entity_id, name=entity_id, status="running", rx_bytes=rx, tx_bytes=tx)

    async def is_running(self, entity_id: str) -> bool:
        return self.running.get(entity_id, False)

    async def start(self, entity_id: str) -> None:
        self.start_calls.append(entity_id)
        self.running[entity_id] = True

    async def stop(self, entity_id: str) -> None:
        self.stop_calls.append(entity_id)
        if self.stop_error is not None:
            raise self.stop_error
        self.running[entity_id] = False

    async def close(self) -> None:
        self.closed = True


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "test.db")


@pytest.fixture
def repo(db_path):
    repository = EntityRepository(db_path)
    repository.initialize_schema()
    return repository


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc))
