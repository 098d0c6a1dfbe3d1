"""
Docker implementation of the runtime contract.

Wraps the blocking Docker SDK low-level client. Every call runs in a worker
thread so a slow daemon response for one container never stalls the event
loop or the other containers' sampling.
"""

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional

import docker
import requests
from docker.errors import APIError, DockerException, NotFound

from .base import ContainerStats, RuntimeEntity, RuntimeQueryError, RuntimeUnavailable

logger = logging.getLogger(__name__)

# Docker answers 304 Not Modified for start/stop of a container already in that state
HTTP_NOT_MODIFIED = 304

_OPT_OUT_VALUES = {"false", "0"}


class DockerRuntime:
    """Runtime adapter backed by the Docker Engine API.

    The API client is created on first use; constructing a ``DockerRuntime``
    never touches the socket.
    """

    def __init__(
        self,
        base_url: str = "unix:///var/run/docker.sock",
        monitor_label: str = "bandwidth.monitor",
        self_container_id: Optional[str] = None,
        self_container_name: Optional[str] = None,
        client: Optional[docker.APIClient] = None,
    ):
        self.base_url = base_url
        self.monitor_label = monitor_label
        self.self_container_id = self_container_id
        self.self_container_name = self_container_name
        self._client = client
        self._client_lock = threading.Lock()

    def _get_client(self) -> docker.APIClient:
        with self._client_lock:
            if self._client is None:
                try:
                    self._client = docker.APIClient(base_url=self.base_url)
                except DockerException as e:
                    raise RuntimeUnavailable(f"Docker endpoint {self.base_url} unreachable: {e}") from e
            return self._client

    def _drop_client(self) -> None:
        with self._client_lock:
            client, self._client = self._client, None
        if client is not None:
            client.close()

    async def _run(self, fn, *args, **kwargs):
        return await asyncio.to_thread(self._call, fn, *args, **kwargs)

    def _call(self, fn, *args, **kwargs):
        client = self._get_client()
        try:
            return fn(client, *args, **kwargs)
        except requests.exceptions.ConnectionError as e:
            self._drop_client()
            raise RuntimeUnavailable(f"Docker endpoint {self.base_url} unreachable: {e}") from e

    async def list_monitored_entities(self) -> List[RuntimeEntity]:
        """List containers under monitoring, excluding this process's own container.

        A container is monitored unless its monitoring label is an explicit
        opt-out (``false`` or ``0``).

        Raises:
            RuntimeUnavailable: If the Docker endpoint cannot be reached
            RuntimeQueryError: If Docker rejects the request
        """
        try:
            containers = await self._run(lambda c: c.containers(all=True))
        except DockerException as e:
            raise RuntimeQueryError(f"Failed to list containers: {e}") from e

        entities = []
        for info in containers:
            entity = RuntimeEntity(
                id=info["Id"],
                name=_primary_name(info),
                running=info.get("State") == "running",
                labels=info.get("Labels") or {},
            )
            if self._is_self(entity, info.get("Names") or []):
                continue
            label_value = entity.labels.get(self.monitor_label)
            if isinstance(label_value, str) and label_value.lower() in _OPT_OUT_VALUES:
                continue
            entities.append(entity)
        return entities

    async def get_stats(self, entity_id: str) -> Optional[ContainerStats]:
        """Return a stats snapshot, or None if the container is not running.

        Raises:
            RuntimeUnavailable: If the Docker endpoint cannot be reached
            RuntimeQueryError: If Docker returns malformed or missing data
        """
        try:
            info = await self._run(lambda c: c.inspect_container(entity_id))
            if not info.get("State", {}).get("Running"):
                logger.debug("Container %s is not running", entity_id)
                return None
            payload = await self._run(lambda c: c.stats(entity_id, stream=False))
        except NotFound:
            return None
        except DockerException as e:
            raise RuntimeQueryError(f"Failed to get stats for {entity_id}: {e}") from e

        return parse_stats(entity_id, info, payload)

    async def is_running(self, entity_id: str) -> bool:
        """Check the running state; any failure counts as not running."""
        try:
            info = await self._run(lambda c: c.inspect_container(entity_id))
            return bool(info.get("State", {}).get("Running"))
        except Exception as e:
            logger.debug("Running check failed for %s: %s", entity_id, e)
            return False

    async def start(self, entity_id: str) -> None:
        await self._lifecycle("start", entity_id)

    async def stop(self, entity_id: str) -> None:
        await self._lifecycle("stop", entity_id)

    async def _lifecycle(self, action: str, entity_id: str) -> None:
        try:
            await self._run(lambda c: getattr(c, action)(entity_id))
        except APIError as e:
            if e.status_code == HTTP_NOT_MODIFIED:
                logger.debug("Container %s already in %s state", entity_id, action)
                return
            raise RuntimeQueryError(f"Failed to {action} container {entity_id}: {e}") from e
        except DockerException as e:
            raise RuntimeQueryError(f"Failed to {action} container {entity_id}: {e}") from e
        logger.info("Container %s %s", entity_id, "started" if action == "start" else "stopped")

    async def close(self) -> None:
        await asyncio.to_thread(self._drop_client)

    def _is_self(self, entity: RuntimeEntity, names: List[str]) -> bool:
        if self.self_container_name:
            if any(name.lstrip("/") == self.self_container_name for name in names):
                return True
        if self.self_container_id:
            if entity.id == self.self_container_id or entity.id.startswith(self.self_container_id):
                return True
        return False


def _primary_name(info: Dict[str, Any]) -> str:
    names = info.get("Names") or []
    if names:
        return names[0].lstrip("/")
    return info["Id"]


def parse_stats(entity_id: str, info: Dict[str, Any], payload: Any) -> ContainerStats:
    """Build a ContainerStats from a one-shot Docker stats payload.

    Raises:
        RuntimeQueryError: If the payload has no usable network counters
    """
    if not isinstance(payload, dict):
        raise RuntimeQueryError(f"Unexpected stats payload for {entity_id}")

    networks = payload.get("networks")
    if not isinstance(networks, dict) or not networks:
        raise RuntimeQueryError(f"Container {entity_id} has no network stats")

    rx_bytes = 0
    tx_bytes = 0
    for interface, counters in networks.items():
        try:
            rx_bytes += int(counters.get("rx_bytes", 0))
            tx_bytes += int(counters.get("tx_bytes", 0))
        except (AttributeError, TypeError, ValueError) as e:
            raise RuntimeQueryError(
                f"Malformed counters on {interface} for {entity_id}: {e}"
            ) from e

    memory = payload.get("memory_stats") or {}
    return ContainerStats(
        id=entity_id,
        name=(info.get("Name") or entity_id).lstrip("/"),
        status=info.get("State", {}).get("Status", "unknown"),
        rx_bytes=rx_bytes,
        tx_bytes=tx_bytes,
        memory_usage=int(memory.get("usage") or 0),
        memory_limit=int(memory.get("limit") or 0),
    )
