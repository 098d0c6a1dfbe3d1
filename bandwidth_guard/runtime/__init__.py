"""
Container runtime adapters for Bandwidth Guard.

Provides access to container network counters and lifecycle control.
"""

from .base import ContainerStats, RuntimeAdapter, RuntimeEntity, RuntimeQueryError, RuntimeUnavailable
from .docker_runtime import DockerRuntime

__all__ = [
    "ContainerStats",
    "DockerRuntime",
    "RuntimeAdapter",
    "RuntimeEntity",
    "RuntimeQueryError",
    "RuntimeUnavailable",
]
