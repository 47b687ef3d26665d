"""Barrel re-export of all domain types."""

from kai.infrastructure.settings import KaiConfig, ValidationResult
from kai.runtime.types import (
    ContainerConfig,
    ContainerInfo,
    ContainerStats,
    HealthCheck,
    ImageInfo,
    NetworkInfo,
    PortBinding,
    PruneOptions,
    PruneResult,
    PullProgress,
    RuntimeType,
    SystemInfo,
    VolumeBinding,
    VolumeInfo,
)
from kai.services.types import (
    ImageDownloadPermissionRequest,
    ServiceDefinition,
    ServiceEvent,
    ServiceStatus,
    StatusesChanged,
)

__all__ = [
    "ContainerConfig",
    "ContainerInfo",
    "ContainerStats",
    "HealthCheck",
    "ImageDownloadPermissionRequest",
    "ImageInfo",
    "KaiConfig",
    "NetworkInfo",
    "PortBinding",
    "PruneOptions",
    "PruneResult",
    "PullProgress",
    "RuntimeType",
    "ServiceDefinition",
    "ServiceEvent",
    "ServiceStatus",
    "StatusesChanged",
    "SystemInfo",
    "ValidationResult",
    "VolumeBinding",
    "VolumeInfo",
]
