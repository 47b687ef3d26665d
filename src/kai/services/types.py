"""Service domain types."""

from __future__ import annotations

from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

from kai.infrastructure.settings import KaiConfig
from kai.runtime.types import ContainerConfig, HealthState

ServiceState = Literal["running", "stopped", "starting", "stopping", "error", "unknown"]

ServiceEventType = Literal["image-pulling", "image-pulling-progress", "image-pulled", "image-pull-error"]


class ServiceDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    display_name: str
    description: str
    container_config: Callable[[KaiConfig], ContainerConfig]
    essential: bool = False
    depends_on: tuple[str, ...] = ()

    def container_name(self, config: KaiConfig) -> str:
        return self.container_config(config).name


class ServiceStatus(BaseModel):
    name: str
    display_name: str
    description: str
    status: ServiceState
    container_id: str | None = None
    health: HealthState | None = None
    error: str | None = None
    essential: bool = False


class ServiceEvent(BaseModel):
    service_name: str
    event_type: ServiceEventType
    data: dict[str, Any] = Field(default_factory=dict)


class StatusesChanged(BaseModel):
    statuses: list[ServiceStatus]


class ImageDownloadPermissionRequest(BaseModel):
    id: str
    service_name: str
    image_name: str


Event = ServiceEvent | StatusesChanged | ImageDownloadPermissionRequest
