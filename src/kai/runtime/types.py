"""Runtime domain types shared by every backend."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, Literal

from pydantic import BaseModel, ConfigDict, Field


class RuntimeType(str, Enum):
    DOCKER = "docker"
    CONTAINERD = "containerd"
    LIMA = "lima"


ContainerState = Literal["running", "stopped", "paused", "restarting", "removing", "exited", "dead"]
HealthState = Literal["healthy", "unhealthy", "starting", "none"]
RestartPolicy = Literal["no", "always", "on-failure", "unless-stopped"]


class VolumeBinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str  # Absolute host path or a named volume
    container: str
    read_only: bool = False

    def to_bind(self) -> str:
        return f"{self.host}:{self.container}{':ro' if self.read_only else ''}"


class HealthCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    test: list[str]
    interval_s: float = 30.0
    timeout_s: float = 30.0
    retries: int = 3
    start_period_s: float | None = None


class ContainerConfig(BaseModel):
    """Everything a backend needs to create and start one container."""

    model_config = ConfigDict(frozen=True)

    name: str
    image: str
    env: dict[str, str] = Field(default_factory=dict)
    ports: dict[str, str] = Field(default_factory=dict)  # containerPort -> hostPort
    volumes: list[VolumeBinding] = Field(default_factory=list)
    networks: list[str] = Field(default_factory=list)
    command: list[str] | None = None
    restart: RestartPolicy | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    healthcheck: HealthCheck | None = None


class PortBinding(BaseModel):
    container_port: int
    host_port: int | None = None
    protocol: Literal["tcp", "udp"] = "tcp"


class ContainerInfo(BaseModel):
    id: str
    name: str
    image: str
    state: ContainerState
    status: str = ""
    health: HealthState | None = None
    created: datetime | None = None
    ports: list[PortBinding] = Field(default_factory=list)


class ImageInfo(BaseModel):
    id: str
    tags: list[str] = Field(default_factory=list)
    size: int = 0
    created: datetime | None = None


class NetworkInfo(BaseModel):
    id: str
    name: str
    driver: str = "bridge"
    containers: list[str] = Field(default_factory=list)


class VolumeInfo(BaseModel):
    name: str
    driver: str = "local"
    mountpoint: str = ""


class PullProgress(BaseModel):
    status: str
    current_bytes: int | None = None
    total_bytes: int | None = None
    percent: int | None = None  # 0-100


class MemoryUsage(BaseModel):
    used: int = 0
    limit: int = 0
    percentage: float = 0.0


class NetworkIO(BaseModel):
    rx: int = 0
    tx: int = 0


class BlockIO(BaseModel):
    read: int = 0
    write: int = 0


class ContainerStats(BaseModel):
    cpu: float = 0.0  # percentage
    memory: MemoryUsage = Field(default_factory=MemoryUsage)
    network: NetworkIO = Field(default_factory=NetworkIO)
    block_io: BlockIO = Field(default_factory=BlockIO)


class SystemInfo(BaseModel):
    os: str
    architecture: str
    cpus: int = 0
    memory: int = 0
    runtime_version: str = ""


class PruneOptions(BaseModel):
    containers: bool = True
    images: bool = True
    volumes: bool = True
    networks: bool = True


class PruneResult(BaseModel):
    containers_deleted: int = 0
    images_deleted: int = 0
    volumes_deleted: int = 0
    networks_deleted: int = 0
    space_reclaimed: int = 0  # bytes


OnPullProgress = Callable[[PullProgress], None]
