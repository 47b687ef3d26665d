"""Container runtime abstraction: the capability set every backend implements."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from kai.runtime.types import (
    ContainerConfig,
    ContainerInfo,
    ContainerStats,
    ImageInfo,
    NetworkInfo,
    OnPullProgress,
    PruneOptions,
    PruneResult,
    RuntimeType,
    SystemInfo,
    VolumeInfo,
)


@runtime_checkable
class ContainerRuntime(Protocol):
    """Interface for container runtimes (Docker, containerd, Lima).

    Every operation raises RuntimeOperationFailedError on failure, whatever
    the backend.
    """

    async def initialize(self) -> None: ...
    async def is_available(self) -> bool: ...
    def get_runtime_type(self) -> RuntimeType: ...

    # Container lifecycle
    async def start_container(self, config: ContainerConfig) -> str: ...
    async def stop_container(self, id: str, timeout: int | None = None) -> None: ...
    async def remove_container(self, id: str, force: bool = False) -> None: ...
    async def restart_container(self, id: str, timeout: int | None = None) -> None: ...
    async def pause_container(self, id: str) -> None: ...
    async def unpause_container(self, id: str) -> None: ...

    # Container information
    async def inspect_container(self, id: str) -> ContainerInfo: ...
    async def list_containers(
        self, all: bool = True, filters: dict[str, list[str]] | None = None
    ) -> list[ContainerInfo]: ...
    async def get_container_logs(
        self, id: str, tail: int | None = 100, since: int | None = None, timestamps: bool = False
    ) -> str: ...
    async def get_container_stats(self, id: str) -> ContainerStats: ...

    # Images
    async def pull_image(self, name: str, on_progress: OnPullProgress | None = None) -> None: ...
    async def list_images(self) -> list[ImageInfo]: ...
    async def remove_image(self, id: str, force: bool = False) -> None: ...
    async def image_exists(self, name: str) -> bool: ...
    async def load_image(self, archive: Path) -> None: ...

    # Networks
    async def create_network(
        self, name: str, driver: str = "bridge", internal: bool = False, attachable: bool = True
    ) -> str: ...
    async def remove_network(self, id: str) -> None: ...
    async def list_networks(self) -> list[NetworkInfo]: ...
    async def connect_container_to_network(self, container_id: str, network_id: str) -> None: ...
    async def disconnect_container_from_network(self, container_id: str, network_id: str) -> None: ...

    # Volumes
    async def create_volume(
        self, name: str, driver: str = "local", labels: dict[str, str] | None = None
    ) -> str: ...
    async def remove_volume(self, name: str, force: bool = False) -> None: ...
    async def list_volumes(self) -> list[VolumeInfo]: ...

    # System
    async def get_system_info(self) -> SystemInfo: ...
    async def prune(self, options: PruneOptions | None = None) -> PruneResult: ...
