from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from kai.errors import RuntimeOperationFailedError
from kai.infrastructure.settings import ConfigStore
from kai.runtime.types import (
    ContainerConfig,
    ContainerInfo,
    ContainerStats,
    ImageInfo,
    NetworkInfo,
    PruneOptions,
    PruneResult,
    PullProgress,
    RuntimeType,
    SystemInfo,
    VolumeInfo,
)
from kai.services.events import EventBus
from kai.services.orchestrator import ServiceManager


class FakeRuntime:
    """In-memory runtime that records every call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.containers: dict[str, ContainerInfo] = {}
        self.images: set[str] = set()
        self.networks: dict[str, NetworkInfo] = {}
        self.volumes: dict[str, VolumeInfo] = {}
        self.fail_start: set[str] = set()
        self.fail_list = False
        self.fail_pull = False
        self.health_on_start: dict[str, str | None] = {}
        self.state_on_start: dict[str, str] = {}
        self.all_images_present = True

    def get_runtime_type(self) -> RuntimeType:
        return RuntimeType.DOCKER

    async def initialize(self) -> None:
        self.calls.append(("initialize",))

    async def is_available(self) -> bool:
        return True

    def add_container(self, name: str, state: str = "running", health: str | None = None) -> ContainerInfo:
        info = ContainerInfo(
            id=hashlib.sha1(name.encode()).hexdigest(), name=name, image="img", state=state, health=health
        )
        self.containers[name] = info
        return info

    def _by_id(self, id: str) -> ContainerInfo:
        for info in self.containers.values():
            if info.id == id:
                return info
        raise RuntimeOperationFailedError(f"No such container: {id}")

    async def start_container(self, config: ContainerConfig) -> str:
        self.calls.append(("start_container", config.name))
        if config.name in self.fail_start:
            raise RuntimeOperationFailedError(f"cannot start {config.name}")
        if config.name in self.containers:
            raise RuntimeOperationFailedError(f"name {config.name} already in use")
        health = self.health_on_start.get(config.name, "healthy" if config.healthcheck else None)
        info = self.add_container(config.name, self.state_on_start.get(config.name, "running"), health)
        return info.id

    async def stop_container(self, id: str, timeout: int | None = None) -> None:
        info = self._by_id(id)
        self.calls.append(("stop_container", info.name))
        self.containers[info.name] = info.model_copy(update={"state": "exited"})

    async def remove_container(self, id: str, force: bool = False) -> None:
        info = self._by_id(id)
        self.calls.append(("remove_container", info.name, force))
        del self.containers[info.name]

    async def restart_container(self, id: str, timeout: int | None = None) -> None:
        self.calls.append(("restart_container", id))

    async def pause_container(self, id: str) -> None:
        self.calls.append(("pause_container", id))

    async def unpause_container(self, id: str) -> None:
        self.calls.append(("unpause_container", id))

    async def inspect_container(self, id: str) -> ContainerInfo:
        return self._by_id(id)

    async def list_containers(self, all: bool = True, filters: dict[str, list[str]] | None = None) -> list[ContainerInfo]:
        self.calls.append(("list_containers", tuple((filters or {}).get("name", []))))
        if self.fail_list:
            raise RuntimeOperationFailedError("engine unreachable")
        names = (filters or {}).get("name")
        result = list(self.containers.values())
        if names:
            # Engines match name filters by substring
            result = [c for c in result if any(n in c.name for n in names)]
        return result

    async def get_container_logs(self, id: str, tail: int | None = 100, since: int | None = None, timestamps: bool = False) -> str:
        return ""

    async def get_container_stats(self, id: str) -> ContainerStats:
        return ContainerStats()

    async def pull_image(self, name: str, on_progress=None) -> None:
        self.calls.append(("pull_image", name))
        if self.fail_pull:
            raise RuntimeOperationFailedError("manifest unknown")
        if on_progress:
            on_progress(PullProgress(status="Downloading", current_bytes=50, total_bytes=100, percent=50))
        self.images.add(name)

    async def list_images(self) -> list[ImageInfo]:
        return [ImageInfo(id=name, tags=[name]) for name in self.images]

    async def remove_image(self, id: str, force: bool = False) -> None:
        self.images.discard(id)

    async def image_exists(self, name: str) -> bool:
        self.calls.append(("image_exists", name))
        return self.all_images_present or name in self.images

    async def load_image(self, archive: Path) -> None:
        self.calls.append(("load_image", archive.name))

    async def create_network(self, name: str, driver: str = "bridge", internal: bool = False, attachable: bool = True) -> str:
        self.calls.append(("create_network", name))
        self.networks[name] = NetworkInfo(id=f"net-{name}", name=name, driver=driver)
        return f"net-{name}"

    async def remove_network(self, id: str) -> None:
        self.networks = {k: v for k, v in self.networks.items() if v.id != id}

    async def list_networks(self) -> list[NetworkInfo]:
        return list(self.networks.values())

    async def connect_container_to_network(self, container_id: str, network_id: str) -> None:
        self.calls.append(("connect", container_id, network_id))

    async def disconnect_container_from_network(self, container_id: str, network_id: str) -> None:
        self.calls.append(("disconnect", container_id, network_id))

    async def create_volume(self, name: str, driver: str = "local", labels: dict[str, str] | None = None) -> str:
        self.calls.append(("create_volume", name))
        self.volumes[name] = VolumeInfo(name=name, driver=driver)
        return name

    async def remove_volume(self, name: str, force: bool = False) -> None:
        self.volumes.pop(name, None)

    async def list_volumes(self) -> list[VolumeInfo]:
        return list(self.volumes.values())

    async def get_system_info(self) -> SystemInfo:
        return SystemInfo(os="linux", architecture="x86_64", cpus=4, memory=8 << 30, runtime_version="fake")

    async def prune(self, options: PruneOptions | None = None) -> PruneResult:
        return PruneResult()

    def started(self) -> list[str]:
        return [call[1] for call in self.calls if call[0] == "start_container"]


class FakeGate:
    """Permission gate with a fixed answer that records what was asked."""

    def __init__(self, allowed: bool = True) -> None:
        self.allowed = allowed
        self.requests: list[tuple[str, str]] = []

    async def request(self, service_name: str, image_name: str) -> bool:
        self.requests.append((service_name, image_name))
        return self.allowed


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def gate() -> FakeGate:
    return FakeGate()


@pytest.fixture
def bus() -> EventBus:
    return EventBus(queue_size=1000)


@pytest.fixture
def config_store(tmp_path) -> ConfigStore:
    store = ConfigStore(tmp_path / "kai-config.yaml")
    store.update({"base_directory": str(tmp_path / "KaiBase")})
    return store


@pytest.fixture
def manager(fake_runtime, config_store, bus, gate) -> ServiceManager:
    return ServiceManager(
        fake_runtime,
        config_store.get_config,
        bus,
        gate,
        health_wait_timeout=0.3,
        health_poll_interval=0.01,
    )
