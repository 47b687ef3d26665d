"""Docker Engine backend, a thin adapter over docker-py.

docker-py is blocking, so every engine call runs in a worker thread via
asyncio.to_thread. DockerException and the transport errors docker-py lets
through from requests are translated into RuntimeOperationFailedError at
that single seam.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

import docker
import requests
from docker.errors import DockerException, NotFound
from docker.utils import parse_repository_tag

from kai.errors import RuntimeOperationFailedError
from kai.infrastructure.config import STOP_TIMEOUT
from kai.infrastructure.logger import logger
from kai.runtime.types import (
    BlockIO,
    ContainerConfig,
    ContainerInfo,
    ContainerState,
    ContainerStats,
    ImageInfo,
    MemoryUsage,
    NetworkInfo,
    NetworkIO,
    OnPullProgress,
    PortBinding,
    PruneOptions,
    PruneResult,
    PullProgress,
    RuntimeType,
    SystemInfo,
    VolumeInfo,
)

T = TypeVar("T")

_STATE_MAP: dict[str, ContainerState] = {
    "running": "running",
    "created": "stopped",
    "restarting": "restarting",
    "removing": "removing",
    "paused": "paused",
    "exited": "exited",
    "dead": "dead",
}

_NANOS = 1_000_000_000


def map_docker_state(state: str) -> ContainerState:
    return _STATE_MAP.get(state, "stopped")


def compute_stats(raw: dict[str, Any]) -> ContainerStats:
    """Derive percentages from one non-streaming stats sample.

    CPU percent uses the delta between cpu_stats and precpu_stats, the two
    most recent samples the engine returns.
    """
    cpu_stats = raw.get("cpu_stats") or {}
    precpu_stats = raw.get("precpu_stats") or {}

    cpu_delta = (cpu_stats.get("cpu_usage", {}).get("total_usage") or 0) - (
        precpu_stats.get("cpu_usage", {}).get("total_usage") or 0
    )
    system_delta = (cpu_stats.get("system_cpu_usage") or 0) - (precpu_stats.get("system_cpu_usage") or 0)
    online_cpus = cpu_stats.get("online_cpus") or len(cpu_stats.get("cpu_usage", {}).get("percpu_usage") or []) or 1
    cpu_percent = (cpu_delta / system_delta) * online_cpus * 100 if system_delta > 0 else 0.0

    memory_stats = raw.get("memory_stats") or {}
    mem_used = memory_stats.get("usage") or 0
    mem_limit = memory_stats.get("limit") or 1

    networks = (raw.get("networks") or {}).values()
    blkio = (raw.get("blkio_stats") or {}).get("io_service_bytes_recursive") or []

    def blk(op: str) -> int:
        return next((entry.get("value", 0) for entry in blkio if str(entry.get("op", "")).lower() == op), 0)

    return ContainerStats(
        cpu=cpu_percent,
        memory=MemoryUsage(used=mem_used, limit=mem_limit, percentage=mem_used / mem_limit * 100),
        network=NetworkIO(
            rx=sum(net.get("rx_bytes", 0) for net in networks),
            tx=sum(net.get("tx_bytes", 0) for net in networks),
        ),
        block_io=BlockIO(read=blk("read"), write=blk("write")),
    )


class LayerProgress:
    """Aggregates per-layer pull events into one overall progress figure."""

    def __init__(self) -> None:
        self._layers: dict[str, tuple[int, int]] = {}

    def update(self, event: dict[str, Any]) -> PullProgress | None:
        detail = event.get("progressDetail")
        if detail is None:
            return None

        layer_id = event.get("id")
        current = detail.get("current")
        total = detail.get("total")
        if layer_id and current and total:
            self._layers[layer_id] = (current, total)

        total_current = sum(c for c, _ in self._layers.values())
        total_size = sum(t for _, t in self._layers.values())
        percent = round(total_current / total_size * 100) if total_size > 0 else 0

        return PullProgress(
            status=event.get("status", ""),
            current_bytes=total_current,
            total_bytes=total_size,
            percent=percent,
        )


def _parse_created(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        # Engine timestamps carry nanoseconds; fromisoformat only takes micro
        text = str(value).replace("Z", "+00:00")
        if "." in text:
            head, _, tail = text.partition(".")
            cut = next((i for i, ch in enumerate(tail) if not ch.isdigit()), len(tail))
            frac, zone = tail[:cut], tail[cut:]
            text = f"{head}.{frac[:6]}{zone}"
        return datetime.fromisoformat(text)
    except ValueError:
        return None


class DockerBackend:
    """Docker Desktop / Docker Engine adapter (developer fallback)."""

    def __init__(self, client_factory: Callable[[], Any] | None = None) -> None:
        self._client_factory = client_factory or docker.from_env
        self._client: Any | None = None

    def get_runtime_type(self) -> RuntimeType:
        return RuntimeType.DOCKER

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (DockerException, requests.exceptions.RequestException) as err:
            raise RuntimeOperationFailedError(str(err)) from err

    @property
    def client(self) -> Any:
        if self._client is None:
            raise RuntimeOperationFailedError("Docker not initialized")
        return self._client

    async def initialize(self) -> None:
        try:
            self._client = await asyncio.to_thread(self._client_factory)
            await asyncio.to_thread(self._client.ping)
        except Exception as err:
            logger.error("Failed to initialize Docker adapter", error=str(err))
            raise RuntimeOperationFailedError("Docker Desktop is not available") from err
        logger.info("Docker adapter initialized")

    async def is_available(self) -> bool:
        try:
            if self._client is None:
                self._client = await asyncio.to_thread(self._client_factory)
            await asyncio.to_thread(self._client.ping)
            return True
        except Exception:
            return False

    # --- Container lifecycle ---

    async def start_container(self, config: ContainerConfig) -> str:
        client = self.client
        kwargs: dict[str, Any] = {
            "name": config.name,
            "detach": True,
            "environment": dict(config.env) or None,
            "ports": {f"{cport}/tcp": hport for cport, hport in config.ports.items()} or None,
            "volumes": [v.to_bind() for v in config.volumes] or None,
            "network": config.networks[0] if config.networks else None,
            "command": config.command,
            "labels": dict(config.labels) or None,
        }
        if config.restart:
            kwargs["restart_policy"] = {
                "Name": config.restart,
                "MaximumRetryCount": 3 if config.restart == "on-failure" else 0,
            }
        if config.healthcheck:
            hc = config.healthcheck
            kwargs["healthcheck"] = {
                "test": hc.test,
                "interval": int(hc.interval_s * _NANOS),
                "timeout": int(hc.timeout_s * _NANOS),
                "retries": hc.retries,
                "start_period": int(hc.start_period_s * _NANOS) if hc.start_period_s else None,
            }

        container = await self._call(client.containers.run, config.image, **kwargs)

        for network in config.networks[1:]:
            await self._call(lambda: client.networks.get(network).connect(container.id))

        return container.id

    async def stop_container(self, id: str, timeout: int | None = None) -> None:
        t = STOP_TIMEOUT if timeout is None else timeout
        await self._call(lambda: self.client.containers.get(id).stop(timeout=t))

    async def remove_container(self, id: str, force: bool = False) -> None:
        await self._call(lambda: self.client.containers.get(id).remove(force=force, v=True))

    async def restart_container(self, id: str, timeout: int | None = None) -> None:
        t = STOP_TIMEOUT if timeout is None else timeout
        await self._call(lambda: self.client.containers.get(id).restart(timeout=t))

    async def pause_container(self, id: str) -> None:
        await self._call(lambda: self.client.containers.get(id).pause())

    async def unpause_container(self, id: str) -> None:
        await self._call(lambda: self.client.containers.get(id).unpause())

    # --- Container information ---

    async def inspect_container(self, id: str) -> ContainerInfo:
        info = await self._call(self.client.api.inspect_container, id)
        name = info.get("Name", "")
        state = info.get("State") or {}

        ports: list[PortBinding] = []
        for key, bindings in ((info.get("NetworkSettings") or {}).get("Ports") or {}).items():
            port_str, _, protocol = key.partition("/")
            container_port = int(port_str)
            proto = "udp" if protocol == "udp" else "tcp"
            if not bindings:
                ports.append(PortBinding(container_port=container_port, protocol=proto))
                continue
            for binding in bindings:
                host_port = binding.get("HostPort")
                ports.append(
                    PortBinding(
                        container_port=container_port,
                        host_port=int(host_port) if host_port else None,
                        protocol=proto,
                    )
                )

        return ContainerInfo(
            id=info["Id"],
            name=name[1:] if name.startswith("/") else name,
            image=(info.get("Config") or {}).get("Image", ""),
            state=map_docker_state(state.get("Status", "")),
            status=state.get("Status", ""),
            health=(state.get("Health") or {}).get("Status"),
            created=_parse_created(info.get("Created")),
            ports=ports,
        )

    async def list_containers(
        self, all: bool = True, filters: dict[str, list[str]] | None = None
    ) -> list[ContainerInfo]:
        summaries = await self._call(self.client.api.containers, all=all, filters=filters)
        infos: list[ContainerInfo] = []
        for summary in summaries:
            try:
                infos.append(await self.inspect_container(summary["Id"]))
            except RuntimeOperationFailedError as err:
                # removed between the listing and the inspect
                if not isinstance(err.__cause__, NotFound):
                    raise
                logger.debug("Container vanished while listing", id=summary["Id"])
        return infos

    async def get_container_logs(
        self, id: str, tail: int | None = 100, since: int | None = None, timestamps: bool = False
    ) -> str:
        raw = await self._call(
            lambda: self.client.containers.get(id).logs(
                stdout=True,
                stderr=True,
                tail=tail if tail is not None else "all",
                since=since,
                timestamps=timestamps,
            )
        )
        return raw.decode(errors="replace") if isinstance(raw, bytes) else str(raw)

    async def get_container_stats(self, id: str) -> ContainerStats:
        raw = await self._call(lambda: self.client.containers.get(id).stats(stream=False))
        return compute_stats(raw)

    # --- Images ---

    async def pull_image(self, name: str, on_progress: OnPullProgress | None = None) -> None:
        loop = asyncio.get_running_loop()
        repository, tag = parse_repository_tag(name)
        aggregate = LayerProgress()

        def pull() -> None:
            for event in self.client.api.pull(repository, tag=tag or "latest", stream=True, decode=True):
                if "error" in event:
                    raise RuntimeOperationFailedError(event["error"])
                progress = aggregate.update(event)
                if progress and on_progress:
                    loop.call_soon_threadsafe(on_progress, progress)

        await self._call(pull)

    async def list_images(self) -> list[ImageInfo]:
        images = await self._call(self.client.api.images)
        return [
            ImageInfo(
                id=img["Id"],
                tags=img.get("RepoTags") or [],
                size=img.get("Size", 0),
                created=_parse_created(img.get("Created")),
            )
            for img in images
        ]

    async def remove_image(self, id: str, force: bool = False) -> None:
        await self._call(self.client.images.remove, id, force=force)

    async def image_exists(self, name: str) -> bool:
        try:
            await self._call(self.client.images.get, name)
            return True
        except RuntimeOperationFailedError:
            return False

    async def load_image(self, archive: Path) -> None:
        def load() -> None:
            with archive.open("rb") as fh:
                self.client.images.load(fh)

        await self._call(load)

    # --- Networks ---

    async def create_network(
        self, name: str, driver: str = "bridge", internal: bool = False, attachable: bool = True
    ) -> str:
        network = await self._call(
            self.client.networks.create, name, driver=driver, internal=internal, attachable=attachable
        )
        return network.id

    async def remove_network(self, id: str) -> None:
        await self._call(lambda: self.client.networks.get(id).remove())

    async def list_networks(self) -> list[NetworkInfo]:
        networks = await self._call(self.client.api.networks)
        return [
            NetworkInfo(
                id=net["Id"],
                name=net["Name"],
                driver=net.get("Driver", "bridge"),
                containers=list((net.get("Containers") or {}).keys()),
            )
            for net in networks
        ]

    async def connect_container_to_network(self, container_id: str, network_id: str) -> None:
        await self._call(lambda: self.client.networks.get(network_id).connect(container_id))

    async def disconnect_container_from_network(self, container_id: str, network_id: str) -> None:
        await self._call(lambda: self.client.networks.get(network_id).disconnect(container_id))

    # --- Volumes ---

    async def create_volume(self, name: str, driver: str = "local", labels: dict[str, str] | None = None) -> str:
        volume = await self._call(self.client.volumes.create, name=name, driver=driver, labels=labels)
        return volume.name

    async def remove_volume(self, name: str, force: bool = False) -> None:
        await self._call(lambda: self.client.volumes.get(name).remove(force=force))

    async def list_volumes(self) -> list[VolumeInfo]:
        result = await self._call(self.client.api.volumes)
        return [
            VolumeInfo(name=vol["Name"], driver=vol.get("Driver", "local"), mountpoint=vol.get("Mountpoint", ""))
            for vol in (result or {}).get("Volumes") or []
        ]

    # --- System ---

    async def get_system_info(self) -> SystemInfo:
        info = await self._call(self.client.info)
        version = await self._call(self.client.version)
        return SystemInfo(
            os=info.get("OperatingSystem", ""),
            architecture=info.get("Architecture", ""),
            cpus=info.get("NCPU", 0),
            memory=info.get("MemTotal", 0),
            runtime_version=version.get("Version", ""),
        )

    async def prune(self, options: PruneOptions | None = None) -> PruneResult:
        opts = options or PruneOptions()
        result = PruneResult()

        if opts.containers:
            pruned = await self._call(self.client.containers.prune)
            result.containers_deleted = len(pruned.get("ContainersDeleted") or [])
            result.space_reclaimed += pruned.get("SpaceReclaimed") or 0

        if opts.images:
            pruned = await self._call(self.client.images.prune, filters={"dangling": False})
            result.images_deleted = len(pruned.get("ImagesDeleted") or [])
            result.space_reclaimed += pruned.get("SpaceReclaimed") or 0

        if opts.volumes:
            pruned = await self._call(self.client.volumes.prune)
            result.volumes_deleted = len(pruned.get("VolumesDeleted") or [])
            result.space_reclaimed += pruned.get("SpaceReclaimed") or 0

        if opts.networks:
            pruned = await self._call(self.client.networks.prune)
            result.networks_deleted = len(pruned.get("NetworksDeleted") or [])

        return result
