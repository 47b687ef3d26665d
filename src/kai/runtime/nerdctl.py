"""nerdctl command translation shared by the containerd and Lima backends.

Both backends speak the same CLI; they differ only in how a command line
reaches the binary. Subclasses implement `_run`, everything else lives here.
"""

from __future__ import annotations

import json
import re
import shlex
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import IO, Any

from kai.errors import RuntimeOperationFailedError
from kai.infrastructure.config import STOP_TIMEOUT
from kai.infrastructure.logger import logger
from kai.infrastructure.process import CommandResult
from kai.runtime.types import (
    BlockIO,
    ContainerConfig,
    ContainerInfo,
    ContainerState,
    ContainerStats,
    HealthCheck,
    HealthState,
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

JSON_FORMAT = "{{json .}}"

_BYTE_UNITS: dict[str, int] = {
    "": 1,
    "B": 1,
    "KB": 1000,
    "kB": 1000,
    "MB": 1000**2,
    "GB": 1000**3,
    "TB": 1000**4,
    "KiB": 1024,
    "MiB": 1024**2,
    "GiB": 1024**3,
    "TiB": 1024**4,
}

_BYTES_RE = re.compile(r"^\s*([\d.]+)\s*([A-Za-z]*)\s*$")
_PORT_RE = re.compile(r"(\d+\.\d+\.\d+\.\d+):(\d+)->(\d+)/(tcp|udp)")
_HEALTH_RE = re.compile(r"\((healthy|unhealthy|health: starting)\)")
_RECLAIMED_RE = re.compile(r"Total reclaimed space:\s*(.+)$", re.MULTILINE)

_CREATED_FORMATS = (
    "%Y-%m-%d %H:%M:%S %z %Z",
    "%Y-%m-%d %H:%M:%S %z",
    "%Y-%m-%dT%H:%M:%S%z",
)


def parse_bytes(text: str) -> int:
    """Parse sizes like '128MiB', '1.5GB' or '0B'. Unparseable input is 0."""
    match = _BYTES_RE.match(text or "")
    if not match:
        return 0
    value, unit = match.groups()
    multiplier = _BYTE_UNITS.get(unit)
    if multiplier is None:
        multiplier = _BYTE_UNITS.get(unit.upper(), 1)
    try:
        return int(float(value) * multiplier)
    except ValueError:
        return 0


def parse_pair(text: str | None) -> tuple[int, int]:
    """Parse 'a / b' stats columns into two byte counts."""
    left, _, right = (text or "").partition("/")
    return parse_bytes(left), parse_bytes(right)


def parse_percent(text: str | None) -> float:
    try:
        return float((text or "0").strip().rstrip("%") or 0)
    except ValueError:
        return 0.0


def parse_ports(text: str) -> list[PortBinding]:
    """Parse the ps Ports column, e.g. '0.0.0.0:8080->80/tcp, ...'."""
    return [
        PortBinding(container_port=int(cport), host_port=int(hport), protocol=proto)  # type: ignore[arg-type]
        for _, hport, cport, proto in _PORT_RE.findall(text or "")
    ]


def parse_health(status: str) -> HealthState | None:
    match = _HEALTH_RE.search(status or "")
    if not match:
        return None
    value = match.group(1)
    return "starting" if value == "health: starting" else value  # type: ignore[return-value]


def parse_created(text: str | None) -> datetime | None:
    if not text:
        return None
    for fmt in _CREATED_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


def map_status_state(status: str, state: str | None = None) -> ContainerState:
    """Map ps Status/State text to a normalized container state."""
    if state:
        lowered_state = state.lower()
        if lowered_state in ("running", "paused", "restarting", "exited", "dead", "removing"):
            return lowered_state  # type: ignore[return-value]
        if lowered_state == "created":
            return "stopped"

    lowered = (status or "").lower()
    if "paused" in lowered:
        return "paused"
    if lowered.startswith("up") or "running" in lowered:
        return "running"
    if "restarting" in lowered:
        return "restarting"
    if "exited" in lowered:
        return "exited"
    return "stopped"


def map_inspect_state(state: dict[str, Any]) -> ContainerState:
    if state.get("Running"):
        return "running"
    if state.get("Paused"):
        return "paused"
    if state.get("Restarting"):
        return "restarting"
    if state.get("Status") == "exited":
        return "exited"
    return "stopped"


def parse_ndjson(output: str, what: str) -> list[dict[str, Any]]:
    """Parse one JSON object per line. Malformed lines are logged and skipped."""
    rows: list[dict[str, Any]] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed nerdctl output line", what=what, line=line[:200])
            continue
        if isinstance(row, dict):
            rows.append(row)
    return rows


def parse_prune_output(output: str) -> tuple[int, int]:
    """Return (deleted count, reclaimed bytes) from a prune command's output."""
    count = 0
    in_section = False
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith("Deleted"):
            in_section = True
            continue
        if not stripped or stripped.startswith("Total reclaimed space"):
            in_section = False
            continue
        if in_section and not stripped.lower().startswith("untagged:"):
            count += 1

    match = _RECLAIMED_RE.search(output)
    reclaimed = parse_bytes(match.group(1).replace(" ", "")) if match else 0
    return count, reclaimed


def health_cmd(check: HealthCheck) -> str:
    """Render a health-check test vector as the shell string --health-cmd expects."""
    test = list(check.test)
    if test and test[0] == "CMD-SHELL":
        return " ".join(test[1:])
    if test and test[0] == "CMD":
        return shlex.join(test[1:])
    return shlex.join(test)


def build_run_args(config: ContainerConfig) -> list[str]:
    args = ["run", "-d", "--name", config.name]

    for key, value in config.env.items():
        args += ["-e", f"{key}={value}"]
    for container_port, host_port in config.ports.items():
        args += ["-p", f"{host_port}:{container_port}"]
    for volume in config.volumes:
        args += ["-v", volume.to_bind()]
    if config.networks:
        args += ["--network", config.networks[0]]
    if config.restart:
        args += ["--restart", config.restart]
    for key, value in config.labels.items():
        args += ["--label", f"{key}={value}"]

    if config.healthcheck:
        hc = config.healthcheck
        args += [
            "--health-cmd", health_cmd(hc),
            "--health-interval", f"{int(hc.interval_s)}s",
            "--health-timeout", f"{int(hc.timeout_s)}s",
            "--health-retries", str(hc.retries),
        ]
        if hc.start_period_s:
            args += ["--health-start-period", f"{int(hc.start_period_s)}s"]

    args.append(config.image)
    if config.command:
        args += config.command
    return args


class NerdctlBackend(ABC):
    """Runtime contract implemented on top of nerdctl command lines."""

    runtime_type: RuntimeType

    @abstractmethod
    async def _run(self, args: list[str], stdin: IO[bytes] | None = None) -> CommandResult:
        """Execute `nerdctl <args>` and raise RuntimeOperationFailedError on failure."""

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def is_available(self) -> bool: ...

    def get_runtime_type(self) -> RuntimeType:
        return self.runtime_type

    async def _exec(self, *args: str, stdin: IO[bytes] | None = None) -> str:
        result = await self._run(list(args), stdin=stdin)
        return result.stdout

    # --- Container lifecycle ---

    async def start_container(self, config: ContainerConfig) -> str:
        output = await self._exec(*build_run_args(config))
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        if not lines:
            raise RuntimeOperationFailedError(f"nerdctl run returned no container id for {config.name}")
        container_id = lines[-1]

        for network in config.networks[1:]:
            await self.connect_container_to_network(container_id, network)

        logger.info("Container started", name=config.name, id=container_id[:12], runtime=self.runtime_type.value)
        return container_id

    async def stop_container(self, id: str, timeout: int | None = None) -> None:
        await self._exec("stop", "-t", str(STOP_TIMEOUT if timeout is None else timeout), id)

    async def remove_container(self, id: str, force: bool = False) -> None:
        await self._exec("rm", *(["-f"] if force else []), id)

    async def restart_container(self, id: str, timeout: int | None = None) -> None:
        await self._exec("restart", "-t", str(STOP_TIMEOUT if timeout is None else timeout), id)

    async def pause_container(self, id: str) -> None:
        await self._exec("pause", id)

    async def unpause_container(self, id: str) -> None:
        await self._exec("unpause", id)

    # --- Container information ---

    async def inspect_container(self, id: str) -> ContainerInfo:
        output = await self._exec("inspect", id)
        try:
            data = json.loads(output)
        except json.JSONDecodeError as err:
            raise RuntimeOperationFailedError(f"Unreadable inspect output for {id}") from err
        if not data:
            raise RuntimeOperationFailedError(f"Container {id} not found")

        container = data[0]
        state = container.get("State") or {}
        ports: list[PortBinding] = []
        for key, bindings in ((container.get("NetworkSettings") or {}).get("Ports") or {}).items():
            port_str, _, protocol = key.partition("/")
            host_port = (bindings or [{}])[0].get("HostPort")
            ports.append(
                PortBinding(
                    container_port=int(port_str),
                    host_port=int(host_port) if host_port else None,
                    protocol="udp" if protocol == "udp" else "tcp",
                )
            )

        return ContainerInfo(
            id=container.get("Id", id),
            name=str(container.get("Name", "")).lstrip("/"),
            image=(container.get("Config") or {}).get("Image", "") or container.get("Image", ""),
            state=map_inspect_state(state),
            status=state.get("Status", ""),
            health=(state.get("Health") or {}).get("Status"),
            created=parse_created(container.get("Created")),
            ports=ports,
        )

    async def list_containers(
        self, all: bool = True, filters: dict[str, list[str]] | None = None
    ) -> list[ContainerInfo]:
        args = ["ps", "--format", JSON_FORMAT]
        if all:
            args.append("-a")
        for key, values in (filters or {}).items():
            for value in values:
                args += ["--filter", f"{key}={value}"]

        containers: list[ContainerInfo] = []
        for row in parse_ndjson(await self._exec(*args), "containers"):
            status = row.get("Status", "")
            containers.append(
                ContainerInfo(
                    id=row.get("ID") or row.get("ContainerID") or "",
                    name=row.get("Names") or row.get("Name") or "",
                    image=row.get("Image", ""),
                    state=map_status_state(status, row.get("State")),
                    status=status,
                    health=parse_health(status),
                    created=parse_created(row.get("CreatedAt")),
                    ports=parse_ports(row.get("Ports", "")),
                )
            )
        return containers

    async def get_container_logs(
        self, id: str, tail: int | None = 100, since: int | None = None, timestamps: bool = False
    ) -> str:
        args = ["logs"]
        if tail is not None:
            args += ["--tail", str(tail)]
        if since is not None:
            args += ["--since", str(since)]
        if timestamps:
            args.append("-t")
        args.append(id)
        result = await self._run(args)
        return result.stdout + result.stderr

    async def get_container_stats(self, id: str) -> ContainerStats:
        rows = parse_ndjson(await self._exec("stats", "--no-stream", "--format", JSON_FORMAT, id), "stats")
        if not rows:
            raise RuntimeOperationFailedError(f"No stats returned for {id}")
        data = rows[0]
        mem_used, mem_limit = parse_pair(data.get("MemUsage"))
        rx, tx = parse_pair(data.get("NetIO"))
        read, write = parse_pair(data.get("BlockIO"))
        return ContainerStats(
            cpu=parse_percent(data.get("CPUPerc")),
            memory=MemoryUsage(used=mem_used, limit=mem_limit, percentage=parse_percent(data.get("MemPerc"))),
            network=NetworkIO(rx=rx, tx=tx),
            block_io=BlockIO(read=read, write=write),
        )

    # --- Images ---

    async def pull_image(self, name: str, on_progress: OnPullProgress | None = None) -> None:
        # nerdctl only reports coarse status lines, not per-layer byte counts
        if on_progress:
            on_progress(PullProgress(status=f"Pulling {name}", percent=0))
        await self._exec("pull", name)
        if on_progress:
            on_progress(PullProgress(status=f"Pulled {name}", percent=100))

    async def list_images(self) -> list[ImageInfo]:
        images: list[ImageInfo] = []
        for row in parse_ndjson(await self._exec("images", "--format", JSON_FORMAT), "images"):
            repo, tag = row.get("Repository"), row.get("Tag")
            images.append(
                ImageInfo(
                    id=row.get("ID", ""),
                    tags=[f"{repo}:{tag}"] if repo and tag else [],
                    size=parse_bytes(row.get("Size", "0B")),
                    created=parse_created(row.get("CreatedAt")),
                )
            )
        return images

    async def remove_image(self, id: str, force: bool = False) -> None:
        await self._exec("rmi", *(["-f"] if force else []), id)

    async def image_exists(self, name: str) -> bool:
        try:
            await self._exec("inspect", "--type", "image", name)
            return True
        except RuntimeOperationFailedError:
            return False

    async def load_image(self, archive: Path) -> None:
        with archive.open("rb") as fh:
            await self._exec("load", stdin=fh)
        logger.info("Image archive loaded", archive=str(archive), runtime=self.runtime_type.value)

    # --- Networks ---

    async def create_network(
        self, name: str, driver: str = "bridge", internal: bool = False, attachable: bool = True
    ) -> str:
        # nerdctl networks are always attachable
        args = ["network", "create"]
        if driver:
            args += ["--driver", driver]
        if internal:
            args.append("--internal")
        args.append(name)
        output = await self._exec(*args)
        return output.strip() or name

    async def remove_network(self, id: str) -> None:
        await self._exec("network", "rm", id)

    async def list_networks(self) -> list[NetworkInfo]:
        return [
            NetworkInfo(
                id=row.get("ID") or row.get("NetworkID") or "",
                name=row.get("Name", ""),
                driver=row.get("Driver") or "bridge",
            )
            for row in parse_ndjson(await self._exec("network", "ls", "--format", JSON_FORMAT), "networks")
        ]

    async def connect_container_to_network(self, container_id: str, network_id: str) -> None:
        await self._exec("network", "connect", network_id, container_id)

    async def disconnect_container_from_network(self, container_id: str, network_id: str) -> None:
        await self._exec("network", "disconnect", network_id, container_id)

    # --- Volumes ---

    async def create_volume(self, name: str, driver: str = "local", labels: dict[str, str] | None = None) -> str:
        args = ["volume", "create"]
        for key, value in (labels or {}).items():
            args += ["--label", f"{key}={value}"]
        args.append(name)
        output = await self._exec(*args)
        return output.strip() or name

    async def remove_volume(self, name: str, force: bool = False) -> None:
        await self._exec("volume", "rm", *(["-f"] if force else []), name)

    async def list_volumes(self) -> list[VolumeInfo]:
        return [
            VolumeInfo(
                name=row.get("Name") or row.get("VolumeName") or "",
                driver=row.get("Driver") or "local",
                mountpoint=row.get("Mountpoint", ""),
            )
            for row in parse_ndjson(await self._exec("volume", "ls", "--format", JSON_FORMAT), "volumes")
        ]

    # --- System ---

    async def get_system_info(self) -> SystemInfo:
        output = await self._exec("info", "--format", JSON_FORMAT)
        try:
            data = json.loads(output)
        except json.JSONDecodeError as err:
            raise RuntimeOperationFailedError("Unreadable nerdctl info output") from err
        return SystemInfo(
            os=data.get("OperatingSystem", ""),
            architecture=data.get("Architecture", ""),
            cpus=data.get("NCPU", 0),
            memory=data.get("MemTotal", 0),
            runtime_version=data.get("ServerVersion", ""),
        )

    async def prune(self, options: PruneOptions | None = None) -> PruneResult:
        opts = options or PruneOptions()
        result = PruneResult()

        if opts.containers:
            count, reclaimed = parse_prune_output(await self._exec("container", "prune", "-f"))
            result.containers_deleted = count
            result.space_reclaimed += reclaimed

        if opts.images:
            count, reclaimed = parse_prune_output(await self._exec("image", "prune", "--all", "-f"))
            result.images_deleted = count
            result.space_reclaimed += reclaimed

        if opts.volumes:
            count, reclaimed = parse_prune_output(await self._exec("volume", "prune", "-f"))
            result.volumes_deleted = count
            result.space_reclaimed += reclaimed

        if opts.networks:
            count, _ = parse_prune_output(await self._exec("network", "prune", "-f"))
            result.networks_deleted = count

        return result
