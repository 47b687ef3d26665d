"""Dependency-aware lifecycle for the Kai service containers."""

from __future__ import annotations

import asyncio
from typing import Callable, Mapping

from kai.errors import (
    HealthCheckTimeoutError,
    ImagePullDeniedError,
    ImagePullFailedError,
    KaiError,
    ServiceNotFoundError,
    ServiceStartError,
)
from kai.infrastructure.config import (
    HEALTH_WAIT_POLL_INTERVAL,
    HEALTH_WAIT_TIMEOUT,
    MAX_RESTART_ATTEMPTS,
    STOP_TIMEOUT,
)
from kai.infrastructure.logger import logger
from kai.infrastructure.settings import KaiConfig
from kai.runtime.contract import ContainerRuntime
from kai.runtime.types import ContainerState, PullProgress
from kai.services.definitions import REQUIRED_VOLUMES, required_network, service_definitions
from kai.services.dependency import start_order, validate_graph
from kai.services.events import EventBus
from kai.services.permission import PermissionGate
from kai.services.types import (
    ServiceDefinition,
    ServiceEvent,
    ServiceEventType,
    ServiceState,
    ServiceStatus,
    StatusesChanged,
)

ConfigProvider = Callable[[], KaiConfig]


def map_container_state(state: ContainerState) -> ServiceState:
    if state == "running":
        return "running"
    if state == "restarting":
        return "starting"
    if state == "removing":
        return "stopping"
    if state in ("exited", "stopped", "dead"):
        return "stopped"
    return "unknown"


class RestartAttempts:
    """Per-service auto-restart counter, bounded by max_attempts."""

    def __init__(self, max_attempts: int = MAX_RESTART_ATTEMPTS) -> None:
        self.max_attempts = max_attempts
        self._counts: dict[str, int] = {}

    def get(self, name: str) -> int:
        return self._counts.get(name, 0)

    def can_retry(self, name: str) -> bool:
        return self.get(name) < self.max_attempts

    def increment(self, name: str) -> int:
        count = min(self.get(name) + 1, self.max_attempts)
        self._counts[name] = count
        return count

    def reset(self, name: str) -> None:
        self._counts[name] = 0

    def clear(self) -> None:
        self._counts.clear()


class ServiceManager:
    """Starts, stops and reports on the statically defined services.

    Lifecycle operations on one service are serialized with a per-service
    lock, so a user start and a health-monitor restart cannot both create a
    container with the same name.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: ConfigProvider,
        bus: EventBus,
        permission: PermissionGate,
        definitions: Mapping[str, ServiceDefinition] | None = None,
        health_wait_timeout: float = HEALTH_WAIT_TIMEOUT,
        health_poll_interval: float = HEALTH_WAIT_POLL_INTERVAL,
        stop_timeout: int = STOP_TIMEOUT,
        max_restart_attempts: int = MAX_RESTART_ATTEMPTS,
    ) -> None:
        self._runtime = runtime
        self._config = config
        self._bus = bus
        self._permission = permission
        self._services = dict(definitions if definitions is not None else service_definitions())
        validate_graph(self._services)

        self._health_wait_timeout = health_wait_timeout
        self._health_poll_interval = health_poll_interval
        self._stop_timeout = stop_timeout
        self._locks: dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in self._services}
        self.restart_attempts = RestartAttempts(max_restart_attempts)

    @property
    def runtime(self) -> ContainerRuntime:
        return self._runtime

    @property
    def service_names(self) -> list[str]:
        return list(self._services)

    def definition(self, name: str) -> ServiceDefinition:
        service = self._services.get(name)
        if service is None:
            raise ServiceNotFoundError(f"Service not found: {name}", {"service": name})
        return service

    def start_order(self) -> list[str]:
        return start_order(self._services)

    # --- Infrastructure ---

    async def initialize(self) -> None:
        """Create the shared network and named volumes when missing."""
        config = self._config()
        network = required_network(config)

        networks = await self._runtime.list_networks()
        if not any(n.name == network for n in networks):
            await self._runtime.create_network(network, driver="bridge", attachable=True)
            logger.info("Created network", network=network)

        existing = {v.name for v in await self._runtime.list_volumes()}
        for volume in REQUIRED_VOLUMES:
            if volume not in existing:
                await self._runtime.create_volume(volume)
                logger.info("Created volume", volume=volume)

    # --- Status ---

    async def get_status(self, name: str) -> ServiceStatus:
        service = self.definition(name)
        base = {
            "name": service.name,
            "display_name": service.display_name,
            "description": service.description,
            "essential": service.essential,
        }
        container_name = service.container_name(self._config())

        try:
            containers = await self._runtime.list_containers(all=True, filters={"name": [container_name]})
        except Exception as err:
            return ServiceStatus(**base, status="error", error=str(err))

        # Engine name filters match substrings
        matches = [c for c in containers if c.name.lstrip("/") == container_name]
        if not matches:
            return ServiceStatus(**base, status="stopped")

        container = matches[0]
        return ServiceStatus(
            **base,
            status=map_container_state(container.state),
            health=container.health,
            container_id=container.id,
        )

    async def list_statuses(self) -> list[ServiceStatus]:
        return [await self.get_status(name) for name in self._services]

    async def publish_statuses(self) -> list[ServiceStatus]:
        statuses = await self.list_statuses()
        self._bus.publish(StatusesChanged(statuses=statuses))
        return statuses

    # --- Lifecycle ---

    async def start(self, name: str) -> None:
        self.definition(name)
        try:
            await self._start(name, set())
        finally:
            await self.publish_statuses()

    async def _start(self, name: str, visited: set[str]) -> None:
        if name in visited:
            return
        visited.add(name)
        service = self.definition(name)

        for dep in service.depends_on:
            if (await self.get_status(dep)).status != "running":
                await self._start(dep, visited)
            dep_status = await self.get_status(dep)
            if dep_status.status != "running":
                raise ServiceStartError(
                    f"Dependency {dep} of {name} is not running",
                    {"service": name, "dependency": dep, "status": dep_status.status},
                )

        async with self._locks[name]:
            status = await self.get_status(name)
            if status.status == "running":
                logger.debug("Service already running", service=name)
                return

            if status.container_id:
                logger.info("Removing stale container", service=name, id=status.container_id[:12])
                await self._runtime.remove_container(status.container_id, force=True)

            container_config = service.container_config(self._config())
            await self._ensure_image(name, container_config.image)

            logger.info("Starting service", service=name, image=container_config.image)
            container_id = await self._runtime.start_container(container_config)
            logger.info("Service container started", service=name, id=container_id[:12])

            if container_config.healthcheck:
                await self._wait_for_healthy(name)

    async def _ensure_image(self, name: str, image: str) -> None:
        if await self._runtime.image_exists(image):
            return

        self._emit(name, "image-pulling", {"image": image})
        if not await self._permission.request(name, image):
            self._emit(name, "image-pull-error", {"image": image, "error": "Image download denied"})
            raise ImagePullDeniedError(
                f"Download of image {image} for {name} was not permitted", {"service": name, "image": image}
            )

        def on_progress(progress: PullProgress) -> None:
            self._emit(name, "image-pulling-progress", {"image": image, **progress.model_dump()})

        try:
            await self._runtime.pull_image(image, on_progress=on_progress)
        except KaiError as err:
            self._emit(name, "image-pull-error", {"image": image, "error": err.message})
            raise ImagePullFailedError(
                f"Failed to pull image {image} for {name}: {err.message}", {"service": name, "image": image}
            ) from err

        self._emit(name, "image-pulled", {"image": image})
        logger.info("Image pulled", service=name, image=image)

    def _emit(self, name: str, event_type: ServiceEventType, data: dict) -> None:
        self._bus.publish(ServiceEvent(service_name=name, event_type=event_type, data=data))

    async def _wait_for_healthy(self, name: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._health_wait_timeout

        while loop.time() < deadline:
            status = await self.get_status(name)
            if status.health in ("healthy", "none"):
                return
            if status.status == "running" and status.health is None:
                return
            if status.status in ("stopped", "error"):
                raise ServiceStartError(
                    f"Service {name} failed to start: {status.error or status.status}", {"service": name}
                )
            await asyncio.sleep(self._health_poll_interval)

        raise HealthCheckTimeoutError(
            f"Service {name} health check timeout", {"service": name, "timeout_s": self._health_wait_timeout}
        )

    async def stop(self, name: str) -> None:
        try:
            await self._stop(name)
        finally:
            await self.publish_statuses()

    async def _stop(self, name: str) -> None:
        async with self._locks[self.definition(name).name]:
            status = await self.get_status(name)
            if not status.container_id:
                return
            logger.info("Stopping service", service=name)
            await self._runtime.stop_container(status.container_id, self._stop_timeout)

    async def restart(self, name: str) -> None:
        """Stop then start, clearing any auto-restart backoff for the service."""
        await self._stop(name)
        self.restart_attempts.reset(name)
        await self.start(name)

    async def start_all(self) -> None:
        """Start every service in dependency order, aborting on the first failure."""
        try:
            for name in self.start_order():
                try:
                    await self._start(name, set())
                except Exception:
                    logger.exception("Failed to start service", service=name)
                    raise
        finally:
            await self.publish_statuses()

    async def stop_all(self) -> None:
        """Stop running services in reverse dependency order, continuing past failures."""
        statuses = {s.name: s for s in await self.list_statuses()}
        for name in reversed(self.start_order()):
            status = statuses.get(name)
            if not status or status.status != "running" or not status.container_id:
                continue
            try:
                await self._stop(name)
            except Exception:
                logger.exception("Failed to stop service", service=name)
        await self.publish_statuses()
