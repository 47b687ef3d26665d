"""Application context composing the runtime, services and event plumbing."""

from __future__ import annotations

from typing import Any

from kai.infrastructure.config import PREFERRED_RUNTIME
from kai.infrastructure.logger import logger
from kai.infrastructure.settings import ConfigStore
from kai.provisioning.download import OnProgress
from kai.provisioning.image_loader import ImageLoader
from kai.runtime.contract import ContainerRuntime
from kai.runtime.selector import RuntimeSelector
from kai.runtime.types import RuntimeType, SystemInfo
from kai.services.events import EventBus, Subscription
from kai.services.health import HealthMonitor
from kai.services.orchestrator import ServiceManager
from kai.services.permission import PermissionBroker, PermissionGate


class AppContext:
    """The one place that owns the active backend and the service manager.

    The desktop shell talks to the core only through this object.
    """

    def __init__(
        self,
        config_store: ConfigStore | None = None,
        selector: RuntimeSelector | None = None,
        bus: EventBus | None = None,
        permission: PermissionGate | None = None,
        image_loader: ImageLoader | None = None,
    ) -> None:
        self.config_store = config_store or ConfigStore()
        self.bus = bus or EventBus()
        self.broker = PermissionBroker(self.bus)
        self._permission: PermissionGate = permission or self.broker
        self._selector = selector or RuntimeSelector(self._preferred_runtime())
        self._image_loader = image_loader or ImageLoader()
        self._services: ServiceManager | None = None
        self._monitor: HealthMonitor | None = None

    def _preferred_runtime(self) -> str:
        stored = self.config_store.get_config().preferred_runtime
        return PREFERRED_RUNTIME if PREFERRED_RUNTIME != "auto" else stored

    # --- Lifecycle ---

    async def start(self, monitor: bool = True) -> None:
        logger.info("Starting Kai core...")
        runtime = await self._selector.initialize()
        await self._bind(runtime)
        if monitor and self._monitor:
            self._monitor.start()
        logger.info("Kai core ready", runtime=self.get_active_type())

    async def _bind(self, runtime: ContainerRuntime) -> None:
        if self._monitor:
            self._monitor.stop()

        self._services = ServiceManager(runtime, self.config_store.get_config, self.bus, self._permission)
        self._monitor = HealthMonitor(self._services)

        await self._image_loader.load_bundled(runtime, lambda msg: logger.info(msg))
        await self._services.initialize()

    async def shutdown(self) -> None:
        logger.info("Shutting down Kai core...")
        if self._monitor:
            self._monitor.stop()

    # --- Runtime calls ---

    @property
    def runtime(self) -> ContainerRuntime:
        return self._selector.runtime

    @property
    def services(self) -> ServiceManager:
        if self._services is None:
            raise RuntimeError("AppContext has no active runtime")
        return self._services

    @property
    def monitor(self) -> HealthMonitor:
        if self._monitor is None:
            raise RuntimeError("AppContext has no active runtime")
        return self._monitor

    def get_active_type(self) -> str:
        return self._selector.runtime_type

    async def get_system_info(self) -> SystemInfo:
        return await self.runtime.get_system_info()

    async def detect_available(self) -> dict[str, Any]:
        return await self._selector.detect_available()

    async def switch_to(self, runtime_type: RuntimeType | str) -> None:
        """Select a different backend and rebuild the service layer on top of it."""
        was_monitoring = self._monitor is not None and self._monitor.running
        # Nothing may keep driving the old backend, even if selection fails
        if self._monitor:
            self._monitor.stop()
        self._services = None
        self._monitor = None

        runtime = await self._selector.switch_runtime(runtime_type)
        await self._bind(runtime)
        if was_monitoring and self._monitor:
            self._monitor.start()

    async def setup_bundled(self, on_progress: OnProgress | None = None) -> dict[str, Any]:
        return await self._selector.setup_bundled(on_progress)

    # --- Events ---

    def events(self) -> Subscription:
        return self.bus.subscribe()

    def respond_permission(self, request_id: str, allowed: bool) -> bool:
        return self.broker.respond(request_id, allowed)
