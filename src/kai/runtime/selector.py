"""Runtime selection: pick and initialize exactly one backend."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from kai.errors import KaiError, RuntimeUnavailableError
from kai.infrastructure.logger import logger
from kai.provisioning.containerd import ContainerdProvisioner
from kai.provisioning.download import OnProgress
from kai.provisioning.lima import LimaProvisioner
from kai.provisioning.platforms import host_os
from kai.runtime.containerd_backend import ContainerdBackend
from kai.runtime.contract import ContainerRuntime
from kai.runtime.docker_backend import DockerBackend
from kai.runtime.types import RuntimeType
from kai.runtime.vm_backend import VmBackend

PREFERENCES = ("auto", "docker", "containerd", "lima")


class BackendFactories:
    """Constructors for each candidate backend. Tests swap these for fakes."""

    def __init__(
        self,
        vm: Callable[[], Any] | None = None,
        system_containerd: Callable[[], Any] | None = None,
        bundled_containerd: Callable[[], Any] | None = None,
        docker: Callable[[], Any] | None = None,
        containerd_provisioner: Callable[[], ContainerdProvisioner] | None = None,
        lima_provisioner: Callable[[], LimaProvisioner] | None = None,
    ) -> None:
        self.lima_provisioner = lima_provisioner or LimaProvisioner
        self.containerd_provisioner = containerd_provisioner or ContainerdProvisioner
        self.vm = vm or (lambda: VmBackend(self.lima_provisioner()))
        self.system_containerd = system_containerd or ContainerdBackend
        self.bundled_containerd = bundled_containerd or (
            lambda: ContainerdBackend.bundled(self.containerd_provisioner())
        )
        self.docker = docker or DockerBackend


class RuntimeSelector:
    """Tries backends in platform order until one initializes.

    darwin: VM backend (installed or pre-bundled), then a freshly provisioned
    VM. Other platforms: system containerd, then bundled containerd. Docker
    last everywhere. Any failure advances to the next candidate.
    """

    def __init__(
        self,
        preferred: str = "auto",
        os_name: str | None = None,
        factories: BackendFactories | None = None,
    ) -> None:
        if preferred not in PREFERENCES:
            raise ValueError(f"Unknown runtime preference: {preferred}")
        self._preferred = preferred
        self._os = os_name or host_os()
        self._factories = factories or BackendFactories()
        self._runtime: ContainerRuntime | None = None

    @property
    def preferred(self) -> str:
        return self._preferred

    @property
    def is_initialized(self) -> bool:
        return self._runtime is not None

    @property
    def runtime(self) -> ContainerRuntime:
        if self._runtime is None:
            raise RuntimeUnavailableError("Container runtime not initialized. Call initialize() first.")
        return self._runtime

    @property
    def runtime_type(self) -> str:
        """Active runtime type, or 'none' before selection."""
        if self._runtime is None:
            return "none"
        return self._runtime.get_runtime_type().value

    def _wants(self, runtime_type: str) -> bool:
        return self._preferred in ("auto", runtime_type)

    def _candidates(self) -> list[tuple[str, Callable[[], Awaitable[ContainerRuntime | None]]]]:
        candidates: list[tuple[str, Callable[[], Awaitable[ContainerRuntime | None]]]] = []
        if self._os == "darwin" and self._wants(RuntimeType.LIMA.value):
            candidates.append(("lima", self._try_vm))
            candidates.append(("lima-provisioned", self._try_provisioned_vm))
        if self._os != "darwin" and self._wants(RuntimeType.CONTAINERD.value):
            candidates.append(("containerd", self._try_system_containerd))
            candidates.append(("containerd-bundled", self._try_bundled_containerd))
        if self._wants(RuntimeType.DOCKER.value):
            candidates.append(("docker", self._try_docker))
        return candidates

    async def initialize(self) -> ContainerRuntime:
        if self._runtime is not None:
            return self._runtime

        for label, attempt in self._candidates():
            try:
                runtime = await attempt()
            except Exception as err:
                logger.warning("Runtime candidate failed", candidate=label, error=str(err))
                continue
            if runtime is not None:
                self._runtime = runtime
                logger.info("Container runtime selected", candidate=label, runtime=self.runtime_type)
                return runtime
            logger.info("Runtime candidate unavailable", candidate=label)

        raise RuntimeUnavailableError(
            "No container runtime available. Install the bundled runtime, "
            "or Docker Desktop for developer mode.",
            {"preferred": self._preferred, "platform": self._os},
        )

    async def _init_if_available(self, backend: Any) -> ContainerRuntime | None:
        if not await backend.is_available():
            return None
        await backend.initialize()
        return backend

    async def _try_vm(self) -> ContainerRuntime | None:
        return await self._init_if_available(self._factories.vm())

    async def _try_provisioned_vm(self) -> ContainerRuntime | None:
        backend = self._factories.vm()
        lima = backend.provisioner
        await lima.install(lambda msg: logger.info(msg, runtime="lima"))
        await lima.start(lambda msg: logger.info(msg, runtime="lima"))
        await backend.initialize()
        return backend

    async def _try_system_containerd(self) -> ContainerRuntime | None:
        return await self._init_if_available(self._factories.system_containerd())

    async def _try_bundled_containerd(self) -> ContainerRuntime | None:
        backend = self._factories.bundled_containerd()
        await backend.initialize()
        return backend

    async def _try_docker(self) -> ContainerRuntime | None:
        return await self._init_if_available(self._factories.docker())

    async def switch_runtime(self, runtime_type: RuntimeType | str) -> ContainerRuntime:
        """Drop the current selection and re-run selection pinned to runtime_type."""
        value = RuntimeType(runtime_type).value
        logger.info("Switching container runtime", current=self.runtime_type, requested=value)
        self._runtime = None
        self._preferred = value
        return await self.initialize()

    async def detect_available(self) -> dict[str, Any]:
        """Report which backends answer an availability probe right now."""
        result: dict[str, Any] = {"docker": False, "containerd": False, "lima": False}

        probes: list[tuple[str, Callable[[], Any]]] = [("docker", self._factories.docker)]
        if self._os == "darwin":
            probes.append(("lima", self._factories.vm))
        else:
            probes.append(("containerd", self._factories.system_containerd))

        for key, factory in probes:
            try:
                result[key] = bool(await factory().is_available())
            except Exception as err:
                logger.debug("Availability probe failed", runtime=key, error=str(err))

        result["current"] = self.runtime_type
        return result

    async def setup_bundled(self, on_progress: OnProgress | None = None) -> dict[str, Any]:
        """Provision the platform's bundled runtime, reporting progress messages."""
        progress = on_progress or (lambda _msg: None)
        try:
            if self._os == "darwin":
                lima = self._factories.lima_provisioner()
                await lima.install(progress)
                await lima.start(progress)
                runtime = RuntimeType.LIMA.value
            else:
                await self._factories.containerd_provisioner().initialize(progress)
                runtime = RuntimeType.CONTAINERD.value
        except KaiError as err:
            logger.error("Bundled runtime setup failed", error=err.message)
            return {"success": False, "runtime": None, "error": err.message}

        return {"success": True, "runtime": runtime, "error": None}
