"""nerdctl inside a Lima micro-VM, for hosts with no native containerd."""

from __future__ import annotations

import asyncio
from typing import IO

from kai.errors import UnsupportedPlatformError
from kai.infrastructure.config import NERDCTL_NAMESPACE, VM_START_TIMEOUT
from kai.infrastructure.logger import logger
from kai.infrastructure.process import CommandResult
from kai.provisioning.lima import LimaProvisioner
from kai.runtime.nerdctl import NerdctlBackend
from kai.runtime.types import RuntimeType


class VmBackend(NerdctlBackend):
    runtime_type = RuntimeType.LIMA

    def __init__(
        self,
        provisioner: LimaProvisioner | None = None,
        start_timeout: float = VM_START_TIMEOUT,
        namespace: str = NERDCTL_NAMESPACE,
    ) -> None:
        self._lima = provisioner or LimaProvisioner()
        self._start_timeout = start_timeout
        self.namespace = namespace

    @property
    def provisioner(self) -> LimaProvisioner:
        return self._lima

    async def _run(self, args: list[str], stdin: IO[bytes] | None = None) -> CommandResult:
        booting = self._lima.starting
        if booting is not None:
            await asyncio.shield(booting)
        return await self._lima.exec_nerdctl(["--namespace", self.namespace, *args], stdin=stdin)

    async def initialize(self) -> None:
        """Provision Lima and make sure the VM is booting.

        A boot that outlives the start timeout is not an error: the first
        boot downloads a VM image and keeps going in the background.
        """
        if not self._lima.supported:
            raise UnsupportedPlatformError("Lima is only supported on macOS", {"platform": self._lima.platform_key})

        await self._lima.install(lambda msg: logger.info(msg, runtime="lima"))

        if await self._lima.is_running():
            logger.info("Lima VM already running", vm=self._lima.vm_name)
            return

        logger.info("Lima VM not running, starting", vm=self._lima.vm_name, timeout_s=self._start_timeout)
        task = self._lima.start_task(lambda msg: logger.info(msg, runtime="lima"))
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._start_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Lima VM start timed out, continuing while it boots in the background",
                vm=self._lima.vm_name,
                timeout_s=self._start_timeout,
            )

    async def is_available(self) -> bool:
        if not self._lima.supported:
            return False
        return self._lima.is_installed() or self._lima.has_prebundled()
