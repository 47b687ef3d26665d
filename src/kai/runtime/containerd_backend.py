"""containerd backend driven through a local nerdctl binary."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import IO

from kai.errors import KaiError
from kai.infrastructure.config import NERDCTL_NAMESPACE
from kai.infrastructure.logger import logger
from kai.infrastructure.process import CommandResult, run_command
from kai.provisioning.containerd import ContainerdProvisioner
from kai.runtime.nerdctl import NerdctlBackend
from kai.runtime.types import RuntimeType


class ContainerdBackend(NerdctlBackend):
    """Runs `nerdctl --namespace kai [--address sock] ...` per operation.

    The binary path is injectable so the same adapter serves a system-wide
    install and the bundled one.
    """

    runtime_type = RuntimeType.CONTAINERD

    def __init__(
        self,
        nerdctl_path: str | Path | None = None,
        address: str | None = None,
        namespace: str = NERDCTL_NAMESPACE,
        provisioner: ContainerdProvisioner | None = None,
    ) -> None:
        self.nerdctl_path = str(nerdctl_path or shutil.which("nerdctl") or "nerdctl")
        self.address = address
        self.namespace = namespace
        self._provisioner = provisioner

    @classmethod
    def bundled(cls, provisioner: ContainerdProvisioner | None = None) -> ContainerdBackend:
        provisioner = provisioner or ContainerdProvisioner()
        return cls(
            nerdctl_path=provisioner.nerdctl_path,
            address=str(provisioner.socket_path),
            provisioner=provisioner,
        )

    @property
    def is_bundled(self) -> bool:
        return self._provisioner is not None

    def _base_args(self) -> list[str]:
        args = [self.nerdctl_path, "--namespace", self.namespace]
        if self.address:
            args += ["--address", self.address]
        return args

    async def _run(self, args: list[str], stdin: IO[bytes] | None = None) -> CommandResult:
        return await run_command([*self._base_args(), *args], stdin=stdin)

    async def initialize(self) -> None:
        if self._provisioner:
            await self._provisioner.initialize(lambda msg: logger.info(msg, runtime="containerd"))
        await self._exec("version")
        logger.info("containerd adapter initialized", binary=self.nerdctl_path, bundled=self.is_bundled)

    async def is_available(self) -> bool:
        try:
            result = await self._run(["version"])
        except KaiError:
            return False
        return result.ok
