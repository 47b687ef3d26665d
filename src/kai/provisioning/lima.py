"""Lima toolchain and micro-VM lifecycle for macOS hosts."""

from __future__ import annotations

import asyncio
import gzip
import json
import os
import shutil
from pathlib import Path
from typing import IO, Any

import httpx

from kai.errors import KaiError, UnsupportedPlatformError
from kai.infrastructure.config import DATA_DIR, LIMA_VM_NAME, RESOURCES_DIR
from kai.infrastructure.logger import logger
from kai.infrastructure.process import CommandResult, run_command
from kai.provisioning.download import OnProgress
from kai.provisioning.installer import BinaryInstaller

LIMA_VERSION = "1.2.1"
_RELEASES = f"https://github.com/lima-vm/lima/releases/download/v{LIMA_VERSION}"


def parse_vm_list(output: str) -> list[dict[str, Any]]:
    """`limactl list --json` prints either one array or one object per line."""
    text = output.strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, list):
        return [vm for vm in data if isinstance(vm, dict)]
    if isinstance(data, dict):
        return [data]

    vms: list[dict[str, Any]] = []
    for line in text.splitlines():
        try:
            row = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed limactl output line", line=line[:200])
            continue
        if isinstance(row, dict):
            vms.append(row)
    return vms


class LimaProvisioner(BinaryInstaller):
    name = "Lima"
    download_urls = {
        "darwin-arm64": f"{_RELEASES}/lima-{LIMA_VERSION}-Darwin-arm64.tar.gz",
        "darwin-x64": f"{_RELEASES}/lima-{LIMA_VERSION}-Darwin-x86_64.tar.gz",
    }
    executables = (
        "limactl",
        "lima",
        "nerdctl.lima",
        "docker.lima",
        "kubectl.lima",
        "podman.lima",
        "apptainer.lima",
    )
    required = ("limactl", "lima")
    archive_name = "lima.tar.gz"

    def __init__(
        self,
        install_dir: Path | None = None,
        resources_dir: Path | None = None,
        vm_name: str = LIMA_VM_NAME,
        os_name: str | None = None,
        arch: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(
            install_dir or DATA_DIR / "lima",
            resources_dir or RESOURCES_DIR,
            os_name=os_name,
            arch=arch,
            http_client=http_client,
        )
        self.vm_name = vm_name
        self._start_task: asyncio.Task[None] | None = None

    @property
    def supported(self) -> bool:
        return self.os_name == "darwin"

    @property
    def limactl_path(self) -> Path:
        return self.bin_dir / "limactl"

    @property
    def lima_path(self) -> Path:
        return self.bin_dir / "lima"

    @property
    def nerdctl_path(self) -> Path:
        return self.bin_dir / "nerdctl.lima"

    def prebundled_path(self) -> Path | None:
        if not self.supported:
            return None
        return super().prebundled_path()

    def has_prebundled(self) -> bool:
        return self.prebundled_path() is not None

    async def install(self, on_progress: OnProgress | None = None) -> None:
        if not self.supported:
            raise UnsupportedPlatformError("Lima is only supported on macOS", {"platform": self.platform_key})
        await super().install(on_progress)

    async def _post_install(self, progress: OnProgress) -> None:
        await asyncio.to_thread(self._extract_guest_agent, progress)

    def _extract_guest_agent(self, progress: OnProgress) -> None:
        gz_path = self.install_dir / "share" / "lima" / "lima-guestagent.Linux-x86_64.gz"
        if not gz_path.exists():
            return
        progress("Extracting Lima guest agent...")
        target = gz_path.with_suffix("")
        try:
            with gzip.open(gz_path, "rb") as src, target.open("wb") as dst:
                shutil.copyfileobj(src, dst)
            gz_path.unlink()
        except OSError as err:
            # An already-extracted agent keeps Lima working
            logger.warning("Failed to extract Lima guest agent", path=str(gz_path), error=str(err))
            return
        progress("Lima guest agent extracted")

    # --- VM lifecycle ---

    async def list_vms(self) -> list[dict[str, Any]]:
        if not self.limactl_path.exists():
            return []
        try:
            result = await run_command([str(self.limactl_path), "list", "--json"], check=False)
        except KaiError:
            return []
        if not result.ok:
            return []
        return parse_vm_list(result.stdout)

    async def vm_info(self) -> dict[str, Any] | None:
        return next((vm for vm in await self.list_vms() if vm.get("name") == self.vm_name), None)

    async def vm_exists(self) -> bool:
        return await self.vm_info() is not None

    async def is_running(self) -> bool:
        info = await self.vm_info()
        return bool(info) and info.get("status") == "Running"  # type: ignore[union-attr]

    @property
    def starting(self) -> asyncio.Task[None] | None:
        """The VM start still in flight, if any."""
        if self._start_task is None or self._start_task.done():
            return None
        return self._start_task

    def start_task(self, on_progress: OnProgress | None = None) -> asyncio.Task[None]:
        """Return the in-flight VM start, creating it if none is running.

        Every caller shares one task, so a caller that stops waiting does not
        cancel the boot for the others.
        """
        if self._start_task is None or self._start_task.done():
            self._start_task = asyncio.create_task(self._start(on_progress))
            self._start_task.add_done_callback(self._log_start_result)
        return self._start_task

    async def start(self, on_progress: OnProgress | None = None) -> None:
        await self.start_task(on_progress)

    def _log_start_result(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        err = task.exception()
        if err:
            logger.error("Lima VM start failed", vm=self.vm_name, error=str(err))

    async def _start(self, on_progress: OnProgress | None) -> None:
        progress = on_progress or (lambda _msg: None)
        limactl = str(self.limactl_path)

        if await self.vm_exists():
            if await self.is_running():
                logger.info("Lima VM already running", vm=self.vm_name)
                progress("Lima VM already running")
                return
            progress("Starting Lima VM...")
            await run_command([limactl, "start", "--tty=false", self.vm_name])
            progress("Lima VM started")
        else:
            progress("Creating Lima VM (first time may take a few minutes)...")
            await run_command([limactl, "start", "--tty=false", f"--name={self.vm_name}", "template://default"])
            progress("Lima VM created and started")

        logger.info("Lima VM running", vm=self.vm_name)

    async def stop(self, on_progress: OnProgress | None = None) -> None:
        progress = on_progress or (lambda _msg: None)
        if not await self.is_running():
            progress("Lima VM already stopped")
            return
        progress("Stopping Lima VM...")
        await run_command([str(self.limactl_path), "stop", self.vm_name])
        progress("Lima VM stopped")

    async def delete(self, on_progress: OnProgress | None = None) -> None:
        progress = on_progress or (lambda _msg: None)
        if not await self.vm_exists():
            return
        progress("Deleting Lima VM...")
        await run_command([str(self.limactl_path), "delete", "--force", self.vm_name])
        progress("Lima VM deleted")

    async def exec_nerdctl(self, args: list[str], stdin: IO[bytes] | None = None) -> CommandResult:
        """Run nerdctl inside the VM through the `lima` wrapper."""
        env = {**os.environ, "LIMACTL": str(self.limactl_path), "LIMA_INSTANCE": self.vm_name}
        return await run_command([str(self.lima_path), "nerdctl", *args], env=env, stdin=stdin)
