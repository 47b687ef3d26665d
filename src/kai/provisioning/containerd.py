"""Bundled containerd + nerdctl: install, configure and run a private daemon."""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx

from kai.errors import DaemonStartFailedError, KaiError
from kai.infrastructure.config import DAEMON_POLL_ATTEMPTS, DAEMON_POLL_INTERVAL, DATA_DIR, RESOURCES_DIR
from kai.infrastructure.logger import logger
from kai.infrastructure.process import run_command
from kai.provisioning.download import OnProgress
from kai.provisioning.installer import BinaryInstaller

NERDCTL_VERSION = "2.1.6"
_RELEASES = f"https://github.com/containerd/nerdctl/releases/download/v{NERDCTL_VERSION}"

_CONTAINERD_CONFIG = """\
version = 2

root = "{root}"
state = "{state}"

[grpc]
  address = "{socket}"

[plugins]
  [plugins."io.containerd.grpc.v1.cri"]
    [plugins."io.containerd.grpc.v1.cri".containerd]
      snapshotter = "overlayfs"
      [plugins."io.containerd.grpc.v1.cri".containerd.runtimes]
        [plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc]
          runtime_type = "io.containerd.runc.v2"
"""


class ContainerdProvisioner(BinaryInstaller):
    name = "containerd"
    download_urls = {
        "linux-arm64": f"{_RELEASES}/nerdctl-full-{NERDCTL_VERSION}-linux-arm64.tar.gz",
        "linux-x64": f"{_RELEASES}/nerdctl-full-{NERDCTL_VERSION}-linux-amd64.tar.gz",
        "win32-x64": f"{_RELEASES}/nerdctl-full-{NERDCTL_VERSION}-windows-amd64.tar.gz",
    }
    executables = ("nerdctl", "containerd", "containerd-shim-runc-v2", "runc", "ctr")
    required = ("nerdctl", "containerd")
    archive_name = "nerdctl-full.tar.gz"

    def __init__(
        self,
        install_dir: Path | None = None,
        resources_dir: Path | None = None,
        os_name: str | None = None,
        arch: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        poll_interval: float = DAEMON_POLL_INTERVAL,
        poll_attempts: int = DAEMON_POLL_ATTEMPTS,
    ) -> None:
        super().__init__(
            install_dir or DATA_DIR / "bundled-runtime",
            resources_dir or RESOURCES_DIR,
            os_name=os_name,
            arch=arch,
            http_client=http_client,
        )
        self._poll_interval = poll_interval
        self._poll_attempts = poll_attempts
        self._daemon: asyncio.subprocess.Process | None = None
        self._initialized = False

    @property
    def copy_target(self) -> Path:
        # Pre-bundled directories hold the binaries flat; the release archive has bin/
        return self.bin_dir

    @property
    def data_dir(self) -> Path:
        return self.install_dir / "data"

    @property
    def socket_path(self) -> Path:
        return self.data_dir / "containerd.sock"

    @property
    def config_path(self) -> Path:
        return self.install_dir / "containerd-config.toml"

    @property
    def nerdctl_path(self) -> Path:
        return self.binary("nerdctl")

    @property
    def containerd_path(self) -> Path:
        return self.binary("containerd")

    async def is_running(self) -> bool:
        if not self.nerdctl_path.exists():
            return False
        try:
            result = await run_command(
                [str(self.nerdctl_path), "--address", str(self.socket_path), "version"], check=False
            )
        except KaiError:
            return False
        return result.ok and "Server:" in result.stdout

    def write_config(self) -> None:
        data = self.data_dir.as_posix()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(
            _CONTAINERD_CONFIG.format(root=f"{data}/root", state=f"{data}/state", socket=self.socket_path.as_posix())
        )

    async def start_daemon(self, on_progress: OnProgress | None = None) -> None:
        """Start containerd detached and wait until nerdctl can reach it."""
        progress = on_progress or (lambda _msg: None)

        if await self.is_running():
            logger.info("containerd daemon already running", socket=str(self.socket_path))
            progress("Containerd daemon already running")
            return

        self.write_config()
        progress("Starting containerd daemon...")
        logger.info("Starting containerd daemon", binary=str(self.containerd_path))

        try:
            self._daemon = await asyncio.create_subprocess_exec(
                str(self.containerd_path),
                "--config", str(self.config_path),
                "--root", str(self.data_dir / "root"),
                "--state", str(self.data_dir / "state"),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as err:
            raise DaemonStartFailedError(f"Failed to spawn containerd: {err}") from err

        for attempt in range(1, self._poll_attempts + 1):
            await asyncio.sleep(self._poll_interval)
            if await self.is_running():
                logger.info("containerd daemon ready", attempts=attempt)
                progress("Containerd daemon started successfully")
                return

        raise DaemonStartFailedError(
            "Failed to start containerd daemon",
            {"attempts": self._poll_attempts, "socket": str(self.socket_path)},
        )

    async def stop_daemon(self) -> None:
        if self._daemon and self._daemon.returncode is None:
            self._daemon.terminate()
            await self._daemon.wait()
            self._daemon = None
            logger.info("containerd daemon stopped")
            return

        if self.os_name == "win32":
            await run_command(["taskkill", "/F", "/IM", "containerd.exe"], check=False)
        else:
            await run_command(["pkill", "-f", str(self.containerd_path)], check=False)

    async def initialize(self, on_progress: OnProgress | None = None) -> None:
        """Install if needed, then start the daemon if needed."""
        if self._initialized:
            return
        progress = on_progress or (lambda _msg: None)
        progress("Initializing bundled container runtime...")

        await self.install(progress)
        await self.start_daemon(progress)

        self._initialized = True
        progress("Bundled runtime ready")

    async def remove(self) -> None:
        try:
            await self.stop_daemon()
        except KaiError as err:
            logger.warning("Failed to stop containerd daemon", error=str(err))
        self.uninstall()
        self._initialized = False
