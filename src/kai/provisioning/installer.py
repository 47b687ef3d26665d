"""Shared install pipeline for bundled engine binaries.

Pre-bundled copy from the application resources first, download and
extract second. Both paths end with the expected binaries made executable.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import httpx

from kai.errors import UnsupportedPlatformError
from kai.infrastructure.logger import logger
from kai.infrastructure.process import run_command
from kai.provisioning.download import OnProgress, download_file
from kai.provisioning.platforms import host_arch, host_os


class BinaryInstaller:
    """Installs one bundle of binaries into a per-user directory."""

    name: str = "runtime"
    download_urls: dict[str, str] = {}
    executables: tuple[str, ...] = ()
    required: tuple[str, ...] = ()
    archive_name: str = "bundle.tar.gz"

    def __init__(
        self,
        install_dir: Path,
        resources_dir: Path,
        os_name: str | None = None,
        arch: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.install_dir = install_dir
        self.resources_dir = resources_dir
        self.os_name = os_name or host_os()
        self.arch = arch or host_arch()
        self._http_client = http_client

    @property
    def platform_key(self) -> str:
        return f"{self.os_name}-{self.arch}"

    @property
    def bin_dir(self) -> Path:
        return self.install_dir / "bin"

    @property
    def copy_target(self) -> Path:
        """Where a pre-bundled directory is copied to."""
        return self.install_dir

    @property
    def extract_target(self) -> Path:
        """Where a downloaded archive is extracted to."""
        return self.install_dir

    def binary(self, name: str) -> Path:
        suffix = ".exe" if self.os_name == "win32" and "." not in name else ""
        return self.bin_dir / f"{name}{suffix}"

    def prebundled_path(self) -> Path | None:
        path = self.resources_dir / "bundled-runtime" / self.platform_key
        return path if path.is_dir() else None

    def download_url(self) -> str:
        url = self.download_urls.get(self.platform_key)
        if not url:
            raise UnsupportedPlatformError(
                f"No {self.name} build available for {self.platform_key}",
                {"platform": self.platform_key},
            )
        return url

    def is_installed(self) -> bool:
        return all(self.binary(name).exists() for name in self.required)

    async def install(self, on_progress: OnProgress | None = None) -> None:
        """Install the bundle. A no-op when already installed."""
        progress = on_progress or (lambda _msg: None)

        if self.is_installed():
            logger.info("Already installed", bundle=self.name, path=str(self.install_dir))
            progress(f"{self.name} already installed")
            return

        self.install_dir.mkdir(parents=True, exist_ok=True)
        self.bin_dir.mkdir(parents=True, exist_ok=True)

        source = self.prebundled_path()
        if source:
            progress(f"Using pre-bundled {self.name} from installation...")
            await asyncio.to_thread(copy_tree, source, self.copy_target)
        else:
            url = self.download_url()
            progress(f"Downloading {self.name} from {url}...")
            archive = self.install_dir / self.archive_name
            await download_file(url, archive, progress, label=f"Downloading {self.name}", client=self._http_client)

            progress(f"Extracting {self.name}...")
            self.extract_target.mkdir(parents=True, exist_ok=True)
            await run_command(["tar", "-xzf", str(archive), "-C", str(self.extract_target)])
            archive.unlink(missing_ok=True)

        await self._post_install(progress)
        self.make_executable()

        logger.info("Bundle installed", bundle=self.name, path=str(self.install_dir), prebundled=bool(source))
        progress(f"{self.name} installed successfully")

    async def _post_install(self, progress: OnProgress) -> None:
        """Hook for bundle-specific fix-ups after copy or extraction."""

    def make_executable(self) -> None:
        if self.os_name == "win32":
            return
        for name in self.executables:
            path = self.bin_dir / name
            try:
                path.chmod(0o755)
            except FileNotFoundError:
                # Optional wrappers are not shipped in every bundle
                logger.debug("Optional binary missing", bundle=self.name, binary=name)
            except OSError as err:
                logger.warning("Failed to chmod binary", bundle=self.name, binary=name, error=str(err))

    def uninstall(self) -> None:
        if not self.install_dir.exists():
            return
        shutil.rmtree(self.install_dir)
        logger.info("Bundle removed", bundle=self.name, path=str(self.install_dir))


def copy_tree(src: Path, dest: Path) -> None:
    """Copy a directory tree, recreating symlinks rather than following them."""
    shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
