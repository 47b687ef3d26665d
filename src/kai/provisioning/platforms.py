"""Host platform and architecture resolution for binary provisioning."""

from __future__ import annotations

import platform as _platform
import sys


def host_os() -> str:
    """Return 'darwin', 'linux' or 'win32'."""
    if sys.platform.startswith("darwin"):
        return "darwin"
    if sys.platform.startswith("win"):
        return "win32"
    return "linux"


def host_arch() -> str:
    """Return 'arm64' or 'x64'. Anything that is not ARM is treated as x64."""
    machine = _platform.machine().lower()
    return "arm64" if machine in ("arm64", "aarch64") else "x64"


def platform_key(os_name: str | None = None, arch: str | None = None) -> str:
    return f"{os_name or host_os()}-{arch or host_arch()}"
