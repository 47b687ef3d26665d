"""Settings for kai: data and resource paths, engine constants, lifecycle policy.

Most values can be overridden through KAI_* environment variables. The
location settings may also come from a .env file in the working directory.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable


def _parse_env_line(line: str) -> tuple[str, str] | None:
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    key, sep, value = line.removeprefix("export ").partition("=")
    if not sep:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        value = value[1:-1]
    return key.strip(), value


def read_env_file(keys: Iterable[str], path: Path | None = None) -> dict[str, str]:
    """Values for the requested keys from a dotenv file, ./.env by default.

    os.environ is left alone, so the engine subprocesses never inherit them.
    """
    env_file = path or Path.cwd() / ".env"
    try:
        lines = env_file.read_text().splitlines()
    except OSError:
        return {}

    wanted = set(keys)
    found: dict[str, str] = {}
    for line in lines:
        parsed = _parse_env_line(line)
        if parsed and parsed[0] in wanted and parsed[1]:
            found[parsed[0]] = parsed[1]
    return found


_env_config = read_env_file(["KAI_DATA_DIR", "KAI_RESOURCES_DIR", "KAI_PREFERRED_RUNTIME"])


def _setting(key: str, default: str) -> str:
    return os.environ.get(key) or _env_config.get(key, default)


# Absolute paths
HOME_DIR: Path = Path.home()

DATA_DIR: Path = Path(_setting("KAI_DATA_DIR", str(HOME_DIR / ".kai-desktop"))).expanduser().resolve()
RESOURCES_DIR: Path = Path(_setting("KAI_RESOURCES_DIR", str(Path.cwd() / "resources"))).expanduser().resolve()
CONFIG_FILE: Path = DATA_DIR / "kai-config.yaml"

PREFERRED_RUNTIME: str = _setting("KAI_PREFERRED_RUNTIME", "auto")

# Container engine
NERDCTL_NAMESPACE: str = "kai"
LIMA_VM_NAME: str = os.environ.get("KAI_LIMA_VM_NAME", "default")
VM_START_TIMEOUT: float = float(os.environ.get("KAI_VM_START_TIMEOUT", "30"))  # seconds
DAEMON_POLL_INTERVAL: float = 1.0
DAEMON_POLL_ATTEMPTS: int = 30
STOP_TIMEOUT: int = 10  # seconds given to a container to exit on stop

# Service lifecycle policy
HEALTH_CHECK_INTERVAL: float = float(os.environ.get("KAI_HEALTH_CHECK_INTERVAL", "15"))
MAX_RESTART_ATTEMPTS: int = max(0, int(os.environ.get("KAI_MAX_RESTART_ATTEMPTS", "3")))
HEALTH_WAIT_POLL_INTERVAL: float = 2.0
HEALTH_WAIT_TIMEOUT: float = 60.0
PERMISSION_TIMEOUT: float = float(os.environ.get("KAI_PERMISSION_TIMEOUT", "30"))

# Event delivery
EVENT_QUEUE_SIZE: int = 256
