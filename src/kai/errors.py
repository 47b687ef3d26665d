"""Error kinds raised by the runtime and service layers."""

from __future__ import annotations

from typing import Any


class KaiError(Exception):
    """Base error carrying an optional details mapping for log context."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""


class RuntimeUnavailableError(KaiError):
    """No container runtime could be selected."""


class RuntimeOperationFailedError(KaiError):
    """A backend call failed. The message is backend-specific, the kind is not."""


class UnsupportedPlatformError(KaiError):
    """No provisioning path exists for this OS/architecture."""


class DaemonStartFailedError(KaiError):
    """The bundled daemon or VM never became ready."""


class ServiceNotFoundError(KaiError):
    """The requested service key is not defined."""


class DependencyCycleError(KaiError):
    """The dependsOn graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}", {"cycle": cycle})
        self.cycle = cycle


class ServiceStartError(KaiError):
    """A service could not be brought to the running state."""


class ImagePullDeniedError(ServiceStartError):
    """The user declined (or never answered) the image download request."""


class ImagePullFailedError(ServiceStartError):
    """The image download itself failed."""


class HealthCheckTimeoutError(ServiceStartError):
    """The container never reported healthy within the wait window."""


class ConfigValidationError(KaiError):
    """An imported configuration failed validation."""
