"""Image download permission round-trip with the desktop shell."""

from __future__ import annotations

import asyncio
import uuid
from typing import Protocol

from kai.infrastructure.config import PERMISSION_TIMEOUT
from kai.infrastructure.logger import logger
from kai.services.events import EventBus
from kai.services.types import ImageDownloadPermissionRequest


class PermissionGate(Protocol):
    async def request(self, service_name: str, image_name: str) -> bool: ...


class AutoApprove:
    """Grants every request. Used for headless runs with --allow-image-pull."""

    async def request(self, service_name: str, image_name: str) -> bool:
        logger.info("Image download auto-approved", service=service_name, image=image_name)
        return True


class PermissionBroker:
    """Publishes a request event and waits for the correlated answer.

    No answer within the timeout counts as a denial.
    """

    def __init__(self, bus: EventBus, timeout_s: float = PERMISSION_TIMEOUT) -> None:
        self._bus = bus
        self._timeout = timeout_s
        self._pending: dict[str, asyncio.Future[bool]] = {}

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    async def request(self, service_name: str, image_name: str) -> bool:
        request_id = str(uuid.uuid4())
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        self._bus.publish(
            ImageDownloadPermissionRequest(id=request_id, service_name=service_name, image_name=image_name)
        )
        logger.info("Image download permission requested", id=request_id, service=service_name, image=image_name)

        try:
            return await asyncio.wait_for(future, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Image download permission timed out", id=request_id, service=service_name)
            return False
        finally:
            self._pending.pop(request_id, None)

    def respond(self, request_id: str, allowed: bool) -> bool:
        """Deliver the user's decision. Unknown or late ids are ignored."""
        future = self._pending.get(request_id)
        if future is None or future.done():
            logger.info("Ignoring permission response for unknown request", id=request_id)
            return False
        future.set_result(allowed)
        logger.info("Image download permission answered", id=request_id, allowed=allowed)
        return True
