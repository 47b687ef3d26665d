"""Periodic health check with bounded auto-restart of essential services."""

from __future__ import annotations

from kai.infrastructure.config import HEALTH_CHECK_INTERVAL
from kai.infrastructure.logger import logger
from kai.infrastructure.poll_loop import PollLoop
from kai.services.orchestrator import ServiceManager


class HealthMonitor:
    def __init__(self, services: ServiceManager, interval_s: float = HEALTH_CHECK_INTERVAL) -> None:
        self._services = services
        self._interval = interval_s
        self._auto_restart = True
        self._loop: PollLoop | None = None

    @property
    def running(self) -> bool:
        return self._loop is not None and self._loop.running

    @property
    def auto_restart_enabled(self) -> bool:
        return self._auto_restart

    def start(self) -> None:
        if self.running:
            return
        self._loop = PollLoop("Health monitor", self._interval, self.check_once, run_immediately=False)
        self._loop.start()

    def stop(self) -> None:
        if self._loop:
            self._loop.stop()
            self._loop = None

    def set_auto_restart(self, enabled: bool) -> None:
        self._auto_restart = enabled
        if enabled:
            self.start()
        else:
            self.stop()

    async def check_once(self) -> None:
        """One monitor tick: restart failed essential services within the retry bound."""
        if not self._auto_restart:
            return

        attempts = self._services.restart_attempts
        statuses = await self._services.list_statuses()

        for status in statuses:
            if status.essential and status.status in ("stopped", "error"):
                if not attempts.can_retry(status.name):
                    logger.error(
                        "Max restart attempts reached",
                        service=status.name,
                        attempts=attempts.get(status.name),
                    )
                    continue

                attempt = attempts.increment(status.name)
                logger.warning("Auto-restarting service", service=status.name, attempt=attempt)
                try:
                    await self._services.start(status.name)
                except Exception as err:
                    logger.error("Auto-restart failed", service=status.name, attempt=attempt, error=str(err))
                else:
                    attempts.reset(status.name)
            elif status.status == "running":
                attempts.reset(status.name)

        await self._services.publish_statuses()
