"""Maintenance sweeper — periodically purges expired codes and stale ledger rows."""

from __future__ import annotations

import asyncio
import logging

from otp_guard.services.otp_service import OTPService
from otp_guard.services.results import CleanupReport

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 600.0


class MaintenanceSweeper:
    """Runs ``OTPService.cleanup_expired`` on a fixed interval.

    The task is owned by whoever calls :meth:`start` (normally the
    application lifespan), which must call :meth:`stop` on shutdown.
    """

    def __init__(self, service: OTPService, interval_seconds: float = DEFAULT_INTERVAL_SECONDS) -> None:
        self._service = service
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> CleanupReport:
        """Run a single maintenance pass."""
        return await self._service.cleanup_expired()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="otp-maintenance-sweeper")
        logger.info("Maintenance sweeper started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Maintenance sweeper stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Maintenance pass failed; retrying next interval")
