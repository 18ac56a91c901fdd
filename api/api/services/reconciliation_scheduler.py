"""Optional in-process trigger for the billing reconciliation jobs.

Deployments normally call ``POST /api/cron/*`` from an external scheduler.
When ``reconciliation_interval_seconds`` is set, the application lifespan
starts this ``asyncio`` task instead, which runs the same operations on a
fixed interval.  The operations are idempotent, so running both triggers at
once is harmless.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """AsyncIO background task running the reconciliation jobs periodically.

    Parameters
    ----------
    session_factory:
        An ``async_sessionmaker`` used to create one session per job run.
    interval_seconds:
        Delay between runs.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._session_factory = session_factory
        self._interval = interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("ReconciliationScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("ReconciliationScheduler started (interval=%.0fs)", self._interval)

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ReconciliationScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("ReconciliationScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("ReconciliationScheduler unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._interval)

    async def run_once(self) -> None:
        """Run both jobs, each in its own transaction."""
        async with self._session_factory() as session:
            result = await ReconciliationService(session).apply_due_plan_changes()
            await session.commit()
        logger.info("Scheduled plan-change reconciliation complete: %s", result)

        async with self._session_factory() as session:
            reminders = await ReconciliationService(session).process_due_reminders()
            await session.commit()
        logger.info("Scheduled reminder run complete: %s", reminders)
