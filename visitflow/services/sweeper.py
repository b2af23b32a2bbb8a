"""Periodic background work: payment reconciliation and hold expiry."""

import asyncio
import contextlib

import structlog

from visitflow.services.visit_engine import VisitLifecycleEngine

logger = structlog.get_logger(__name__)


class ExpirySweeper:
    """Runs the engine's reconciliation and expiry passes on an interval."""

    def __init__(self, engine: VisitLifecycleEngine, interval_seconds: float):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.is_running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the sweep loop."""
        if self.is_running:
            logger.warning("sweeper_already_running")
            return

        self.is_running = True
        self._task = asyncio.create_task(self._run())
        logger.info("sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the sweep loop and wait for it to exit."""
        self.is_running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("sweeper_stopped")

    async def run_once(self) -> dict[str, object]:
        """
        One sweep: reconcile stale payments, then expire elapsed holds.

        Expiry runs even when reconciliation fails.
        """
        reconciled: dict[str, int] | None = None
        try:
            reconciled = await self.engine.reconcile_stale_payments()
        except Exception as e:
            logger.error("payment_reconciliation_failed", error=str(e), exc_info=True)

        expired = await self.engine.expire_stale_holds()
        return {"reconciled": reconciled, "expired": expired}

    async def _run(self) -> None:
        while self.is_running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("sweep_failed", error=str(e), exc_info=True)

            await asyncio.sleep(self.interval_seconds)
