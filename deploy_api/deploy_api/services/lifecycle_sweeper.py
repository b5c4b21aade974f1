"""Background sweeper for stuck deployments and expired draft previews.

Runs as an ``asyncio`` background task started from the FastAPI lifespan.
Each pass runs the deployment watchdog and then the draft expiry sweep;
the same pass is available on demand through ``deployctl sweep``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from deploy_core.errors import LifecycleError
from pydantic import BaseModel
from sqlalchemy.exc import InterfaceError, OperationalError

from deploy_api.services.draft_service import DraftService
from deploy_api.services.orchestrator import DeploymentOrchestrator

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    """What one sweep pass changed."""

    timed_out: list[str]
    drafts_expired: int
    finished_at: datetime


class LifecycleSweeper:
    """AsyncIO background task that keeps transient states transient.

    Parameters
    ----------
    orchestrator:
        Resolves DEPLOYING OrgApps that stopped reporting progress.
    drafts:
        Destroys draft previews past their expiry.
    interval_seconds:
        Pause between passes.
    """

    def __init__(
        self,
        orchestrator: DeploymentOrchestrator,
        drafts: DraftService,
        interval_seconds: int = 60,
    ) -> None:
        self._orchestrator = orchestrator
        self._drafts = drafts
        self._interval = interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweeper background task."""
        if self._running:
            logger.warning("LifecycleSweeper already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("LifecycleSweeper started (interval=%ds)", self._interval)

    async def stop(self) -> None:
        """Stop the sweeper gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("LifecycleSweeper stopped")

    async def run_once(self, now: datetime | None = None) -> SweepReport:
        """Run the watchdog and the draft expiry sweep once."""
        now = now or datetime.now(UTC)
        timed_out = await self._orchestrator.reconcile_stuck(now)
        expired = await self._drafts.sweep_expired(now)
        return SweepReport(
            timed_out=[f"{r.org_id}/{r.app_id}" for r in timed_out],
            drafts_expired=expired,
            finished_at=datetime.now(UTC),
        )

    async def _run_loop(self) -> None:
        while self._running:
            try:
                report = await self.run_once()
                if report.timed_out or report.drafts_expired:
                    logger.info(
                        "Sweep: %d deployment(s) timed out, %d draft(s) expired",
                        len(report.timed_out),
                        report.drafts_expired,
                    )
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("LifecycleSweeper database error: %s", exc, exc_info=True)
            except LifecycleError as exc:
                logger.warning("LifecycleSweeper pass interrupted (%s): %s", exc.kind, exc.message)
            except Exception as exc:
                logger.critical("LifecycleSweeper unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._interval)
