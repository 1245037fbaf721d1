"""
Background Jobs for the fulfillment core

Provides scheduled tasks for:
- Scheduled job worker (delayed NDR workflow actions stored as rows)
- NDR deadline sweep (auto-RTO or escalate overdue NDRs)
- Early COD remittance (T+N batches for enrolled sellers)

Jobs are idempotent: scheduled rows are claimed with a conditional UPDATE,
overdue NDRs are leased, and remittance claims are guarded on the shipment.
"""
import asyncio
import logging
from typing import List, Optional

from sqlalchemy import select, update

from courierhub.core.config import settings
from courierhub.core.database import get_db_session, utcnow
from courierhub.models.scheduled_job import ScheduledJob, ScheduledJobStatus, ScheduledJobType
from courierhub.services.cod.remittance import CODRemittanceService
from courierhub.services.collaborators import LoggingNotificationSender, NotificationSender
from courierhub.services.ndr.resolution import NDRResolutionService

logger = logging.getLogger(__name__)


class FulfillmentJobRunner:
    """
    Manages and runs fulfillment background jobs.
    """

    def __init__(self, notifier: Optional[NotificationSender] = None):
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self.notifier = notifier or LoggingNotificationSender()

    async def start(self):
        """Start all background jobs."""
        if self._running:
            logger.warning("Fulfillment jobs already running")
            return

        self._running = True
        logger.info("Starting fulfillment background jobs")

        self._tasks = [
            asyncio.create_task(self._scheduled_job_loop()),
            asyncio.create_task(self._ndr_sweep_loop()),
            asyncio.create_task(self._early_remittance_loop()),
        ]

    async def stop(self):
        """Stop all background jobs."""
        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        logger.info("Fulfillment background jobs stopped")

    # ==================== Scheduled Job Worker ====================

    async def _scheduled_job_loop(self):
        while self._running:
            try:
                await self.run_due_jobs()
            except Exception as e:
                logger.error(f"Scheduled job worker error: {e}")

            await asyncio.sleep(settings.SCHEDULED_JOB_POLL_SECONDS)

    async def _claim_job(self, db, job_id: int) -> bool:
        now = utcnow()
        result = await db.execute(
            update(ScheduledJob)
            .where(
                ScheduledJob.id == job_id,
                ScheduledJob.status == ScheduledJobStatus.PENDING.value,
                ScheduledJob.run_at <= now,
            )
            .values(
                status=ScheduledJobStatus.RUNNING.value,
                attempts=ScheduledJob.attempts + 1,
                locked_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    async def _run_job(self, db, job: ScheduledJob) -> None:
        if job.job_type == ScheduledJobType.NDR_ACTION.value:
            service = NDRResolutionService(db, notifier=self.notifier)
            await service.execute_scheduled_action(dict(job.payload or {}))
        else:
            raise ValueError(f"Unknown job type {job.job_type}")

    async def run_due_jobs(self) -> int:
        """Claim and run one batch of due jobs. Returns the number completed."""
        async with get_db_session() as db:
            result = await db.execute(
                select(ScheduledJob.id)
                .where(
                    ScheduledJob.status == ScheduledJobStatus.PENDING.value,
                    ScheduledJob.run_at <= utcnow(),
                )
                .order_by(ScheduledJob.run_at)
                .limit(settings.SCHEDULED_JOB_BATCH_SIZE)
            )
            job_ids = list(result.scalars().all())
            if not job_ids:
                logger.debug("No scheduled jobs due")
                return 0

            completed = 0
            for job_id in job_ids:
                if not await self._claim_job(db, job_id):
                    continue

                job_result = await db.execute(
                    select(ScheduledJob)
                    .where(ScheduledJob.id == job_id)
                    .execution_options(populate_existing=True)
                )
                job = job_result.scalar_one()

                try:
                    await self._run_job(db, job)
                    job.status = ScheduledJobStatus.DONE.value
                    job.completed_at = utcnow()
                    job.last_error = None
                    await db.commit()
                    completed += 1
                except Exception as e:
                    await db.rollback()
                    logger.error(f"Scheduled job {job_id} ({job.job_type}) failed: {e}")
                    await self._record_failure(db, job_id, str(e))

            logger.info(f"Scheduled jobs: {completed} of {len(job_ids)} completed")
            return completed

    async def _record_failure(self, db, job_id: int, error: str) -> None:
        result = await db.execute(
            select(ScheduledJob).where(ScheduledJob.id == job_id).execution_options(populate_existing=True)
        )
        job = result.scalar_one()
        job.last_error = error[:2000]
        if job.attempts >= settings.SCHEDULED_JOB_MAX_ATTEMPTS:
            job.status = ScheduledJobStatus.FAILED.value
            job.completed_at = utcnow()
            logger.warning(f"Scheduled job {job_id} gave up after {job.attempts} attempts")
        else:
            job.status = ScheduledJobStatus.PENDING.value
            job.locked_at = None
        await db.commit()

    # ==================== NDR Deadline Sweep ====================

    async def _ndr_sweep_loop(self):
        while self._running:
            try:
                await self.run_ndr_sweep()
            except Exception as e:
                logger.error(f"NDR deadline sweep error: {e}")

            await asyncio.sleep(settings.NDR_SWEEP_INTERVAL_SECONDS)

    async def run_ndr_sweep(self) -> int:
        async with get_db_session() as db:
            processed = await NDRResolutionService(db, notifier=self.notifier).check_resolution_deadlines()
            if processed:
                logger.info(f"NDR deadline sweep processed {processed} NDRs")
            return processed

    # ==================== Early Remittance ====================

    async def _early_remittance_loop(self):
        while self._running:
            try:
                await self.run_early_remittances()
            except Exception as e:
                logger.error(f"Early remittance job error: {e}")

            await asyncio.sleep(settings.EARLY_REMITTANCE_INTERVAL_SECONDS)

    async def run_early_remittances(self) -> dict:
        async with get_db_session() as db:
            summary = await CODRemittanceService(db).run_early_remittances()
            logger.info(
                f"Early remittance run: {summary['batches']} batches, {summary['shipments']} shipments"
            )
            return summary


# ==================== Job Scheduler Integration ====================


_job_runner: Optional[FulfillmentJobRunner] = None


async def start_fulfillment_jobs():
    """Start the fulfillment background jobs."""
    global _job_runner

    if _job_runner is None:
        _job_runner = FulfillmentJobRunner()

    await _job_runner.start()


async def stop_fulfillment_jobs():
    """Stop the fulfillment background jobs."""
    global _job_runner

    if _job_runner:
        await _job_runner.stop()
        _job_runner = None
