"""
Job worker pool.

N polling tasks claim due rows from the persisted job queue and dispatch them
by job type. Delays live in the queue, never in a sleeping coroutine, so a
restart loses nothing: unclaimed jobs stay pending and stale claims are
released by the reaper.
"""
import asyncio
from typing import List, Optional

from ndr_backend.app.core.config import get_settings
from ndr_backend.app.core.logging import correlation_id_ctx, get_logger, tenant_id_ctx
from ndr_backend.app.models.scheduled_job_orm import ScheduledJobORM
from ndr_backend.app.services.wiring import NDRServices
from ndr_backend.app.workers.job_queue import JobType, default_worker_id

logger = get_logger(__name__)


class JobWorkerPool:
    def __init__(
        self,
        services: NDRServices,
        worker_count: Optional[int] = None,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        settings = get_settings()
        self.services = services
        self.worker_count = worker_count or settings.job_worker_count
        self.poll_interval = poll_interval or settings.job_poll_interval_seconds
        self.batch_size = batch_size or settings.job_batch_size
        self.max_attempts = settings.executor_max_retries + 1
        self.backoff_seconds = settings.executor_backoff_seconds
        self._tasks: List[asyncio.Task] = []

    async def dispatch(self, job: ScheduledJobORM):
        if job.job_type == JobType.RTO_BOOKING_RETRY:
            return await self.services.coordinator.retry_booking(job.return_event_id)
        return await self.services.engine.handle_job(job)

    async def run_once(self, worker_id: str) -> int:
        """Claim and run one batch of due jobs. Returns how many ran."""
        queue = self.services.job_queue
        jobs = await queue.claim_due(worker_id, self.batch_size)
        for job in jobs:
            corr_token = correlation_id_ctx.set(f"job:{job.dedupe_key}")
            tenant_token = tenant_id_ctx.set(job.tenant_id)
            try:
                await queue.run_claimed(job, self.dispatch, self.max_attempts, self.backoff_seconds)
            finally:
                tenant_id_ctx.reset(tenant_token)
                correlation_id_ctx.reset(corr_token)
        return len(jobs)

    async def _worker_loop(self, worker_id: str) -> None:
        logger.info(f"Job worker {worker_id} started")
        try:
            while True:
                try:
                    ran = await self.run_once(worker_id)
                except Exception as e:
                    logger.error(f"Job worker {worker_id} error: {e}", exc_info=True)
                    ran = 0
                if ran < self.batch_size:
                    await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            logger.info(f"Job worker {worker_id} cancelled")
            raise

    def start(self) -> List[asyncio.Task]:
        base = default_worker_id()
        self._tasks = [
            asyncio.create_task(self._worker_loop(f"{base}:{i}"))
            for i in range(self.worker_count)
        ]
        logger.info(f"Started {self.worker_count} job workers (poll={self.poll_interval}s)")
        return self._tasks

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
