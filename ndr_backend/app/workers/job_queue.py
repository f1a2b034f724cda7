"""
Persisted due-at job queue.

Workflow delays, address-response windows, escalation checks and reverse
pickup retries are rows in `ndr_scheduled_jobs`. Workers claim due rows with
a compare-and-swap on `status`, so any number of workers (in any number of
processes) can poll the same table without running a job twice.
"""
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, List, Dict, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ndr_backend.app.core.config import get_settings
from ndr_backend.app.core.database import utcnow
from ndr_backend.app.core.logging import get_logger
from ndr_backend.app.core.resilience import compute_next_retry_at
from ndr_backend.app.models.scheduled_job_orm import ScheduledJobORM

logger = get_logger(__name__)


class JobType:
    EXECUTE_ACTION = "execute_action"
    ADDRESS_RESPONSE_WINDOW = "address_response_window"
    ESCALATION_CHECK = "escalation_check"
    RTO_DURATION_CHECK = "rto_duration_check"
    RTO_BOOKING_RETRY = "rto_booking_retry"


class JobStatus:
    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def build_job(
    job_type: str,
    tenant_id: str,
    due_at: datetime,
    dedupe_key: str,
    failure_event_id: Optional[str] = None,
    return_event_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> ScheduledJobORM:
    """Unsaved job row, for callers that persist it inside their own transaction."""
    return ScheduledJobORM(
        id=str(uuid.uuid4()),
        job_type=job_type,
        tenant_id=tenant_id,
        failure_event_id=failure_event_id,
        return_event_id=return_event_id,
        payload=payload or {},
        due_at=due_at,
        status=JobStatus.PENDING,
        attempts=0,
        dedupe_key=dedupe_key,
    )


class JobQueue:
    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow, lease_seconds: Optional[int] = None):
        settings = get_settings()
        self.session_factory = session_factory
        self.clock = clock
        self.lease = timedelta(seconds=lease_seconds or settings.job_claim_lease_seconds)

    async def enqueue(
        self,
        job_type: str,
        tenant_id: str,
        due_at: datetime,
        dedupe_key: str,
        failure_event_id: Optional[str] = None,
        return_event_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[ScheduledJobORM]:
        """Schedule a job. Returns None when a job with the same dedupe key exists."""
        job = build_job(job_type, tenant_id, due_at, dedupe_key, failure_event_id, return_event_id, payload)
        async with self.session_factory() as session:
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug(f"Job {dedupe_key} already scheduled")
                return None
        return job

    async def get_by_key(self, dedupe_key: str) -> Optional[ScheduledJobORM]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScheduledJobORM).where(ScheduledJobORM.dedupe_key == dedupe_key)
            )
            return result.scalar_one_or_none()

    async def claim(self, job_id: str, worker_id: str) -> Optional[ScheduledJobORM]:
        """Claim one pending job. None when another worker already has it."""
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(ScheduledJobORM)
                .where(ScheduledJobORM.id == job_id, ScheduledJobORM.status == JobStatus.PENDING)
                .values(
                    status=JobStatus.CLAIMED,
                    claimed_by=worker_id,
                    claimed_at=now,
                    attempts=ScheduledJobORM.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            return await session.get(ScheduledJobORM, job_id, populate_existing=True)

    async def claim_due(self, worker_id: str, limit: int = 10) -> List[ScheduledJobORM]:
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScheduledJobORM.id)
                .where(ScheduledJobORM.status == JobStatus.PENDING, ScheduledJobORM.due_at <= now)
                .order_by(ScheduledJobORM.due_at)
                .limit(limit)
            )
            candidate_ids = [row[0] for row in result.all()]

        claimed = []
        for job_id in candidate_ids:
            job = await self.claim(job_id, worker_id)
            if job is not None:
                claimed.append(job)
        return claimed

    async def complete(self, job: ScheduledJobORM) -> None:
        await self._finish(job, JobStatus.COMPLETED)

    async def fail(self, job: ScheduledJobORM, error: str) -> None:
        await self._finish(job, JobStatus.FAILED, error)

    async def reschedule(self, job: ScheduledJobORM, due_at: datetime, error: Optional[str] = None) -> None:
        """Return a claimed job to the queue with a new due time."""
        async with self.session_factory() as session:
            await session.execute(
                update(ScheduledJobORM)
                .where(ScheduledJobORM.id == job.id, ScheduledJobORM.status == JobStatus.CLAIMED)
                .values(
                    status=JobStatus.PENDING,
                    due_at=due_at,
                    last_error=error,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=self.clock(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def retry_or_fail(self, job: ScheduledJobORM, error: str, max_attempts: int, backoff_seconds: int) -> None:
        """Unexpected handler error: back off, or give up after max_attempts."""
        if job.attempts >= max_attempts:
            logger.error(f"Job {job.dedupe_key} failed after {job.attempts} attempts: {error}")
            await self.fail(job, error)
            return
        due_at = compute_next_retry_at(self.clock(), job.attempts, backoff_seconds)
        logger.warning(f"Job {job.dedupe_key} attempt {job.attempts} failed, retrying at {due_at.isoformat()}: {error}")
        await self.reschedule(job, due_at, error)

    async def release_stale_claims(self) -> int:
        """Put jobs whose worker died mid-run back in the queue."""
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(ScheduledJobORM)
                .where(
                    ScheduledJobORM.status == JobStatus.CLAIMED,
                    ScheduledJobORM.claimed_at < now - self.lease,
                )
                .values(status=JobStatus.PENDING, claimed_by=None, claimed_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.warning(f"Released {result.rowcount} stale job claims")
        return result.rowcount

    async def _finish(self, job: ScheduledJobORM, status: str, error: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(ScheduledJobORM)
                .where(ScheduledJobORM.id == job.id, ScheduledJobORM.status == JobStatus.CLAIMED)
                .values(status=status, last_error=error, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def run_claimed(
        self,
        job: ScheduledJobORM,
        handler: Callable[[ScheduledJobORM], Awaitable[Optional[datetime]]],
        max_attempts: int,
        backoff_seconds: int,
    ) -> None:
        """
        Run a claimed job and settle it. A handler returns None when the job
        is done, or the time it wants to run again.
        """
        try:
            next_due = await handler(job)
        except Exception as e:
            logger.error(f"Job {job.dedupe_key} raised: {e!r}", exc_info=True)
            await self.retry_or_fail(job, repr(e), max_attempts, backoff_seconds)
            return
        if next_due is None:
            await self.complete(job)
        else:
            await self.reschedule(job, next_due)
