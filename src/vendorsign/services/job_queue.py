"""Durable job queue on PostgreSQL.

Sign requests are queued as rows in ``jobs`` and claimed with
SELECT ... FOR UPDATE SKIP LOCKED, so any number of workers can poll the
same queue without two of them holding one job.

Delivery is at-least-once:
- A worker that dies mid-job leaves a RUNNING row with a stale lock;
  ``cleanup_stale_jobs`` puts it back to PENDING for another worker
- A handler that raises is retried with exponential backoff until
  ``max_attempts``, then the row is dead-lettered as FAILED

Handlers must therefore be idempotent. The document signing handler
records domain failures itself and only lets infrastructure errors
reach the retry path.

Usage:
    queue = JobQueueService(session)
    job_id = await queue.enqueue(JobType.DOCUMENT_SIGN, payload, correlation_id=str(sign_job_id))
    await session.commit()
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from vendorsign.db.models.base import JobStatus
from vendorsign.db.models.jobs import Job

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    """Job types, each dispatched to one registered worker handler."""

    DOCUMENT_SIGN = "document_sign"


class JobQueueError(Exception):
    """Base exception for job queue operations."""

    pass


class JobNotFoundError(JobQueueError):
    """Raised when a job cannot be found."""

    pass


class JobQueueService:
    """Enqueue, claim and settle queue jobs.

    The service flushes but never commits; the caller owns the transaction.

    Attributes:
        session: SQLAlchemy async session.
        default_queue: Queue used when none is given.
        default_max_attempts: Attempts before a job is dead-lettered.
        default_base_backoff: First retry delay in seconds; doubles per attempt.
    """

    def __init__(
        self,
        session: AsyncSession,
        default_queue: str = "default",
        default_max_attempts: int = 3,
        default_base_backoff: int = 60,
    ) -> None:
        self.session = session
        self.default_queue = default_queue
        self.default_max_attempts = default_max_attempts
        self.default_base_backoff = default_base_backoff

    async def enqueue(
        self,
        job_type: str | JobType,
        payload: dict[str, Any] | None = None,
        run_at: datetime | None = None,
        queue: str | None = None,
        priority: int = 100,
        max_attempts: int | None = None,
        correlation_id: str | None = None,
    ) -> uuid.UUID:
        """Add a job to the queue.

        Args:
            job_type: Handler selector.
            payload: JSON-serializable handler input.
            run_at: Earliest run time. Defaults to now.
            queue: Queue name. Defaults to ``default_queue``.
            priority: Lower runs first.
            max_attempts: Attempts before dead-lettering.
            correlation_id: Trace id linking the job to a domain record.

        Returns:
            The new job id.

        Raises:
            JobQueueError: If the row cannot be written.
        """
        job_type_value = job_type.value if isinstance(job_type, JobType) else job_type

        job = Job(
            job_type=job_type_value,
            status=JobStatus.PENDING,
            run_at=run_at or datetime.now(UTC),
            payload_json=payload,
            queue=queue or self.default_queue,
            priority=priority,
            max_attempts=max_attempts or self.default_max_attempts,
            base_backoff_seconds=self.default_base_backoff,
            attempts=0,
            correlation_id=correlation_id,
        )

        try:
            self.session.add(job)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to enqueue %s job: %s", job_type_value, e)
            msg = f"Failed to enqueue job: {e}"
            raise JobQueueError(msg) from e

        logger.info(
            "Job enqueued: job_id=%s, job_type=%s, queue=%s, correlation_id=%s",
            job.job_id,
            job_type_value,
            job.queue,
            correlation_id,
        )
        return job.job_id

    async def claim_job(
        self,
        worker_id: str,
        queue: str | None = None,
        job_types: list[str] | None = None,
    ) -> Job | None:
        """Claim the next runnable job, or return None when the queue is idle.

        Raises:
            JobQueueError: If the claim query fails.
        """
        now = datetime.now(UTC)
        stmt = (
            select(Job)
            .where(
                Job.queue == (queue or self.default_queue),
                Job.status == JobStatus.PENDING,
                Job.run_at <= now,
            )
            .order_by(Job.priority, Job.run_at)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        if job_types:
            stmt = stmt.where(Job.job_type.in_(job_types))

        try:
            result = await self.session.execute(stmt)
            job = result.scalar_one_or_none()
            if job is None:
                return None

            job.status = JobStatus.RUNNING
            job.locked_at = now
            job.locked_by = worker_id
            job.started_at = now
            job.attempts += 1
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to claim job: %s", e)
            msg = f"Failed to claim job: {e}"
            raise JobQueueError(msg) from e

        logger.info(
            "Job claimed: job_id=%s, worker_id=%s, job_type=%s, attempt=%d/%d",
            job.job_id,
            worker_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
        )
        return job

    async def complete_job(self, job_id: uuid.UUID, result: dict[str, Any] | None = None) -> None:
        """Mark a job COMPLETED and store the handler result.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the update fails.
        """
        job = await self._require_job(job_id)
        now = datetime.now(UTC)

        job.status = JobStatus.COMPLETED
        job.completed_at = now
        job.result_json = result
        job.duration_ms = _elapsed_ms(job, now)
        job.locked_at = None
        job.locked_by = None
        await self._flush("complete", job_id)

        logger.info(
            "Job completed: job_id=%s, job_type=%s, duration_ms=%s",
            job_id,
            job.job_type,
            job.duration_ms,
        )

    async def fail_job(self, job_id: uuid.UUID, error: str) -> bool:
        """Record a handler crash; reschedule with backoff or dead-letter.

        Returns:
            True if the job will be retried, False if it is now FAILED.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobQueueError: If the update fails.
        """
        job = await self._require_job(job_id)
        now = datetime.now(UTC)

        job.last_error = error
        job.locked_at = None
        job.locked_by = None

        if job.attempts >= job.max_attempts:
            job.status = JobStatus.FAILED
            job.completed_at = now
            job.duration_ms = _elapsed_ms(job, now)
            await self._flush("fail", job_id)
            logger.warning(
                "Job dead-lettered: job_id=%s, job_type=%s, attempts=%d, error=%s",
                job_id,
                job.job_type,
                job.attempts,
                error,
            )
            return False

        backoff_seconds = job.base_backoff_seconds * (2 ** (job.attempts - 1))
        job.run_at = now + timedelta(seconds=backoff_seconds)
        job.status = JobStatus.PENDING
        await self._flush("fail", job_id)

        logger.info(
            "Job scheduled for retry: job_id=%s, attempt=%d/%d, backoff=%ds",
            job_id,
            job.attempts,
            job.max_attempts,
            backoff_seconds,
        )
        return True

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        stmt = select(Job).where(Job.job_id == job_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def cleanup_stale_jobs(self, stale_threshold_seconds: int = 600) -> int:
        """Release RUNNING jobs whose lock is older than the threshold.

        This is the redelivery path for jobs held by a crashed worker.

        Returns:
            Number of jobs put back to PENDING.

        Raises:
            JobQueueError: If the update fails.
        """
        now = datetime.now(UTC)
        threshold = now - timedelta(seconds=stale_threshold_seconds)
        stmt = (
            update(Job)
            .where(Job.status == JobStatus.RUNNING, Job.locked_at < threshold)
            .values(status=JobStatus.PENDING, locked_at=None, locked_by=None, run_at=now)
            .returning(Job.job_id)
        )

        try:
            result = await self.session.execute(stmt)
            stale_job_ids = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to release stale jobs: %s", e)
            msg = f"Failed to cleanup stale jobs: {e}"
            raise JobQueueError(msg) from e

        if stale_job_ids:
            logger.warning("Released %d stale jobs: %s", len(stale_job_ids), stale_job_ids)
        return len(stale_job_ids)

    async def _require_job(self, job_id: uuid.UUID) -> Job:
        try:
            job = await self.get_job(job_id)
        except SQLAlchemyError as e:
            msg = f"Failed to load job {job_id}: {e}"
            raise JobQueueError(msg) from e
        if job is None:
            msg = f"Job not found: {job_id}"
            raise JobNotFoundError(msg)
        return job

    async def _flush(self, action: str, job_id: uuid.UUID) -> None:
        try:
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to %s job %s: %s", action, job_id, e)
            msg = f"Failed to {action} job: {e}"
            raise JobQueueError(msg) from e


def _elapsed_ms(job: Job, now: datetime) -> int | None:
    if job.started_at is None:
        return None
    return int((now - job.started_at).total_seconds() * 1000)
