"""VendorSign worker entry point.

The Worker:
- Polls the PostgreSQL job queue (SKIP LOCKED claims)
- Dispatches each job to the handler registered for its type
- Releases stale locks left by crashed workers on a fixed interval
- Stops gracefully on SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
import time
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, NoReturn

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from vendorsign.services.job_queue import JobQueueService, JobType

if TYPE_CHECKING:
    from vendorsign.core.config import Settings
    from vendorsign.db.models.jobs import Job

logger = logging.getLogger(__name__)

JobHandler = Callable[[AsyncSession, "Job"], Coroutine[Any, Any, dict[str, Any] | None]]


@dataclass
class WorkerConfig:
    """Configuration for the worker process.

    Attributes:
        database_url: Async SQLAlchemy URL.
        worker_id: Identifier recorded in job locks.
        poll_interval: Seconds between polls when idle.
        queues: Queue names to process.
        job_types: Job types to claim. Empty means all types.
        stale_job_threshold_seconds: Lock age after which a RUNNING job is released.
        cleanup_interval: Seconds between stale-lock sweeps.
        shutdown_timeout: Seconds to wait for the current job on shutdown.
        pool_size: Database connection pool size.
    """

    database_url: str
    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    poll_interval: float = 1.0
    queues: list[str] = field(default_factory=lambda: ["default"])
    job_types: list[str] = field(default_factory=list)
    stale_job_threshold_seconds: int = 600
    cleanup_interval: float = 300.0
    shutdown_timeout: float = 30.0
    pool_size: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerConfig:
        from vendorsign.db import get_database_url

        return cls(
            database_url=get_database_url(),
            poll_interval=settings.worker.poll_interval,
            queues=list(settings.worker.queues),
            stale_job_threshold_seconds=settings.worker.stale_job_threshold,
            cleanup_interval=settings.worker.cleanup_interval,
            shutdown_timeout=settings.worker.shutdown_timeout,
            pool_size=settings.database.pool_size,
        )


class Worker:
    """Background worker processing jobs from the PostgreSQL queue.

    Several workers may run against the same database; a job is only ever
    held by one of them at a time.

    Example:
        worker = Worker(WorkerConfig(database_url="postgresql+psycopg://..."))
        worker.register_handler(JobType.DOCUMENT_SIGN, sign_document_handler)
        await worker.start()
    """

    def __init__(
        self,
        config: WorkerConfig,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            config: Worker configuration.
            session_factory: Pre-built session factory; when omitted one is
                created from ``config.database_url`` on start.
        """
        self.config = config
        self._shutdown_event = asyncio.Event()
        self._current_job: Job | None = None
        self._handlers: dict[str, JobHandler] = {}
        self._engine = None
        self._session_factory = session_factory
        self._started_at: datetime | None = None
        self._last_cleanup: float | None = None
        self._jobs_processed = 0
        self._jobs_failed = 0

    def register_handler(self, job_type: str | JobType, handler: JobHandler) -> None:
        type_str = job_type.value if isinstance(job_type, JobType) else job_type
        self._handlers[type_str] = handler
        logger.debug("Registered handler for job_type=%s", type_str)

    async def start(self) -> None:
        """Run until ``stop()`` is called or a shutdown signal arrives."""
        self._started_at = datetime.now(UTC)
        logger.info(
            "Worker starting: worker_id=%s, queues=%s, handlers=%s",
            self.config.worker_id,
            self.config.queues,
            sorted(self._handlers),
        )

        if self._session_factory is None:
            self._engine = create_async_engine(
                self.config.database_url,
                pool_size=self.config.pool_size,
                pool_pre_ping=True,
            )
            self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)

        try:
            await self._run_loop()
        finally:
            if self._engine:
                await self._engine.dispose()
            logger.info(
                "Worker stopped: worker_id=%s, processed=%d, failed=%d, uptime=%s",
                self.config.worker_id,
                self._jobs_processed,
                self._jobs_failed,
                self._get_uptime(),
            )

    async def stop(self) -> None:
        logger.info("Worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()

    async def _run_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                for queue in self.config.queues:
                    if self._shutdown_event.is_set():
                        break
                    await self._process_queue(queue)

                if not self._shutdown_event.is_set() and self._cleanup_due():
                    await self._cleanup_stale_jobs()

                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.config.poll_interval,
                    )
            except Exception:
                logger.exception("Error in worker loop")
                # Pause so a persistent failure does not spin
                await asyncio.sleep(1.0)

    async def _process_queue(self, queue: str) -> bool:
        """Claim and run at most one job from ``queue``.

        Returns:
            True if a job was claimed.
        """
        async with self._session_factory() as session:
            job_queue = JobQueueService(session)
            job = await job_queue.claim_job(
                worker_id=self.config.worker_id,
                queue=queue,
                job_types=self.config.job_types or None,
            )
            if job is None:
                return False
            # Persist the claim so the lock survives handler commits and rollbacks
            await session.commit()

            job_id = job.job_id
            job_type = job.job_type
            self._current_job = job
            try:
                handler = self._handlers.get(job_type)
                if handler is None:
                    error_msg = f"No handler registered for job_type={job_type}"
                    logger.error(error_msg)
                    await job_queue.fail_job(job_id, error_msg)
                    await session.commit()
                    self._jobs_failed += 1
                    return True

                result = await handler(session, job)

                await job_queue.complete_job(job_id, result)
                await session.commit()
                self._jobs_processed += 1

            except Exception as e:
                logger.exception("Job failed: job_id=%s, job_type=%s", job_id, job_type)
                await session.rollback()

                async with self._session_factory() as fail_session:
                    will_retry = await JobQueueService(fail_session).fail_job(job_id, str(e))
                    await fail_session.commit()
                if not will_retry:
                    self._jobs_failed += 1

            finally:
                self._current_job = None
        return True

    def _cleanup_due(self) -> bool:
        now = time.monotonic()
        if self._last_cleanup is None or now - self._last_cleanup >= self.config.cleanup_interval:
            self._last_cleanup = now
            return True
        return False

    async def _cleanup_stale_jobs(self) -> int:
        async with self._session_factory() as session:
            count = await JobQueueService(session).cleanup_stale_jobs(
                stale_threshold_seconds=self.config.stale_job_threshold_seconds
            )
            if count > 0:
                await session.commit()
            return count

    def _get_uptime(self) -> str:
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"


def register_default_handlers(worker: Worker) -> None:
    # Imported here so the worker module loads without the signing stack
    from vendorsign.worker.handlers.signing import sign_document_handler

    worker.register_handler(JobType.DOCUMENT_SIGN, sign_document_handler)


async def _async_main() -> None:
    from vendorsign.core.settings import get_settings

    settings = get_settings()
    config = WorkerConfig.from_settings(settings)
    worker = Worker(config)
    register_default_handlers(worker)

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)

    logger.info("Worker configuration: %s", settings.get_startup_summary())
    worker_task = asyncio.create_task(worker.start())
    stop_task = asyncio.create_task(shutdown_event.wait())
    done, _ = await asyncio.wait({worker_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    if stop_task in done:
        logger.info("Shutdown signal received")
        await worker.stop()
        try:
            await asyncio.wait_for(worker_task, timeout=config.shutdown_timeout)
        except TimeoutError:
            logger.warning("Worker did not stop within timeout, forcing shutdown")
            worker_task.cancel()
    else:
        stop_task.cancel()
        worker_task.result()


def run() -> NoReturn:
    """Run the worker process (``vendorsign-worker`` / ``python -m vendorsign.worker``)."""
    from vendorsign.core.settings import get_settings

    log_level = get_settings().log_level.upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("VendorSign worker starting...")

    try:
        asyncio.run(_async_main())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception:
        logger.exception("Worker failed")
        sys.exit(1)

    logger.info("VendorSign worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
