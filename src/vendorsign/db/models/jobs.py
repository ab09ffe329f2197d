"""Job queue model for PostgreSQL-backed background processing.

Sign requests travel through this table:
- SKIP LOCKED gives single-claim-per-job semantics across workers
- Stale locks are released so a crashed worker's job is redelivered
- Retry with exponential backoff, then dead letter (FAILED)
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import BigInteger, Enum, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from vendorsign.db.models.base import (
    Base,
    JobStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
)


class Job(Base):
    """Queued unit of background work, dispatched by ``job_type``."""

    __tablename__ = "jobs"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # e.g. 'document_sign'
    job_type: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    run_at: Mapped[datetime] = mapped_column(nullable=False)

    locked_at: Mapped[OptionalTimestampTZ]
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Seconds until the next retry, doubled per attempt
    base_backoff_seconds: Mapped[int] = mapped_column(default=60, nullable=False)

    payload_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    result_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]

    # Lower runs first
    priority: Mapped[int] = mapped_column(default=100, nullable=False)
    queue: Mapped[str] = mapped_column(String(100), default="default", nullable=False)

    # Sign job id for sign requests, so queue rows can be traced to documents
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        Index(
            "ix_jobs_queue_pending",
            "queue",
            "status",
            "run_at",
            "priority",
        ),
        Index("ix_jobs_status", "status"),
        Index("ix_jobs_job_type", "job_type"),
        Index("ix_jobs_correlation_id", "correlation_id"),
    )
