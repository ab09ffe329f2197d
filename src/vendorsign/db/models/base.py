"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Common column type annotations
- Enum types used across multiple models
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key with server-side default generation
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]

MediumString = Annotated[str, mapped_column(String(255))]


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum members by value so rows match the migration's enum types."""
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Declarative base for all VendorSign models."""

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class VerificationStatus(enum.Enum):
    """Identity verification outcome, owned by the identity workflow.

    Values:
        PENDING: Verification not yet completed
        VERIFIED: Identity proven; eligible for a signing certificate
        REJECTED: Verification failed
    """

    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class CertificateStatus(enum.Enum):
    """Lifecycle state of an issued signing certificate."""

    ISSUED = "issued"
    REVOKED = "revoked"


class DocumentStatus(enum.Enum):
    """Document state, mirroring the latest sign job outcome.

    Values:
        UPLOADED: Original stored, never submitted for signing
        SIGNING: A sign job is queued or in progress
        SIGNED: Latest sign job succeeded; storage_key_signed is current
        FAILED: Latest sign job failed
    """

    UPLOADED = "uploaded"
    SIGNING = "signing"
    SIGNED = "signed"
    FAILED = "failed"


class SignJobStatus(enum.Enum):
    """Sign job state machine: QUEUED -> PROCESSING -> SIGNED | FAILED.

    SIGNED and FAILED are terminal.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    SIGNED = "signed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SignJobStatus.SIGNED, SignJobStatus.FAILED)


class JobStatus(enum.Enum):
    """Status of a background queue job.

    Values:
        PENDING: Job is waiting to be processed
        RUNNING: Job is currently being executed
        COMPLETED: Job finished successfully
        FAILED: Job failed after max retries
        CANCELLED: Job was manually cancelled
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
