"""Document and sign job models.

A Document points at its original upload and, once signed, at the most
recent signed artifact. Each SignJob records one signing pass over a
document with one certificate and one placement rectangle.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import TYPE_CHECKING

from sqlalchemy import Enum, Float, ForeignKey, Index, Integer, LargeBinary, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vendorsign.db.models.base import (
    Base,
    DocumentStatus,
    OptionalTimestampTZ,
    SignJobStatus,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
)

if TYPE_CHECKING:
    from vendorsign.db.models.certificates import Certificate


class Document(Base):
    """An uploaded PDF and the pointer to its latest signed artifact."""

    __tablename__ = "documents"

    document_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    filename: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Object storage keys: input/<owner>/<file>.pdf and signed/<owner>/...
    storage_key_input: Mapped[str] = mapped_column(String(1000), nullable=False)
    storage_key_signed: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    status: Mapped[DocumentStatus] = mapped_column(
        Enum(
            DocumentStatus,
            name="document_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=DocumentStatus.UPLOADED,
    )

    # SHA-256 hex of the bytes fed to the latest signing pass and of its output
    digest_input: Mapped[str | None] = mapped_column(String(64), nullable=True)
    digest_signed: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Detached CMS SignedData (DER) over the signed bytes
    signature_cms: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    signed_at: Mapped[OptionalTimestampTZ]

    sign_jobs: Mapped[list[SignJob]] = relationship(
        "SignJob",
        back_populates="document",
        order_by="SignJob.created_at",
    )

    __table_args__ = (
        Index("ix_documents_owner_id", "owner_id"),
        Index("ix_documents_status", "status"),
    )

    @property
    def current_source_key(self) -> str:
        """Storage key the next signing pass layers over."""
        return self.storage_key_signed or self.storage_key_input


class SignJob(Base):
    """One signing pass over a document."""

    __tablename__ = "sign_jobs"

    sign_job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.document_id", ondelete="RESTRICT"),
        nullable=False,
    )
    certificate_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("certificates.certificate_id", ondelete="RESTRICT"),
        nullable=False,
    )

    # Placement rectangle in top-left-origin page coordinates; page is 1-based
    page: Mapped[int] = mapped_column(Integer, nullable=False)
    x: Mapped[float] = mapped_column(Float, nullable=False)
    y: Mapped[float] = mapped_column(Float, nullable=False)
    width: Mapped[float] = mapped_column(Float, nullable=False)
    height: Mapped[float] = mapped_column(Float, nullable=False)

    reason: Mapped[str] = mapped_column(String(500), nullable=False)

    # Optional PNG/JPEG signature drawing in object storage
    signature_image_key: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    status: Mapped[SignJobStatus] = mapped_column(
        Enum(
            SignJobStatus,
            name="sign_job_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=SignJobStatus.QUEUED,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[OptionalTimestampTZ]
    signed_at: Mapped[OptionalTimestampTZ]

    storage_key_output: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    digest_signed: Mapped[str | None] = mapped_column(String(64), nullable=True)

    document: Mapped[Document] = relationship(
        "Document",
        back_populates="sign_jobs",
    )
    certificate: Mapped[Certificate] = relationship("Certificate")

    __table_args__ = (
        Index("ix_sign_jobs_document_id", "document_id"),
        Index("ix_sign_jobs_status", "status"),
    )
