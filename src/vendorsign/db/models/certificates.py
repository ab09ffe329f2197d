"""Signing certificate records.

Private key material is stored only as an authenticated-encryption
envelope (see vendorsign.services.key_store). The certificate chain is a
separate column and never shares storage with key material.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from typing import TYPE_CHECKING

from sqlalchemy import Enum, ForeignKey, Index, LargeBinary, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vendorsign.db.models.base import (
    Base,
    CertificateStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
    enum_values,
)

if TYPE_CHECKING:
    from datetime import datetime

    from vendorsign.db.models.identities import Identity


class Certificate(Base):
    """A personal signing certificate issued by the external CA."""

    __tablename__ = "certificates"

    certificate_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    identity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("identities.identity_id", ondelete="RESTRICT"),
        nullable=False,
    )

    # Decimal rendering of the X.509 serial number
    serial: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_dn: Mapped[str] = mapped_column(String(1000), nullable=False)

    certificate_pem: Mapped[str] = mapped_column(Text, nullable=False)
    certificate_chain_pem: Mapped[str | None] = mapped_column(Text, nullable=True)

    # JSON envelope produced by KeyMaterialStore.seal_private_key
    encrypted_private_key: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    key_encryption_key_id: Mapped[str] = mapped_column(String(100), nullable=False)
    key_type: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[CertificateStatus] = mapped_column(
        Enum(
            CertificateStatus,
            name="certificate_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=CertificateStatus.ISSUED,
    )

    issued_at: Mapped[TimestampTZ]
    not_after: Mapped[OptionalTimestampTZ]
    revoked_at: Mapped[OptionalTimestampTZ]
    revocation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    identity: Mapped[Identity] = relationship(
        "Identity",
        back_populates="certificates",
    )

    __table_args__ = (
        Index("ix_certificates_identity_id", "identity_id"),
        Index("ix_certificates_serial", "serial", unique=True),
        # At most one ISSUED certificate per identity, race-proof
        Index(
            "uq_certificates_identity_issued",
            "identity_id",
            unique=True,
            postgresql_where=text("status = 'issued'"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status == CertificateStatus.ISSUED

    def mark_revoked(self, reason: str, revoked_at: datetime) -> None:
        self.status = CertificateStatus.REVOKED
        self.revocation_reason = reason
        self.revoked_at = revoked_at
