"""Identity records.

Identities are registered and verified by an external workflow; this
service only reads them to gate certificate issuance.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import Enum, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vendorsign.db.models.base import (
    Base,
    TimestampTZ,
    UUIDPrimaryKey,
    VerificationStatus,
    enum_values,
)

if TYPE_CHECKING:
    from vendorsign.db.models.certificates import Certificate


class Identity(Base):
    """A person eligible to hold a signing certificate once verified."""

    __tablename__ = "identities"

    identity_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)

    verification_status: Mapped[VerificationStatus] = mapped_column(
        Enum(
            VerificationStatus,
            name="verification_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=VerificationStatus.PENDING,
    )

    certificates: Mapped[list[Certificate]] = relationship(
        "Certificate",
        back_populates="identity",
    )

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED
