"""SQLAlchemy ORM models for VendorSign.

- base: Common metadata, type annotations and enums
- identities: Verified identities (read-only here)
- certificates: Issued signing certificates and encrypted keys
- documents: Documents and sign jobs
- jobs: PostgreSQL-backed job queue
"""

from vendorsign.db.models.base import (
    Base,
    CertificateStatus,
    DocumentStatus,
    JobStatus,
    SignJobStatus,
    VerificationStatus,
    metadata,
)
from vendorsign.db.models.certificates import Certificate
from vendorsign.db.models.documents import Document, SignJob
from vendorsign.db.models.identities import Identity
from vendorsign.db.models.jobs import Job

__all__ = [
    "Base",
    "Certificate",
    "CertificateStatus",
    "Document",
    "DocumentStatus",
    "Identity",
    "Job",
    "JobStatus",
    "SignJob",
    "SignJobStatus",
    "VerificationStatus",
    "metadata",
]
