"""VendorSign service layer.

- CAClient and transports: certificate authority integration
- KeyMaterialStore: envelope encryption of issued private keys
- CertificateLifecycleService: issuance and revocation
- DocumentStampingEngine: visual stamp and provenance QR on PDFs
- CMSSigner: detached CMS signatures and their verification
- JobQueueService: PostgreSQL-backed background job queue
- SignJobService: sign job submission and status reads
- ObjectStoreClient: S3-compatible document storage
"""

from vendorsign.services.ca_adapter import (
    CAClient,
    CAError,
    CANotFoundError,
    CARejectedError,
    CAUnavailableError,
    InMemoryCAClient,
    IssuedCertificate,
    KeyType,
    RestCAClient,
    StepCliCAClient,
    create_ca_client,
)
from vendorsign.services.certificates import (
    CertificateInfo,
    CertificateLifecycleService,
    SigningMaterial,
)
from vendorsign.services.cms import (
    CMSSigner,
    DetachedSignature,
    SignatureVerification,
    SigningFailure,
    verify_detached_signature,
)
from vendorsign.services.job_queue import JobQueueService, JobType
from vendorsign.services.key_store import KeyMaterialStore, KeyUnwrapError
from vendorsign.services.sign_jobs import SignJobService, SignJobStatusView
from vendorsign.services.stamping import DocumentStampingEngine, Placement, StampResult
from vendorsign.services.storage import ObjectStoreClient, derive_signed_key

__all__ = [
    "CAClient",
    "CAError",
    "CANotFoundError",
    "CARejectedError",
    "CAUnavailableError",
    "CMSSigner",
    "CertificateInfo",
    "CertificateLifecycleService",
    "DetachedSignature",
    "DocumentStampingEngine",
    "InMemoryCAClient",
    "IssuedCertificate",
    "JobQueueService",
    "JobType",
    "KeyMaterialStore",
    "KeyType",
    "KeyUnwrapError",
    "ObjectStoreClient",
    "Placement",
    "RestCAClient",
    "SignJobService",
    "SignJobStatusView",
    "SignatureVerification",
    "SigningFailure",
    "SigningMaterial",
    "StampResult",
    "StepCliCAClient",
    "create_ca_client",
    "derive_signed_key",
    "verify_detached_signature",
]
