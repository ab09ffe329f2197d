"""Sign job submission and status reads.

Submitting a sign job is one unit of work in the caller's transaction:
- A SignJob row in QUEUED
- The document flipped to SIGNING
- A ``document_sign`` queue job carrying the submission message

The worker picks the queue job up and drives the SignJob to SIGNED or
FAILED (see ``vendorsign.worker.handlers.signing``).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from vendorsign.db.models.base import DocumentStatus, SignJobStatus
from vendorsign.db.models.certificates import Certificate
from vendorsign.db.models.documents import Document, SignJob
from vendorsign.services.job_queue import JobQueueService, JobType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from vendorsign.services.stamping import Placement

logger = logging.getLogger(__name__)


class SignJobError(Exception):
    """Base exception for sign job operations."""

    pass


class SignJobNotFound(SignJobError):
    """Raised when a sign job does not exist."""

    def __init__(self, sign_job_id: uuid.UUID) -> None:
        self.sign_job_id = sign_job_id
        super().__init__(f"Sign job {sign_job_id} not found")


class InvalidSubmission(SignJobError):
    """Raised when a sign request is refused before anything is queued."""

    pass


@dataclass(frozen=True, slots=True)
class SignJobStatusView:
    """What a job-status read exposes: the status and, on failure, why."""

    status: SignJobStatus
    error_message: str | None


def validate_placement(placement: Placement) -> None:
    """Reject rectangles that cannot be drawn.

    Raises:
        InvalidSubmission: If page < 1 or the rectangle has no area.
    """
    if placement.page < 1:
        msg = f"Page must be >= 1, got {placement.page}"
        raise InvalidSubmission(msg)
    if placement.width <= 0 or placement.height <= 0:
        msg = f"Placement must have positive size, got {placement.width}x{placement.height}"
        raise InvalidSubmission(msg)


class SignJobService:
    """Queues sign requests and reports their progress.

    Flushes but never commits; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession, job_queue: JobQueueService | None = None) -> None:
        self._session = session
        self._job_queue = job_queue or JobQueueService(session)

    async def submit_sign_job(
        self,
        document_id: uuid.UUID,
        certificate_id: uuid.UUID,
        placement: Placement,
        reason: str,
        signature_image_key: str | None = None,
    ) -> SignJob:
        """Queue one signing pass over a document.

        Args:
            document_id: Document to sign.
            certificate_id: ISSUED certificate to sign with.
            placement: Visual stamp rectangle (top-left origin, 1-based page).
            reason: Signing reason shown in the stamp.
            signature_image_key: Optional storage key of a PNG/JPEG drawing.

        Returns:
            The QUEUED SignJob (flushed, not committed).

        Raises:
            InvalidSubmission: If the placement is invalid, the document is
                missing or already being signed, or the certificate is not
                ISSUED.
            JobQueueError: If the queue message cannot be written.
        """
        validate_placement(placement)

        document = await self._session.get(Document, document_id, with_for_update=True)
        if document is None:
            msg = f"Document {document_id} not found"
            raise InvalidSubmission(msg)
        if document.status == DocumentStatus.SIGNING:
            msg = f"Document {document_id} is already being signed"
            raise InvalidSubmission(msg)

        certificate = await self._session.get(Certificate, certificate_id)
        if certificate is None or not certificate.is_active:
            msg = f"Certificate {certificate_id} is not an issued certificate"
            raise InvalidSubmission(msg)

        sign_job = SignJob(
            sign_job_id=uuid.uuid4(),
            document_id=document_id,
            certificate_id=certificate_id,
            page=placement.page,
            x=placement.x,
            y=placement.y,
            width=placement.width,
            height=placement.height,
            reason=reason,
            signature_image_key=signature_image_key,
            status=SignJobStatus.QUEUED,
        )
        self._session.add(sign_job)
        document.status = DocumentStatus.SIGNING
        await self._session.flush()

        await self._job_queue.enqueue(
            JobType.DOCUMENT_SIGN,
            payload={
                "sign_job_id": str(sign_job.sign_job_id),
                "document_id": str(document_id),
                "certificate_id": str(certificate_id),
                "storage_key_input": document.storage_key_input,
                "placement": placement.to_dict(),
                "reason": reason,
            },
            correlation_id=str(sign_job.sign_job_id),
        )

        logger.info(
            "Sign job queued: sign_job_id=%s, document_id=%s, certificate_id=%s, page=%d",
            sign_job.sign_job_id,
            document_id,
            certificate_id,
            placement.page,
        )
        return sign_job

    async def get_job_status(self, sign_job_id: uuid.UUID) -> SignJobStatusView:
        """Status and error message of a sign job.

        Raises:
            SignJobNotFound: If the sign job does not exist.
        """
        sign_job = await self._session.get(SignJob, sign_job_id)
        if sign_job is None:
            raise SignJobNotFound(sign_job_id)
        return SignJobStatusView(status=sign_job.status, error_message=sign_job.error_message)
