"""Document signing job handler.

Processes ``document_sign`` jobs. Each job drives one SignJob through
QUEUED -> PROCESSING -> SIGNED | FAILED:

1. Lock the SignJob row. Terminal jobs are skipped untouched; QUEUED jobs
   are marked PROCESSING and committed before any side effect; PROCESSING
   jobs (redelivered after a crash) are resumed.
2. Decrypt the certificate's key material.
3. Fetch the document's latest signed artifact, or the original upload.
4. Fetch the optional signature image.
5. Stamp, then sign the stamped bytes.
6. Write the result to a storage key derived from the sign job id.
7. Commit the SignJob and Document terminal state in one transaction.

Any failure in steps 2-7 rolls back and records FAILED with the error
text on both rows. The handler then returns normally, so the queue job
completes; only errors raised while recording the failure reach the
queue's retry path.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from vendorsign.core.settings import get_settings
from vendorsign.db.models.base import DocumentStatus, SignJobStatus
from vendorsign.db.models.documents import Document, SignJob
from vendorsign.services.ca_adapter import KeyType, create_ca_client
from vendorsign.services.certificates import CertificateLifecycleService
from vendorsign.services.cms import CMSSigner
from vendorsign.services.key_store import KeyMaterialStore
from vendorsign.services.sign_jobs import SignJobError
from vendorsign.services.stamping import DocumentStampingEngine, Placement
from vendorsign.services.storage import ObjectStoreClient, derive_signed_key

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from vendorsign.db.models.jobs import Job
    from vendorsign.services.ca_adapter import CAClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningComponents:
    """Long-lived collaborators shared by every signing job in a worker."""

    ca_client: CAClient
    key_store: KeyMaterialStore
    storage: ObjectStoreClient
    bucket: str
    stamper: DocumentStampingEngine
    signer: CMSSigner
    verification_base_url: str
    key_type: KeyType = KeyType.RSA_2048


@lru_cache
def get_signing_components() -> SigningComponents:
    """Build signing collaborators from settings once per process."""
    settings = get_settings()
    return SigningComponents(
        ca_client=create_ca_client(settings.ca),
        key_store=KeyMaterialStore.from_settings(settings.keystore),
        storage=ObjectStoreClient.from_settings(settings.s3),
        bucket=settings.s3.bucket,
        stamper=DocumentStampingEngine(
            qr_caption=settings.stamp.qr_caption,
            qr_enabled=settings.stamp.qr_enabled,
        ),
        signer=CMSSigner(),
        verification_base_url=settings.stamp.verification_base_url,
        key_type=KeyType(settings.ca.key_type),
    )


def provenance_url(base_url: str, document_id: uuid.UUID, sign_job_id: uuid.UUID) -> str:
    """Verification URL encoded in the provenance QR code."""
    return f"{base_url.rstrip('/')}/{document_id}/{sign_job_id}"


class DocumentSignProcessor:
    """Runs one sign job against a session.

    Example:
        processor = DocumentSignProcessor(session, get_signing_components())
        result = await processor.process(sign_job_id)
    """

    def __init__(self, session: AsyncSession, components: SigningComponents) -> None:
        self._session = session
        self._components = components
        self._certificates = CertificateLifecycleService(
            session,
            components.ca_client,
            components.key_store,
            key_type=components.key_type,
        )

    async def process(self, sign_job_id: uuid.UUID) -> dict[str, Any]:
        """Drive a sign job to a terminal state.

        Args:
            sign_job_id: SignJob to process.

        Returns:
            Result dict stored on the queue job.
        """
        sign_job = await self._session.get(SignJob, sign_job_id, with_for_update=True)
        if sign_job is None:
            logger.warning("Sign job not found: sign_job_id=%s", sign_job_id)
            return {"sign_job_id": str(sign_job_id), "skipped": True, "reason": "not_found"}

        if sign_job.status.is_terminal:
            logger.info(
                "Sign job already %s, skipping redelivery: sign_job_id=%s",
                sign_job.status.value,
                sign_job_id,
            )
            return {
                "sign_job_id": str(sign_job_id),
                "skipped": True,
                "status": sign_job.status.value,
            }

        if sign_job.status == SignJobStatus.QUEUED:
            sign_job.status = SignJobStatus.PROCESSING
            sign_job.started_at = datetime.now(UTC)
            await self._session.commit()
        else:
            logger.info("Resuming interrupted sign job: sign_job_id=%s", sign_job_id)

        try:
            return await self._sign(sign_job)
        except Exception as exc:
            logger.exception("Sign job failed: sign_job_id=%s", sign_job_id)
            await self._session.rollback()
            error_message = str(exc) or type(exc).__name__
            await self._record_failure(sign_job_id, error_message)
            return {
                "sign_job_id": str(sign_job_id),
                "status": SignJobStatus.FAILED.value,
                "error": error_message,
            }

    async def _sign(self, sign_job: SignJob) -> dict[str, Any]:
        components = self._components
        sign_job_id = sign_job.sign_job_id

        material = await self._certificates.load_signing_material(sign_job.certificate_id)

        document = await self._session.get(Document, sign_job.document_id, with_for_update=True)
        if document is None:
            msg = f"Document {sign_job.document_id} not found"
            raise SignJobError(msg)

        source_key = document.current_source_key
        source = await asyncio.to_thread(components.storage.get, components.bucket, source_key)

        signature_image = None
        if sign_job.signature_image_key:
            signature_image = await asyncio.to_thread(
                components.storage.get, components.bucket, sign_job.signature_image_key
            )

        # PDF rewriting and signing are CPU-bound; keep them off the event loop
        stamp = await asyncio.to_thread(
            components.stamper.stamp,
            source,
            Placement(
                page=sign_job.page,
                x=sign_job.x,
                y=sign_job.y,
                width=sign_job.width,
                height=sign_job.height,
            ),
            signer_name=material.signer_name,
            reason=sign_job.reason,
            signature_image=signature_image,
            provenance_text=provenance_url(
                components.verification_base_url, document.document_id, sign_job_id
            ),
        )
        signature = await asyncio.to_thread(
            components.signer.sign,
            stamp.content,
            material.certificate_pem,
            material.private_key_pem,
            chain_pem=material.certificate_chain_pem,
        )

        output_key = derive_signed_key(document.storage_key_input, sign_job_id)
        await asyncio.to_thread(components.storage.put, components.bucket, output_key, stamp.content)

        signed_at = datetime.now(UTC)
        sign_job.status = SignJobStatus.SIGNED
        sign_job.signed_at = signed_at
        sign_job.error_message = None
        sign_job.storage_key_output = output_key
        sign_job.digest_signed = signature.digest_hex

        document.status = DocumentStatus.SIGNED
        document.storage_key_signed = output_key
        document.digest_input = hashlib.sha256(source).hexdigest()
        document.digest_signed = signature.digest_hex
        document.signature_cms = signature.signature_der
        document.signed_at = signed_at
        await self._session.commit()

        logger.info(
            "Document signed: sign_job_id=%s, document_id=%s, source=%s, output=%s, warnings=%d",
            sign_job_id,
            document.document_id,
            source_key,
            output_key,
            len(stamp.warnings),
        )
        return {
            "sign_job_id": str(sign_job_id),
            "status": SignJobStatus.SIGNED.value,
            "storage_key_output": output_key,
            "digest_signed": signature.digest_hex,
            "warnings": stamp.warning_messages,
        }

    async def _record_failure(self, sign_job_id: uuid.UUID, error_message: str) -> None:
        sign_job = await self._session.get(SignJob, sign_job_id, with_for_update=True)
        if sign_job is None or sign_job.status.is_terminal:
            return

        sign_job.status = SignJobStatus.FAILED
        sign_job.error_message = error_message

        document = await self._session.get(Document, sign_job.document_id, with_for_update=True)
        if document is not None:
            document.status = DocumentStatus.FAILED
        await self._session.commit()

        logger.warning(
            "Sign job marked failed: sign_job_id=%s, error=%s",
            sign_job_id,
            error_message,
        )


async def sign_document_handler(
    session: AsyncSession,
    job: Job,
) -> dict[str, Any] | None:
    """Handle document_sign jobs.

    Expected job payload:
        sign_job_id: UUID of the SignJob to process
        document_id, certificate_id, storage_key_input, placement, reason:
            the submission message; the SignJob row is authoritative

    Args:
        session: Database session for the job.
        job: The queue job being processed.

    Returns:
        Result dict with the sign job outcome.
    """
    payload = job.payload_json or {}
    raw_id = payload.get("sign_job_id")
    try:
        sign_job_id = uuid.UUID(str(raw_id))
    except ValueError:
        logger.error("document_sign job %s has no valid sign_job_id: %r", job.job_id, raw_id)
        return {"skipped": True, "reason": "invalid_payload"}

    processor = DocumentSignProcessor(session, get_signing_components())
    return await processor.process(sign_job_id)
