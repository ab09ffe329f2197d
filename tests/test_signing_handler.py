"""Tests for the document signing job handler.

Tests cover:
- A full signing pass: stamp, sign, store, record
- Degraded stamps still producing a signed document
- Redelivery of terminal and interrupted jobs
- Chained signing over the latest signed artifact
- Failure recording on both the sign job and the document
"""

import dataclasses
import hashlib
import io
import threading
import uuid
from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio
from pypdf import PdfReader

from tests.factories import (
    FakeSession,
    InMemoryObjectStore,
    create_certificate,
    create_document,
    create_identity,
    create_sign_job,
    make_png,
)
from vendorsign.db.models.base import CertificateStatus, DocumentStatus, SignJobStatus
from vendorsign.db.models.documents import SignJob
from vendorsign.services.cms import CMSSigner, verify_detached_signature
from vendorsign.services.stamping import DocumentStampingEngine
from vendorsign.services.storage import derive_signed_key
from vendorsign.worker.handlers.signing import (
    DocumentSignProcessor,
    SigningComponents,
    provenance_url,
    sign_document_handler,
)

BUCKET = "vendorsign-documents"
VERIFY_URL = "https://sign.example.com/verify/"


@pytest.fixture
def storage() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def components(ca, key_store, storage) -> SigningComponents:
    return SigningComponents(
        ca_client=ca,
        key_store=key_store,
        storage=storage,
        bucket=BUCKET,
        stamper=DocumentStampingEngine(qr_caption="VendorSign"),
        signer=CMSSigner(),
        verification_base_url=VERIFY_URL,
    )


@pytest_asyncio.fixture
async def signing_setup(ca, key_store, storage, two_page_pdf):
    """A verified signer, an ISSUED certificate and an uploaded two-page document."""
    identity = create_identity()
    certificate = await create_certificate(ca, key_store, identity)
    document = create_document(owner_id=identity.identity_id, status=DocumentStatus.SIGNING)
    storage.put(BUCKET, document.storage_key_input, two_page_pdf)
    return certificate, document


def _text(content: bytes) -> str:
    reader = PdfReader(io.BytesIO(content))
    return "\n".join(page.extract_text() for page in reader.pages)


class _RecordingStamper(DocumentStampingEngine):
    """Stamper that records which thread it ran on."""

    def __init__(self) -> None:
        super().__init__(qr_caption="VendorSign")
        self.threads: list[int] = []

    def stamp(self, *args, **kwargs):
        self.threads.append(threading.get_ident())
        return super().stamp(*args, **kwargs)


class _RecordingSigner(CMSSigner):
    def __init__(self) -> None:
        self.threads: list[int] = []

    def sign(self, *args, **kwargs):
        self.threads.append(threading.get_ident())
        return super().sign(*args, **kwargs)


class TestProvenanceUrl:
    """Tests for the QR payload."""

    def test_joins_ids(self):
        doc_id, job_id = uuid.uuid4(), uuid.uuid4()
        assert provenance_url(VERIFY_URL, doc_id, job_id) == (
            f"https://sign.example.com/verify/{doc_id}/{job_id}"
        )


class TestSuccessfulSigning:
    """Tests for a successful signing pass."""

    @pytest.mark.asyncio
    async def test_signs_document(self, components, storage, signing_setup, two_page_pdf):
        certificate, document = signing_setup
        sign_job = create_sign_job(document, certificate)
        session = FakeSession(document, certificate, sign_job)

        result = await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        output_key = derive_signed_key(document.storage_key_input, sign_job.sign_job_id)
        signed = storage.objects[(BUCKET, output_key)]
        assert result == {
            "sign_job_id": str(sign_job.sign_job_id),
            "status": "signed",
            "storage_key_output": output_key,
            "digest_signed": hashlib.sha256(signed).hexdigest(),
            "warnings": [],
        }

        assert sign_job.status == SignJobStatus.SIGNED
        assert sign_job.started_at is not None
        assert sign_job.signed_at is not None
        assert sign_job.error_message is None
        assert sign_job.storage_key_output == output_key

        assert document.status == DocumentStatus.SIGNED
        assert document.storage_key_signed == output_key
        assert document.digest_input == hashlib.sha256(two_page_pdf).hexdigest()
        assert document.digest_signed == hashlib.sha256(signed).hexdigest()
        assert document.signed_at == sign_job.signed_at
        assert session.commits == 2

    @pytest.mark.asyncio
    async def test_signature_covers_stored_bytes(self, components, storage, signing_setup):
        certificate, document = signing_setup
        sign_job = create_sign_job(document, certificate)
        session = FakeSession(document, certificate, sign_job)

        await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        signed = storage.objects[(BUCKET, document.storage_key_signed)]
        verification = verify_detached_signature(
            signed, document.signature_cms, certificate_pem=certificate.certificate_pem
        )
        assert verification.valid, verification.reason
        assert verification.signer_serial == certificate.serial

    @pytest.mark.asyncio
    async def test_stamp_and_provenance_drawn(self, components, storage, signing_setup):
        certificate, document = signing_setup
        sign_job = create_sign_job(document, certificate, reason="Approval")
        session = FakeSession(document, certificate, sign_job)

        await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        signed = storage.objects[(BUCKET, document.storage_key_signed)]
        reader = PdfReader(io.BytesIO(signed))
        assert len(reader.pages) == 2
        assert "Jane Doe" in reader.pages[0].extract_text()
        assert "Reason: Approval" in reader.pages[0].extract_text()
        assert "VendorSign" in reader.pages[1].extract_text()

    @pytest.mark.asyncio
    async def test_original_untouched(self, components, storage, signing_setup, two_page_pdf):
        certificate, document = signing_setup
        sign_job = create_sign_job(document, certificate)
        session = FakeSession(document, certificate, sign_job)

        await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        assert storage.objects[(BUCKET, document.storage_key_input)] == two_page_pdf

    @pytest.mark.asyncio
    async def test_signature_image(self, components, storage, signing_setup):
        certificate, document = signing_setup
        storage.put(BUCKET, "images/u1/sig.png", make_png())
        sign_job = create_sign_job(document, certificate, signature_image_key="images/u1/sig.png")
        session = FakeSession(document, certificate, sign_job)

        result = await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        assert result["status"] == "signed"
        signed = storage.objects[(BUCKET, document.storage_key_signed)]
        assert "Digitally signed by:" not in _text(signed)

    @pytest.mark.asyncio
    async def test_page_out_of_range_still_signs(self, components, storage, signing_setup):
        certificate, document = signing_setup
        sign_job = create_sign_job(document, certificate, page=5)
        session = FakeSession(document, certificate, sign_job)

        result = await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        assert result["status"] == "signed"
        assert len(result["warnings"]) == 1
        assert "out of range" in result["warnings"][0]
        assert document.status == DocumentStatus.SIGNED
        signed = storage.objects[(BUCKET, document.storage_key_signed)]
        assert "Digitally signed by:" not in _text(signed)
        assert verify_detached_signature(signed, document.signature_cms).valid


class TestRedelivery:
    """Tests for idempotent handling of redelivered jobs."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [SignJobStatus.SIGNED, SignJobStatus.FAILED])
    async def test_terminal_job_skipped(self, components, storage, signing_setup, status):
        certificate, document = signing_setup
        sign_job = create_sign_job(document, certificate, status=status)
        session = FakeSession(document, certificate, sign_job)
        objects_before = dict(storage.objects)

        result = await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        assert result["skipped"] is True
        assert result["status"] == status.value
        assert sign_job.status == status
        assert storage.objects == objects_before
        assert session.commits == 0

    @pytest.mark.asyncio
    async def test_interrupted_job_resumed(self, components, signing_setup):
        certificate, document = signing_setup
        sign_job = create_sign_job(document, certificate, status=SignJobStatus.PROCESSING)
        session = FakeSession(document, certificate, sign_job)

        result = await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        assert result["status"] == "signed"
        assert session.commits == 1

    @pytest.mark.asyncio
    async def test_unknown_sign_job(self, components):
        result = await DocumentSignProcessor(FakeSession(), components).process(uuid.uuid4())

        assert result["skipped"] is True
        assert result["reason"] == "not_found"

    @pytest.mark.asyncio
    async def test_sign_job_locked(self, components, signing_setup):
        certificate, document = signing_setup
        sign_job = create_sign_job(document, certificate)
        session = FakeSession(document, certificate, sign_job)

        await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        assert session.locked[0] == (SignJob, sign_job.sign_job_id)


class TestChainedSigning:
    """Tests for signing a document that is already signed."""

    @pytest.mark.asyncio
    async def test_second_pass_layers_over_first(
        self, ca, key_store, components, storage, signing_setup
    ):
        first_cert, document = signing_setup
        first_job = create_sign_job(document, first_cert)
        session = FakeSession(document, first_cert, first_job)
        await DocumentSignProcessor(session, components).process(first_job.sign_job_id)
        first_key = document.storage_key_signed
        first_bytes = storage.objects[(BUCKET, first_key)]

        second_cert = await create_certificate(
            ca, key_store, create_identity(display_name="John Roe", email="john@example.com")
        )
        second_job = create_sign_job(document, second_cert, x=300, reason="Countersign")
        session.add(second_cert)
        session.add(second_job)
        document.status = DocumentStatus.SIGNING

        await DocumentSignProcessor(session, components).process(second_job.sign_job_id)

        second_key = document.storage_key_signed
        second_bytes = storage.objects[(BUCKET, second_key)]
        assert second_key != first_key
        assert storage.objects[(BUCKET, first_key)] == first_bytes
        assert document.digest_input == hashlib.sha256(first_bytes).hexdigest()
        text = _text(second_bytes)
        assert "Jane Doe" in text
        assert "John Roe" in text
        verification = verify_detached_signature(second_bytes, document.signature_cms)
        assert verification.valid
        assert verification.signer_serial == second_cert.serial


class TestFailures:
    """Tests for failures recorded on the sign job and document."""

    @pytest.mark.asyncio
    async def test_revoked_certificate(self, ca, key_store, components, storage, signing_setup):
        certificate, document = signing_setup
        certificate.status = CertificateStatus.REVOKED
        sign_job = create_sign_job(document, certificate)
        session = FakeSession(document, certificate, sign_job)

        result = await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        assert result["status"] == "failed"
        assert "revoked" in result["error"]
        assert sign_job.status == SignJobStatus.FAILED
        assert "revoked" in sign_job.error_message
        assert document.status == DocumentStatus.FAILED
        assert document.storage_key_signed is None
        assert session.rollbacks == 1
        assert all(not key.startswith("signed/") for _, key in storage.objects)

    @pytest.mark.asyncio
    async def test_missing_source_object(self, components, storage, signing_setup):
        certificate, document = signing_setup
        storage.objects.clear()
        sign_job = create_sign_job(document, certificate)
        session = FakeSession(document, certificate, sign_job)

        result = await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        assert result["status"] == "failed"
        assert sign_job.status == SignJobStatus.FAILED
        assert "does not exist" in sign_job.error_message
        assert document.status == DocumentStatus.FAILED

    @pytest.mark.asyncio
    async def test_missing_signature_image(self, components, signing_setup):
        certificate, document = signing_setup
        sign_job = create_sign_job(document, certificate, signature_image_key="images/nope.png")
        session = FakeSession(document, certificate, sign_job)

        await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        assert sign_job.status == SignJobStatus.FAILED
        assert "images/nope.png" in sign_job.error_message

    @pytest.mark.asyncio
    async def test_unreadable_pdf(self, components, storage, signing_setup):
        certificate, document = signing_setup
        storage.put(BUCKET, document.storage_key_input, b"not a pdf")
        sign_job = create_sign_job(document, certificate)
        session = FakeSession(document, certificate, sign_job)

        await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        assert sign_job.status == SignJobStatus.FAILED
        assert "Unreadable PDF" in sign_job.error_message


class TestSignDocumentHandler:
    """Tests for the queue-facing handler."""

    @pytest.mark.asyncio
    async def test_dispatches_to_processor(self, components, storage, signing_setup):
        certificate, document = signing_setup
        sign_job = create_sign_job(document, certificate)
        session = FakeSession(document, certificate, sign_job)
        job = MagicMock(payload_json={"sign_job_id": str(sign_job.sign_job_id)})

        with patch(
            "vendorsign.worker.handlers.signing.get_signing_components",
            return_value=components,
        ):
            result = await sign_document_handler(session, job)

        assert result["status"] == "signed"
        assert sign_job.status == SignJobStatus.SIGNED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [None, {}, {"sign_job_id": "not-a-uuid"}])
    async def test_invalid_payload(self, payload):
        job = MagicMock(payload_json=payload)

        result = await sign_document_handler(FakeSession(), job)

        assert result == {"skipped": True, "reason": "invalid_payload"}


class TestWorkOffEventLoop:
    """Tests that CPU-bound steps leave the event loop free."""

    @pytest.mark.asyncio
    async def test_stamp_and_sign_run_in_worker_threads(self, components, signing_setup):
        certificate, document = signing_setup
        sign_job = create_sign_job(document, certificate)
        session = FakeSession(document, certificate, sign_job)
        stamper, signer = _RecordingStamper(), _RecordingSigner()
        components = dataclasses.replace(components, stamper=stamper, signer=signer)
        loop_thread = threading.get_ident()

        result = await DocumentSignProcessor(session, components).process(sign_job.sign_job_id)

        assert result["status"] == "signed"
        assert len(stamper.threads) == 1
        assert len(signer.threads) == 1
        assert loop_thread not in stamper.threads + signer.threads
