"""Certificate lifecycle service.

Orchestrates issuance and revocation of personal signing certificates:
- Issuance only for verified identities, at most one ISSUED certificate each
- Private keys sealed by the KeyMaterialStore before they are persisted
- Revocation recorded locally only after the CA confirms it

The service flushes but never commits; the caller owns the transaction.
CA errors (CAUnavailableError, CARejectedError, CANotFoundError) propagate
unchanged so callers can tell retryable failures from refusals.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from vendorsign.db.models.base import CertificateStatus
from vendorsign.db.models.certificates import Certificate
from vendorsign.db.models.identities import Identity
from vendorsign.services.authz import Permission, require_permission
from vendorsign.services.ca_adapter import (
    CAError,
    CARejectedError,
    KeyType,
    parse_certificate_pem,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from vendorsign.services.authz import Principal
    from vendorsign.services.ca_adapter import CAClient, CertificateMetadata, IssuedCertificate
    from vendorsign.services.key_store import KeyMaterialStore

logger = logging.getLogger(__name__)

# Reason used for the best-effort revocation of a certificate that lost an issuance race
DUPLICATE_ISSUANCE_REASON = "superseded: concurrent issuance"
UNUSABLE_MATERIAL_REASON = "superseded: unusable certificate material"


class CertificateError(Exception):
    """Base exception for certificate lifecycle errors."""

    pass


class IdentityNotFoundError(CertificateError):
    """Raised when the identity does not exist."""

    def __init__(self, identity_id: uuid.UUID) -> None:
        self.identity_id = identity_id
        super().__init__(f"Identity {identity_id} not found")


class IdentityNotVerifiedError(CertificateError):
    """Raised when the identity has not completed verification."""

    def __init__(self, identity_id: uuid.UUID) -> None:
        self.identity_id = identity_id
        super().__init__(f"Identity {identity_id} has not completed verification")


class AlreadyIssuedError(CertificateError):
    """Raised when the identity already holds an ISSUED certificate."""

    def __init__(self, identity_id: uuid.UUID) -> None:
        self.identity_id = identity_id
        super().__init__(f"Identity {identity_id} already has an issued certificate")


class CertificateNotFoundError(CertificateError):
    """Raised when a certificate is not found."""

    def __init__(self, certificate_id: uuid.UUID) -> None:
        self.certificate_id = certificate_id
        super().__init__(f"Certificate {certificate_id} not found")


class CertificateNotActiveError(CertificateError):
    """Raised when an operation needs an ISSUED, unexpired certificate."""

    def __init__(self, certificate_id: uuid.UUID, reason: str) -> None:
        self.certificate_id = certificate_id
        super().__init__(f"Certificate {certificate_id} is not active: {reason}")


@dataclass(frozen=True, slots=True)
class CertificateInfo:
    """Public view of a certificate for verification consumers. No key material."""

    certificate_id: uuid.UUID
    identity_id: uuid.UUID
    serial: str
    subject_dn: str
    certificate_pem: str
    certificate_chain_pem: str | None
    status: CertificateStatus
    issued_at: datetime | None
    not_after: datetime | None

    @classmethod
    def from_model(cls, cert: Certificate) -> CertificateInfo:
        return cls(
            certificate_id=cert.certificate_id,
            identity_id=cert.identity_id,
            serial=cert.serial,
            subject_dn=cert.subject_dn,
            certificate_pem=cert.certificate_pem,
            certificate_chain_pem=cert.certificate_chain_pem,
            status=cert.status,
            issued_at=cert.issued_at,
            not_after=cert.not_after,
        )


@dataclass(frozen=True, slots=True)
class SigningMaterial:
    """Decrypted certificate and key for one signing computation."""

    certificate_id: uuid.UUID
    serial: str
    signer_name: str
    certificate_pem: str
    private_key_pem: str = field(repr=False)
    certificate_chain_pem: str | None = None


def _public_key_matches(issued: IssuedCertificate) -> bool:
    cert = x509.load_pem_x509_certificate(issued.certificate_pem.encode("ascii"))
    key = serialization.load_pem_private_key(issued.private_key_pem.encode("ascii"), None)
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    return cert.public_key().public_bytes(serialization.Encoding.DER, spki) == (
        key.public_key().public_bytes(serialization.Encoding.DER, spki)
    )


class CertificateLifecycleService:
    """Issues and revokes signing certificates.

    Example:
        service = CertificateLifecycleService(session, ca_client, key_store)
        cert = await service.request_certificate(identity_id)
        await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        ca_client: CAClient,
        key_store: KeyMaterialStore,
        *,
        key_type: KeyType = KeyType.RSA_2048,
    ) -> None:
        self._session = session
        self._ca = ca_client
        self._key_store = key_store
        self._key_type = key_type

    async def _find_issued(self, identity_id: uuid.UUID) -> Certificate | None:
        query = select(Certificate).where(
            Certificate.identity_id == identity_id,
            Certificate.status == CertificateStatus.ISSUED,
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def request_certificate(self, identity_id: uuid.UUID) -> Certificate:
        """Issue a certificate for a verified identity.

        Args:
            identity_id: Identity to issue for.

        Returns:
            The new Certificate row (flushed, not committed).

        Raises:
            IdentityNotFoundError: If the identity does not exist.
            IdentityNotVerifiedError: If the identity is not verified.
            AlreadyIssuedError: If an ISSUED certificate already exists.
            CAUnavailableError: If the CA cannot be reached (retryable).
            CARejectedError: If the CA refuses the request or returns
                unusable material.
        """
        identity = await self._session.get(Identity, identity_id)
        if identity is None:
            raise IdentityNotFoundError(identity_id)
        if not identity.is_verified:
            raise IdentityNotVerifiedError(identity_id)

        if await self._find_issued(identity_id) is not None:
            raise AlreadyIssuedError(identity_id)

        issued = await self._ca.issue(identity.display_name, identity.email, self._key_type)

        try:
            metadata = self._check_issued(issued)
        except CARejectedError:
            await self._revoke_orphan(issued.serial, UNUSABLE_MATERIAL_REASON)
            raise

        sealed_key = self._key_store.seal_private_key(
            issued.private_key_pem,
            identity_id=identity_id,
            serial=metadata.serial,
        )

        certificate = Certificate(
            certificate_id=uuid.uuid4(),
            identity_id=identity_id,
            serial=metadata.serial,
            subject_dn=metadata.subject_dn,
            certificate_pem=issued.certificate_pem,
            certificate_chain_pem=issued.chain_pem,
            encrypted_private_key=sealed_key,
            key_encryption_key_id=self._key_store.kek_id,
            key_type=self._key_type.value,
            status=CertificateStatus.ISSUED,
            issued_at=datetime.now(UTC),
            not_after=metadata.not_after,
        )
        try:
            # A lost race rolls back only this savepoint, not the caller's pending work
            async with self._session.begin_nested():
                self._session.add(certificate)
                await self._session.flush()
        except IntegrityError as e:
            # Lost a race against a concurrent issuance for the same identity
            await self._revoke_orphan(metadata.serial, DUPLICATE_ISSUANCE_REASON)
            raise AlreadyIssuedError(identity_id) from e

        logger.info(
            "Certificate issued: certificate_id=%s, identity_id=%s, serial=%s",
            certificate.certificate_id,
            identity_id,
            metadata.serial,
        )
        return certificate

    def _check_issued(self, issued: IssuedCertificate) -> CertificateMetadata:
        metadata = parse_certificate_pem(issued.certificate_pem)
        if metadata.serial != issued.serial:
            logger.warning(
                "CA reported serial %s but certificate carries %s; using the certificate",
                issued.serial,
                metadata.serial,
            )
        try:
            key_matches = _public_key_matches(issued)
        except ValueError as e:
            msg = f"CA returned an unusable private key: {e}"
            raise CARejectedError(msg) from e
        if not key_matches:
            msg = "CA returned a certificate that does not match the generated key"
            raise CARejectedError(msg)
        return metadata

    async def _revoke_orphan(self, serial: str, reason: str) -> None:
        """Best-effort revocation of a certificate that will never be stored."""
        if not serial:
            logger.error("Orphaned certificate has no serial; cannot revoke")
            return
        try:
            await self._ca.revoke(serial, reason)
        except CAError:
            logger.exception("Could not revoke orphaned certificate: serial=%s", serial)

    async def revoke_certificate(
        self,
        principal: Principal,
        certificate_id: uuid.UUID,
        reason: str,
    ) -> Certificate:
        """Revoke a certificate at the CA, then record it locally.

        Args:
            principal: Actor requesting revocation; needs REVOKE_CERTIFICATE.
            certificate_id: Certificate to revoke.
            reason: Human-readable revocation reason.

        Returns:
            The updated Certificate row (flushed, not committed).

        Raises:
            PermissionDeniedError: If the principal may not revoke.
            CertificateNotFoundError: If the certificate does not exist.
            CertificateNotActiveError: If it is already revoked.
            CAError: Any CA failure; the local status stays ISSUED.
        """
        require_permission(principal, Permission.REVOKE_CERTIFICATE)

        certificate = await self._session.get(Certificate, certificate_id, with_for_update=True)
        if certificate is None:
            raise CertificateNotFoundError(certificate_id)
        if not certificate.is_active:
            raise CertificateNotActiveError(certificate_id, "already revoked")

        await self._ca.revoke(certificate.serial, reason)

        certificate.mark_revoked(reason, datetime.now(UTC))
        await self._session.flush()

        logger.info(
            "Certificate revoked: certificate_id=%s, serial=%s, by=%s",
            certificate_id,
            certificate.serial,
            principal.principal_id,
        )
        return certificate

    async def get_active_certificate(self, identity_id: uuid.UUID) -> CertificateInfo | None:
        """Return the identity's ISSUED certificate, if any."""
        certificate = await self._find_issued(identity_id)
        if certificate is None:
            return None
        return CertificateInfo.from_model(certificate)

    async def load_signing_material(self, certificate_id: uuid.UUID) -> SigningMaterial:
        """Decrypt a certificate's private key for signing.

        Raises:
            CertificateNotFoundError: If the certificate does not exist.
            CertificateNotActiveError: If it is revoked or expired.
            KeyUnwrapError: If the sealed key cannot be opened.
        """
        certificate = await self._session.get(Certificate, certificate_id)
        if certificate is None:
            raise CertificateNotFoundError(certificate_id)
        if not certificate.is_active:
            raise CertificateNotActiveError(certificate_id, "revoked")
        if certificate.not_after is not None and certificate.not_after <= datetime.now(UTC):
            raise CertificateNotActiveError(certificate_id, "expired")

        private_key_pem = self._key_store.open_private_key(
            certificate.encrypted_private_key,
            identity_id=certificate.identity_id,
            serial=certificate.serial,
        )
        metadata = parse_certificate_pem(certificate.certificate_pem)

        return SigningMaterial(
            certificate_id=certificate.certificate_id,
            serial=certificate.serial,
            signer_name=metadata.common_name or certificate.subject_dn,
            certificate_pem=certificate.certificate_pem,
            private_key_pem=private_key_pem,
            certificate_chain_pem=certificate.certificate_chain_pem,
        )
