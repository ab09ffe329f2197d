"""Detached CMS signatures over final document bytes.

Signing uses cryptography's PKCS#7 builder in detached, binary mode. The
SignedData container carries the signer certificate (and any chain
certificates), the SHA-256 digest algorithm identifier and the signed
attributes content-type, signing-time and message-digest. The document
bytes themselves are not embedded.

Verification parses the container with asn1crypto, checks the
message-digest attribute against the document and verifies the signature
over the DER-encoded signed attributes with the embedded certificate.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from asn1crypto import cms as asn1_cms
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs7

logger = logging.getLogger(__name__)

DIGEST_ALGORITHM = "sha256"

_SIGN_OPTIONS = [
    pkcs7.PKCS7Options.DetachedSignature,
    pkcs7.PKCS7Options.Binary,
    pkcs7.PKCS7Options.NoCapabilities,
]

_VERIFY_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


class SigningFailure(Exception):
    """Raised when a CMS signature cannot be produced. Fatal for the sign job."""

    pass


@dataclass(frozen=True, slots=True)
class DetachedSignature:
    """A detached SignedData container and the digest it commits to."""

    signature_der: bytes
    digest_hex: str
    digest_algorithm: str
    signed_at: datetime
    signer_serial: str


@dataclass(frozen=True, slots=True)
class SignatureVerification:
    """Outcome of verifying a detached signature against document bytes."""

    valid: bool
    reason: str | None
    digest_hex: str
    signing_time: datetime | None = None
    signer_serial: str | None = None
    signer_subject: str | None = None


def _load_chain(chain_pem: str | None) -> list[x509.Certificate]:
    if not chain_pem:
        return []
    return x509.load_pem_x509_certificates(chain_pem.encode("ascii"))


class CMSSigner:
    """Produces detached CMS signatures.

    Example:
        signer = CMSSigner()
        signature = signer.sign(pdf_bytes, cert_pem, key_pem)
        document.signature_cms = signature.signature_der
    """

    def sign(
        self,
        content: bytes,
        certificate_pem: str,
        private_key_pem: str,
        *,
        chain_pem: str | None = None,
    ) -> DetachedSignature:
        """Sign document bytes.

        Args:
            content: Final document bytes.
            certificate_pem: Signer certificate.
            private_key_pem: Signer private key (unencrypted PEM).
            chain_pem: Optional intermediate/root certificates to embed.

        Returns:
            DetachedSignature with the DER container and SHA-256 digest.

        Raises:
            SigningFailure: If the certificate or key is unusable or signing fails.
        """
        try:
            certificate = x509.load_pem_x509_certificate(certificate_pem.encode("ascii"))
            private_key = serialization.load_pem_private_key(
                private_key_pem.encode("ascii"), password=None
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            msg = f"Cannot load signer credentials: {e}"
            raise SigningFailure(msg) from e

        if not isinstance(private_key, rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey):
            msg = f"Unsupported signer key type: {type(private_key).__name__}"
            raise SigningFailure(msg)

        spki = serialization.PublicFormat.SubjectPublicKeyInfo
        if certificate.public_key().public_bytes(serialization.Encoding.DER, spki) != (
            private_key.public_key().public_bytes(serialization.Encoding.DER, spki)
        ):
            msg = "Signer private key does not match the certificate"
            raise SigningFailure(msg)

        try:
            builder = (
                pkcs7.PKCS7SignatureBuilder()
                .set_data(content)
                .add_signer(certificate, private_key, hashes.SHA256())
            )
            for extra in _load_chain(chain_pem):
                builder = builder.add_certificate(extra)
            signature_der = builder.sign(serialization.Encoding.DER, _SIGN_OPTIONS)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            msg = f"CMS signing failed: {e}"
            raise SigningFailure(msg) from e

        signed_at = _signing_time(signature_der) or datetime.now(UTC)
        digest_hex = hashlib.sha256(content).hexdigest()

        logger.debug(
            "Signed %d bytes: digest=%s..., serial=%s",
            len(content),
            digest_hex[:16],
            certificate.serial_number,
        )
        return DetachedSignature(
            signature_der=signature_der,
            digest_hex=digest_hex,
            digest_algorithm=DIGEST_ALGORITHM,
            signed_at=signed_at,
            signer_serial=str(certificate.serial_number),
        )


def _signed_attributes(signer_info: asn1_cms.SignerInfo) -> dict[str, object]:
    attrs: dict[str, object] = {}
    for attr in signer_info["signed_attrs"]:
        attrs[attr["type"].native] = attr["values"][0].native
    return attrs


def _signing_time(signature_der: bytes) -> datetime | None:
    content_info = asn1_cms.ContentInfo.load(signature_der)
    signer_info = content_info["content"]["signer_infos"][0]
    value = _signed_attributes(signer_info).get("signing_time")
    return value if isinstance(value, datetime) else None


def _find_signer_certificate(
    signed_data: asn1_cms.SignedData, signer_info: asn1_cms.SignerInfo
) -> x509.Certificate | None:
    sid = signer_info["sid"]
    if sid.name != "issuer_and_serial_number":
        return None
    issuer = sid.chosen["issuer"]
    serial = sid.chosen["serial_number"].native
    for choice in signed_data["certificates"] or []:
        if choice.name != "certificate":
            continue
        cert = choice.chosen
        if cert.serial_number == serial and cert.issuer == issuer:
            return x509.load_der_x509_certificate(cert.dump())
    return None


def verify_detached_signature(
    content: bytes,
    signature_der: bytes,
    *,
    certificate_pem: str | None = None,
) -> SignatureVerification:
    """Verify a detached CMS signature against document bytes.

    Args:
        content: The exact bytes that were signed.
        signature_der: DER-encoded ContentInfo/SignedData.
        certificate_pem: If given, the embedded signer certificate must be this one.

    Returns:
        SignatureVerification; ``valid`` is False with a ``reason`` on any mismatch.
    """
    digest_hex = hashlib.sha256(content).hexdigest()

    try:
        content_info = asn1_cms.ContentInfo.load(signature_der)
        if content_info["content_type"].native != "signed_data":
            return SignatureVerification(False, "not a SignedData container", digest_hex)
        signed_data = content_info["content"]
        if signed_data["encap_content_info"]["content"].native is not None:
            return SignatureVerification(False, "signature is not detached", digest_hex)

        signer_info = signed_data["signer_infos"][0]
        digest_name = signer_info["digest_algorithm"]["algorithm"].native
        attrs = _signed_attributes(signer_info)
        signer_cert = _find_signer_certificate(signed_data, signer_info)
        signature = signer_info["signature"].native
        # Signed attributes are signed as a SET OF, not with their [0] IMPLICIT tag
        signed_bytes = b"\x31" + signer_info["signed_attrs"].dump()[1:]
    except (ValueError, TypeError, KeyError, IndexError) as e:
        return SignatureVerification(False, f"malformed signature container: {e}", digest_hex)

    signing_time = attrs.get("signing_time")
    signing_time = signing_time if isinstance(signing_time, datetime) else None

    if signer_cert is None:
        return SignatureVerification(False, "signer certificate not embedded", digest_hex)

    serial = str(signer_cert.serial_number)
    subject = signer_cert.subject.rfc4514_string()

    def _result(valid: bool, reason: str | None) -> SignatureVerification:
        return SignatureVerification(valid, reason, digest_hex, signing_time, serial, subject)

    if certificate_pem is not None:
        expected = x509.load_pem_x509_certificate(certificate_pem.encode("ascii"))
        if expected != signer_cert:
            return _result(False, "signed by a different certificate")

    hash_cls = _VERIFY_HASHES.get(digest_name)
    if hash_cls is None:
        return _result(False, f"unsupported digest algorithm: {digest_name}")

    if attrs.get("message_digest") != hashlib.new(digest_name, content).digest():
        return _result(False, "message digest does not match document")

    public_key = signer_cert.public_key()
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, signed_bytes, padding.PKCS1v15(), hash_cls())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, signed_bytes, ec.ECDSA(hash_cls()))
        else:
            return _result(False, f"unsupported key type: {type(public_key).__name__}")
    except InvalidSignature:
        return _result(False, "signature does not verify")

    return _result(True, None)
