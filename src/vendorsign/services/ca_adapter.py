"""Certificate authority adapter.

Protocol boundary between VendorSign and the external certificate
authority. Callers depend only on the abstract ``CAClient`` contract:

- issue(subject_name, san_email, key_type) -> IssuedCertificate
- revoke(serial, reason) -> None

Transports:
- StepCliCAClient: drives the smallstep ``step`` binary as a subprocess
- RestCAClient: talks to a step-ca compatible HTTP API with httpx
- InMemoryCAClient: self-contained CA for development and tests

Failures are reported as CAUnavailableError (transport problem, the
caller may retry), CARejectedError (the CA refused the request) or
CANotFoundError (revocation of an unknown serial).
"""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from vendorsign.core.config import CATransport

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.types import CertificateIssuerPrivateKeyTypes

    from vendorsign.core.config import CASettings

logger = logging.getLogger(__name__)

# stderr fragments from step that indicate the CA could not be reached
_UNAVAILABLE_MARKERS = (
    "connection refused",
    "no such host",
    "timed out",
    "timeout",
    "connection reset",
    "network is unreachable",
    "tls handshake",
)
_NOT_FOUND_MARKERS = ("not found", "does not exist", "unknown serial")


class CAError(Exception):
    """Base exception for certificate authority errors."""

    pass


class CAUnavailableError(CAError):
    """The CA could not be reached or did not answer in time. Retryable."""

    pass


class CARejectedError(CAError):
    """The CA refused or could not process the request. Not retryable."""

    pass


class CANotFoundError(CAError):
    """The CA does not know the certificate being revoked."""

    pass


class KeyType(str, Enum):
    """Key pair types the adapter can request."""

    RSA_2048 = "rsa-2048"
    RSA_3072 = "rsa-3072"
    EC_P256 = "ec-p256"


@dataclass(frozen=True, slots=True)
class IssuedCertificate:
    """Fresh key pair and certificate returned by the CA.

    The private key PEM lives only in memory until the lifecycle manager
    seals it; it is excluded from the repr so it never reaches logs.
    """

    certificate_pem: str
    private_key_pem: str = field(repr=False)
    serial: str
    subject_dn: str
    chain_pem: str | None = None


@dataclass(frozen=True, slots=True)
class CertificateMetadata:
    """Machine-readable fields parsed from a certificate PEM."""

    serial: str
    subject_dn: str
    common_name: str | None
    not_before: datetime
    not_after: datetime


def generate_private_key(key_type: KeyType) -> CertificateIssuerPrivateKeyTypes:
    """Generate a private key of the requested type."""
    if key_type == KeyType.EC_P256:
        return ec.generate_private_key(ec.SECP256R1())
    key_size = 3072 if key_type == KeyType.RSA_3072 else 2048
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def private_key_to_pem(private_key: CertificateIssuerPrivateKeyTypes) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def build_csr(
    private_key: CertificateIssuerPrivateKeyTypes,
    subject_name: str,
    san_email: str,
) -> x509.CertificateSigningRequest:
    """Build a CSR with CN=subject_name and an rfc822Name SAN."""
    return (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject_name)]))
        .add_extension(
            x509.SubjectAlternativeName([x509.RFC822Name(san_email)]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )


def split_pem_bundle(bundle: str) -> tuple[str, str | None]:
    """Split a PEM bundle into the leaf certificate and the remaining chain."""
    certs = x509.load_pem_x509_certificates(bundle.encode("ascii"))
    if not certs:
        msg = "CA response contained no certificate"
        raise CARejectedError(msg)
    pems = [c.public_bytes(serialization.Encoding.PEM).decode("ascii") for c in certs]
    chain = "".join(pems[1:]) or None
    return pems[0], chain


def parse_certificate_pem(certificate_pem: str) -> CertificateMetadata:
    """Parse serial, subject DN and validity from a certificate PEM.

    Raises:
        CARejectedError: If the PEM is not a valid X.509 certificate.
    """
    try:
        cert = x509.load_pem_x509_certificate(certificate_pem.encode("ascii"))
    except ValueError as e:
        msg = f"CA returned an unparseable certificate: {e}"
        raise CARejectedError(msg) from e

    cn_attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    common_name = str(cn_attrs[0].value) if cn_attrs else None
    return CertificateMetadata(
        serial=str(cert.serial_number),
        subject_dn=cert.subject.rfc4514_string(),
        common_name=common_name,
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
    )


class CAClient(ABC):
    """Issue/revoke contract shared by every CA transport."""

    @abstractmethod
    async def issue(
        self,
        subject_name: str,
        san_email: str,
        key_type: KeyType = KeyType.RSA_2048,
    ) -> IssuedCertificate:
        """Obtain a fresh key pair and a certificate for it.

        Args:
            subject_name: Common name of the certificate subject.
            san_email: Email address placed in the subjectAltName.
            key_type: Type of the key pair to generate.

        Returns:
            The issued certificate, its private key and parsed metadata.

        Raises:
            CAUnavailableError: If the CA cannot be reached.
            CARejectedError: If the CA refuses the request.
        """

    @abstractmethod
    async def revoke(self, serial: str, reason: str) -> None:
        """Revoke a certificate by serial number.

        Raises:
            CAUnavailableError: If the CA cannot be reached.
            CARejectedError: If the CA refuses the request.
            CANotFoundError: If the CA does not know the serial.
        """


# =============================================================================
# step CLI transport
# =============================================================================


def _step_key_flags(key_type: KeyType) -> list[str]:
    if key_type == KeyType.EC_P256:
        return ["--kty", "EC", "--crv", "P-256"]
    size = "3072" if key_type == KeyType.RSA_3072 else "2048"
    return ["--kty", "RSA", "--size", size]


def _classify_step_failure(command: str, stderr: str, *, revoking: bool = False) -> CAError:
    lowered = stderr.lower()
    detail = stderr.strip() or "no output"
    if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
        return CAUnavailableError(f"step {command} could not reach the CA: {detail}")
    if revoking and any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return CANotFoundError(f"step {command}: {detail}")
    return CARejectedError(f"step {command} failed: {detail}")


class StepCliCAClient(CAClient):
    """CA client that shells out to the smallstep ``step`` CLI.

    Every call runs in its own temporary directory so concurrent calls
    never share CSR or key files, and the directory (with any key
    material in it) is removed however the call ends.
    """

    def __init__(
        self,
        *,
        ca_url: str,
        root_cert: str,
        provisioner: str,
        password_file: str,
        step_binary: str = "step",
        timeout: float = 30.0,
    ) -> None:
        self._ca_url = ca_url
        self._root_cert = root_cert
        self._provisioner = provisioner
        self._password_file = password_file
        self._step_binary = step_binary
        self._timeout = timeout

    def _ca_flags(self) -> list[str]:
        return [
            "--ca-url",
            self._ca_url,
            "--root",
            self._root_cert,
            f"--provisioner={self._provisioner}",
            "--password-file",
            self._password_file,
        ]

    async def _run(self, args: list[str], cwd: str, *, revoking: bool = False) -> str:
        command = " ".join(args[:2])
        try:
            process = await asyncio.create_subprocess_exec(
                self._step_binary,
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            msg = f"step binary not found: {self._step_binary}"
            raise CAUnavailableError(msg) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except TimeoutError as e:
            await _terminate(process)
            msg = f"step {command} timed out after {self._timeout}s"
            raise CAUnavailableError(msg) from e
        except asyncio.CancelledError:
            await _terminate(process)
            raise

        if process.returncode != 0:
            raise _classify_step_failure(
                command, stderr.decode("utf-8", errors="replace"), revoking=revoking
            )
        return stdout.decode("utf-8", errors="replace")

    async def issue(
        self,
        subject_name: str,
        san_email: str,
        key_type: KeyType = KeyType.RSA_2048,
    ) -> IssuedCertificate:
        with tempfile.TemporaryDirectory(prefix="vendorsign-ca-") as workdir:
            await self._run(
                [
                    "certificate",
                    "create",
                    subject_name,
                    "request.csr",
                    "request.key",
                    "--csr",
                    "--no-password",
                    "--insecure",
                    "--san",
                    san_email,
                    *_step_key_flags(key_type),
                ],
                workdir,
            )
            await self._run(["ca", "sign", "request.csr", "cert.crt", *self._ca_flags()], workdir)
            inspect_output = await self._run(
                ["certificate", "inspect", "cert.crt", "--format", "json"], workdir
            )

            work = Path(workdir)
            private_key_pem = (work / "request.key").read_text()
            bundle = (work / "cert.crt").read_text()

        certificate_pem, chain_pem = split_pem_bundle(bundle)
        try:
            details = json.loads(inspect_output)
        except json.JSONDecodeError as e:
            msg = f"step certificate inspect returned invalid JSON: {e}"
            raise CARejectedError(msg) from e

        metadata = parse_certificate_pem(certificate_pem)
        serial = str(details.get("serial_number") or metadata.serial)
        subject_dn = details.get("subject_dn") or metadata.subject_dn

        logger.info("Certificate issued via step CLI: serial=%s, subject=%s", serial, subject_dn)
        return IssuedCertificate(
            certificate_pem=certificate_pem,
            private_key_pem=private_key_pem,
            serial=serial,
            subject_dn=subject_dn,
            chain_pem=chain_pem,
        )

    async def revoke(self, serial: str, reason: str) -> None:
        with tempfile.TemporaryDirectory(prefix="vendorsign-ca-") as workdir:
            await self._run(
                ["ca", "revoke", serial, *self._ca_flags(), "--reason", reason],
                workdir,
                revoking=True,
            )
        logger.info("Certificate revoked via step CLI: serial=%s", serial)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        process.kill()
        await process.wait()


# =============================================================================
# REST transport
# =============================================================================


class RestCAClient(CAClient):
    """CA client for the step-ca HTTP API (``/1.0/sign``, ``/1.0/revoke``).

    Key pair and CSR are generated in memory; nothing touches disk.

    Example usage:
        client = RestCAClient(
            base_url="https://ca.internal:9000",
            provisioner_token=token,
        )
        issued = await client.issue("Jane Doe", "jane@example.com")
    """

    def __init__(
        self,
        *,
        base_url: str,
        provisioner_token: str,
        timeout: float = 30.0,
        verify: ssl.SSLContext | bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._provisioner_token = provisioner_token
        self._timeout = timeout
        self._verify = verify
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            verify=self._verify,
            transport=self._transport,
        )

    async def _post(self, path: str, body: dict, *, revoking: bool = False) -> dict:
        try:
            async with self._client() as client:
                response = await client.post(path, json=body)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = _error_detail(e.response)
            if status >= 500:
                msg = f"CA error {status} on {path}: {detail}"
                raise CAUnavailableError(msg) from e
            if revoking and status == 404:
                msg = f"CA does not know the certificate: {detail}"
                raise CANotFoundError(msg) from e
            msg = f"CA rejected request {status} on {path}: {detail}"
            raise CARejectedError(msg) from e
        except httpx.TransportError as e:
            msg = f"Cannot reach CA at {self._base_url}: {e}"
            raise CAUnavailableError(msg) from e
        except ValueError as e:
            msg = f"CA returned a non-JSON response on {path}"
            raise CARejectedError(msg) from e

    async def issue(
        self,
        subject_name: str,
        san_email: str,
        key_type: KeyType = KeyType.RSA_2048,
    ) -> IssuedCertificate:
        private_key = generate_private_key(key_type)
        csr = build_csr(private_key, subject_name, san_email)
        csr_pem = csr.public_bytes(serialization.Encoding.PEM).decode("ascii")

        data = await self._post("/1.0/sign", {"csr": csr_pem, "ott": self._provisioner_token})

        certificate_pem = data.get("crt")
        if not certificate_pem:
            msg = "CA response did not include a certificate"
            raise CARejectedError(msg)

        chain = data.get("certChain") or []
        chain_pem = "".join(chain[1:]) or data.get("ca")
        metadata = parse_certificate_pem(certificate_pem)

        logger.info(
            "Certificate issued via REST: serial=%s, subject=%s",
            metadata.serial,
            metadata.subject_dn,
        )
        return IssuedCertificate(
            certificate_pem=certificate_pem,
            private_key_pem=private_key_to_pem(private_key),
            serial=metadata.serial,
            subject_dn=metadata.subject_dn,
            chain_pem=chain_pem,
        )

    async def revoke(self, serial: str, reason: str) -> None:
        await self._post(
            "/1.0/revoke",
            {
                "serial": serial,
                "ott": self._provisioner_token,
                "reasonCode": 0,
                "reason": reason,
                "passive": True,
            },
            revoking=True,
        )
        logger.info("Certificate revoked via REST: serial=%s", serial)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body)
    return str(body)


# =============================================================================
# In-process CA
# =============================================================================


class InMemoryCAClient(CAClient):
    """Throwaway CA living in process memory.

    Issues leaf certificates from a freshly generated root and tracks
    revocations. ``fail_next`` makes the next call raise the given error,
    which lets callers exercise CA failure paths.
    """

    def __init__(
        self,
        *,
        validity: timedelta = timedelta(hours=24),
        common_name: str = "VendorSign Development CA",
    ) -> None:
        self._validity = validity
        self._root_key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.now(UTC)
        root_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        self._root_cert = (
            x509.CertificateBuilder()
            .subject_name(root_name)
            .issuer_name(root_name)
            .public_key(self._root_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .sign(self._root_key, hashes.SHA256())
        )
        self.issued: dict[str, x509.Certificate] = {}
        self.revoked: dict[str, str] = {}
        self.fail_next: CAError | None = None

    @property
    def root_certificate_pem(self) -> str:
        return self._root_cert.public_bytes(serialization.Encoding.PEM).decode("ascii")

    def _raise_if_failing(self) -> None:
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

    async def issue(
        self,
        subject_name: str,
        san_email: str,
        key_type: KeyType = KeyType.RSA_2048,
    ) -> IssuedCertificate:
        self._raise_if_failing()

        private_key = generate_private_key(key_type)
        csr = build_csr(private_key, subject_name, san_email)
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        now = datetime.now(UTC)
        cert = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(self._root_cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + self._validity)
            .add_extension(san, critical=False)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=True,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(self._root_key, hashes.SHA256())
        )

        serial = str(cert.serial_number)
        self.issued[serial] = cert
        return IssuedCertificate(
            certificate_pem=cert.public_bytes(serialization.Encoding.PEM).decode("ascii"),
            private_key_pem=private_key_to_pem(private_key),
            serial=serial,
            subject_dn=cert.subject.rfc4514_string(),
            chain_pem=self.root_certificate_pem,
        )

    async def revoke(self, serial: str, reason: str) -> None:
        self._raise_if_failing()
        if serial not in self.issued:
            msg = f"Unknown certificate serial: {serial}"
            raise CANotFoundError(msg)
        if serial in self.revoked:
            msg = f"Certificate already revoked: {serial}"
            raise CARejectedError(msg)
        self.revoked[serial] = reason


def create_ca_client(settings: CASettings) -> CAClient:
    """Build the CA client for the configured transport."""
    if settings.transport == CATransport.STEP_CLI:
        return StepCliCAClient(
            ca_url=settings.url,
            root_cert=settings.root_cert,
            provisioner=settings.provisioner,
            password_file=settings.password_file,
            step_binary=settings.step_binary,
            timeout=settings.timeout,
        )
    if settings.transport == CATransport.REST:
        verify: ssl.SSLContext | bool = True
        if Path(settings.root_cert).is_file():
            verify = ssl.create_default_context(cafile=settings.root_cert)
        return RestCAClient(
            base_url=settings.url,
            provisioner_token=settings.provisioner_token.get_secret_value(),
            timeout=settings.timeout,
            verify=verify,
        )
    logger.warning("Using the in-memory CA; issued certificates are not publicly trusted")
    return InMemoryCAClient(validity=timedelta(hours=settings.validity_hours))
