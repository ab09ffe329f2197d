"""Tests for the certificate authority adapter.

Tests cover:
- step CLI transport: argument vectors, per-call temp dirs, failure mapping, timeouts
- REST transport: sign/revoke payloads and HTTP status mapping (httpx MockTransport)
- In-memory CA: issuance, key usage, revocation bookkeeping
- Transport selection from settings
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from vendorsign.core.config import CASettings, CATransport
from vendorsign.services.ca_adapter import (
    CANotFoundError,
    CARejectedError,
    CAUnavailableError,
    InMemoryCAClient,
    KeyType,
    RestCAClient,
    StepCliCAClient,
    build_csr,
    create_ca_client,
    generate_private_key,
    parse_certificate_pem,
    private_key_to_pem,
    split_pem_bundle,
)


def _sign_csr(csr: x509.CertificateSigningRequest, issuer_key, issuer_name: x509.Name):
    now = datetime.now(UTC)
    return (
        x509.CertificateBuilder()
        .subject_name(csr.subject)
        .issuer_name(issuer_name)
        .public_key(csr.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(hours=24))
        .sign(issuer_key, hashes.SHA256())
    )


def _pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(scope="module")
def test_root():
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Root")])
    now = datetime.now(UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    return key, cert


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
class TestHelpers:
    """Tests for key, CSR and PEM helpers."""

    @pytest.mark.parametrize(
        ("key_type", "expected"),
        [
            (KeyType.RSA_2048, rsa.RSAPrivateKey),
            (KeyType.EC_P256, ec.EllipticCurvePrivateKey),
        ],
    )
    def test_generate_private_key(self, key_type, expected):
        assert isinstance(generate_private_key(key_type), expected)

    def test_csr_carries_subject_and_email(self):
        key = generate_private_key(KeyType.EC_P256)
        csr = build_csr(key, "Jane Doe", "jane@example.com")

        cn = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert cn == "Jane Doe"
        assert san.get_values_for_type(x509.RFC822Name) == ["jane@example.com"]
        assert csr.is_signature_valid

    def test_split_pem_bundle(self, test_root):
        _, root = test_root
        leaf_key = generate_private_key(KeyType.EC_P256)
        leaf = _sign_csr(build_csr(leaf_key, "Leaf", "l@example.com"), test_root[0], root.subject)

        leaf_pem, chain_pem = split_pem_bundle(_pem(leaf) + _pem(root))

        assert x509.load_pem_x509_certificate(leaf_pem.encode()) == leaf
        assert x509.load_pem_x509_certificate(chain_pem.encode()) == root

    def test_split_single_certificate_has_no_chain(self, test_root):
        _, root = test_root
        _, chain_pem = split_pem_bundle(_pem(root))
        assert chain_pem is None

    def test_parse_certificate_pem(self, test_root):
        _, root = test_root
        meta = parse_certificate_pem(_pem(root))

        assert meta.serial == str(root.serial_number)
        assert meta.common_name == "Test Root"
        assert meta.subject_dn == "CN=Test Root"
        assert meta.not_after == root.not_valid_after_utc

    def test_parse_garbage_is_rejected(self):
        with pytest.raises(CARejectedError):
            parse_certificate_pem("-----BEGIN CERTIFICATE-----\nnope\n-----END CERTIFICATE-----\n")


# ---------------------------------------------------------------------------
# step CLI transport
# ---------------------------------------------------------------------------
class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, returncode=0, stdout=b"", stderr=b"", hang=False):
        self._returncode = returncode
        self.returncode = None
        self._stdout = stdout
        self._stderr = stderr
        self._hang = hang
        self.killed = False

    async def communicate(self):
        if self._hang:
            await asyncio.sleep(3600)
        self.returncode = self._returncode
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


class FakeStep:
    """Emulates the step subcommands used by StepCliCAClient."""

    def __init__(self, root_key, root_cert, failures=None):
        self.root_key = root_key
        self.root_cert = root_cert
        self.failures = failures or {}
        self.calls: list[tuple[tuple[str, ...], str]] = []
        self.processes: list[FakeProcess] = []

    async def __call__(self, binary, *args, cwd, **kwargs):
        self.calls.append((args, cwd))
        command = " ".join(args[:2])
        if command in self.failures:
            process = self.failures[command]
        else:
            process = FakeProcess(stdout=self._run(command, args, Path(cwd)))
        self.processes.append(process)
        return process

    def _run(self, command, args, work: Path) -> bytes:
        if command == "certificate create":
            key = generate_private_key(KeyType.RSA_2048)
            csr = build_csr(key, args[2], args[args.index("--san") + 1])
            (work / args[4]).write_text(private_key_to_pem(key))
            (work / args[3]).write_bytes(csr.public_bytes(serialization.Encoding.PEM))
            return b""
        if command == "ca sign":
            csr = x509.load_pem_x509_csr((work / args[2]).read_bytes())
            cert = _sign_csr(csr, self.root_key, self.root_cert.subject)
            (work / args[3]).write_text(_pem(cert) + _pem(self.root_cert))
            self.last_cert = cert
            return b""
        if command == "certificate inspect":
            return json.dumps(
                {
                    "serial_number": str(self.last_cert.serial_number),
                    "subject_dn": self.last_cert.subject.rfc4514_string(),
                }
            ).encode()
        if command == "ca revoke":
            return b"The certificate has been revoked."
        raise AssertionError(f"unexpected step command: {args}")


@pytest.fixture
def step_client():
    return StepCliCAClient(
        ca_url="https://ca.test:9000",
        root_cert="/certs/root_ca.crt",
        provisioner="vendor-admin",
        password_file="/secrets/password",
        timeout=0.5,
    )


class TestStepCliCAClient:
    """Tests for the step CLI transport."""

    @pytest.mark.asyncio
    async def test_issue(self, step_client, test_root):
        fake = FakeStep(*test_root)
        with patch("asyncio.create_subprocess_exec", new=fake):
            issued = await step_client.issue("Jane Doe", "jane@example.com")

        assert [" ".join(args[:2]) for args, _ in fake.calls] == [
            "certificate create",
            "ca sign",
            "certificate inspect",
        ]
        assert issued.serial == str(fake.last_cert.serial_number)
        assert issued.subject_dn == "CN=Jane Doe"
        assert x509.load_pem_x509_certificate(issued.chain_pem.encode()) == test_root[1]
        assert "PRIVATE KEY" in issued.private_key_pem

        create_args = fake.calls[0][0]
        assert ["--kty", "RSA", "--size", "2048"] == list(create_args[-4:])
        sign_args = fake.calls[1][0]
        assert "--provisioner=vendor-admin" in sign_args
        assert sign_args[sign_args.index("--ca-url") + 1] == "https://ca.test:9000"

    @pytest.mark.asyncio
    async def test_issue_uses_one_temp_dir_and_removes_it(self, step_client, test_root):
        fake = FakeStep(*test_root)
        with patch("asyncio.create_subprocess_exec", new=fake):
            await step_client.issue("Jane Doe", "jane@example.com")

        workdirs = {cwd for _, cwd in fake.calls}
        assert len(workdirs) == 1
        assert not Path(workdirs.pop()).exists()

    @pytest.mark.asyncio
    async def test_concurrent_issues_use_separate_dirs(self, step_client, test_root):
        fake = FakeStep(*test_root)
        with patch("asyncio.create_subprocess_exec", new=fake):
            await asyncio.gather(
                step_client.issue("A", "a@example.com"),
                step_client.issue("B", "b@example.com"),
            )

        creates = [cwd for args, cwd in fake.calls if args[:2] == ("certificate", "create")]
        assert len(set(creates)) == 2

    @pytest.mark.asyncio
    async def test_ec_key_flags(self, step_client, test_root):
        fake = FakeStep(*test_root)
        with patch("asyncio.create_subprocess_exec", new=fake):
            await step_client.issue("Jane Doe", "jane@example.com", KeyType.EC_P256)

        assert list(fake.calls[0][0][-4:]) == ["--kty", "EC", "--crv", "P-256"]

    @pytest.mark.asyncio
    async def test_connection_refused_is_unavailable(self, step_client, test_root):
        failure = FakeProcess(returncode=1, stderr=b"dial tcp: connection refused")
        fake = FakeStep(*test_root, failures={"ca sign": failure})
        with (
            patch("asyncio.create_subprocess_exec", new=fake),
            pytest.raises(CAUnavailableError),
        ):
            await step_client.issue("Jane Doe", "jane@example.com")

        assert not Path(fake.calls[0][1]).exists()

    @pytest.mark.asyncio
    async def test_refusal_is_rejected(self, step_client, test_root):
        failure = FakeProcess(returncode=1, stderr=b"provisioner password is invalid")
        fake = FakeStep(*test_root, failures={"ca sign": failure})
        with (
            patch("asyncio.create_subprocess_exec", new=fake),
            pytest.raises(CARejectedError, match="password"),
        ):
            await step_client.issue("Jane Doe", "jane@example.com")

    @pytest.mark.asyncio
    async def test_missing_binary_is_unavailable(self, step_client):
        with (
            patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("step")),
            pytest.raises(CAUnavailableError, match="not found"),
        ):
            await step_client.issue("Jane Doe", "jane@example.com")

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, step_client, test_root):
        hanging = FakeProcess(hang=True)
        fake = FakeStep(*test_root, failures={"ca sign": hanging})
        with (
            patch("asyncio.create_subprocess_exec", new=fake),
            pytest.raises(CAUnavailableError, match="timed out"),
        ):
            await step_client.issue("Jane Doe", "jane@example.com")

        assert hanging.killed
        assert not Path(fake.calls[0][1]).exists()

    @pytest.mark.asyncio
    async def test_revoke(self, step_client, test_root):
        fake = FakeStep(*test_root)
        with patch("asyncio.create_subprocess_exec", new=fake):
            await step_client.revoke("12345", "key compromise")

        args = fake.calls[0][0]
        assert args[:3] == ("ca", "revoke", "12345")
        assert args[args.index("--reason") + 1] == "key compromise"

    @pytest.mark.asyncio
    async def test_revoke_unknown_serial(self, step_client, test_root):
        failure = FakeProcess(returncode=1, stderr=b"certificate with serial 1 not found")
        fake = FakeStep(*test_root, failures={"ca revoke": failure})
        with patch("asyncio.create_subprocess_exec", new=fake), pytest.raises(CANotFoundError):
            await step_client.revoke("1", "superseded")


# ---------------------------------------------------------------------------
# REST transport
# ---------------------------------------------------------------------------
def _rest_client(handler) -> RestCAClient:
    return RestCAClient(
        base_url="https://ca.test:9000",
        provisioner_token="ott-token",  # noqa: S106
        transport=httpx.MockTransport(handler),
    )


class TestRestCAClient:
    """Tests for the REST transport."""

    @pytest.mark.asyncio
    async def test_issue(self, test_root):
        root_key, root_cert = test_root
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            seen["path"] = request.url.path
            seen["ott"] = body["ott"]
            csr = x509.load_pem_x509_csr(body["csr"].encode())
            leaf = _sign_csr(csr, root_key, root_cert.subject)
            seen["serial"] = str(leaf.serial_number)
            return httpx.Response(
                201,
                json={
                    "crt": _pem(leaf),
                    "ca": _pem(root_cert),
                    "certChain": [_pem(leaf), _pem(root_cert)],
                },
            )

        issued = await _rest_client(handler).issue("Jane Doe", "jane@example.com")

        assert seen["path"] == "/1.0/sign"
        assert seen["ott"] == "ott-token"
        assert issued.serial == seen["serial"]
        assert issued.subject_dn == "CN=Jane Doe"
        assert issued.chain_pem == _pem(root_cert)

        cert = x509.load_pem_x509_certificate(issued.certificate_pem.encode())
        key = serialization.load_pem_private_key(issued.private_key_pem.encode(), None)
        assert cert.public_key().public_numbers() == key.public_key().public_numbers()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "error"),
        [
            (500, CAUnavailableError),
            (503, CAUnavailableError),
            (400, CARejectedError),
            (401, CARejectedError),
        ],
    )
    async def test_issue_status_mapping(self, status, error):
        def handler(request):
            return httpx.Response(status, json={"message": "nope"})

        with pytest.raises(error):
            await _rest_client(handler).issue("Jane Doe", "jane@example.com")

    @pytest.mark.asyncio
    async def test_connect_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CAUnavailableError):
            await _rest_client(handler).issue("Jane Doe", "jane@example.com")

    @pytest.mark.asyncio
    async def test_missing_certificate_is_rejected(self):
        def handler(request):
            return httpx.Response(201, json={"ca": ""})

        with pytest.raises(CARejectedError):
            await _rest_client(handler).issue("Jane Doe", "jane@example.com")

    @pytest.mark.asyncio
    async def test_revoke(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": "ok"})

        await _rest_client(handler).revoke("4242", "key compromise")

        assert seen["path"] == "/1.0/revoke"
        assert seen["body"]["serial"] == "4242"
        assert seen["body"]["reason"] == "key compromise"
        assert seen["body"]["passive"] is True

    @pytest.mark.asyncio
    async def test_revoke_404_is_not_found(self):
        def handler(request):
            return httpx.Response(404, json={"message": "certificate not found"})

        with pytest.raises(CANotFoundError):
            await _rest_client(handler).revoke("1", "superseded")


# ---------------------------------------------------------------------------
# In-memory CA
# ---------------------------------------------------------------------------
class TestInMemoryCAClient:
    """Tests for the in-process CA."""

    @pytest.mark.asyncio
    async def test_issue(self, ca):
        issued = await ca.issue("Jane Doe", "jane@example.com")

        cert = x509.load_pem_x509_certificate(issued.certificate_pem.encode())
        usage = cert.extensions.get_extension_for_class(x509.KeyUsage).value
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert usage.digital_signature
        assert usage.content_commitment
        assert san.get_values_for_type(x509.RFC822Name) == ["jane@example.com"]
        assert issued.serial == str(cert.serial_number)
        assert issued.chain_pem == ca.root_certificate_pem

    @pytest.mark.asyncio
    async def test_validity(self):
        ca = InMemoryCAClient(validity=timedelta(hours=2))
        issued = await ca.issue("Jane Doe", "jane@example.com")
        meta = parse_certificate_pem(issued.certificate_pem)

        assert meta.not_after - meta.not_before == timedelta(hours=2, minutes=1)

    @pytest.mark.asyncio
    async def test_revoke_tracks_serial(self, ca):
        issued = await ca.issue("Jane Doe", "jane@example.com")
        await ca.revoke(issued.serial, "key compromise")

        assert ca.revoked[issued.serial] == "key compromise"

    @pytest.mark.asyncio
    async def test_revoke_unknown_serial(self, ca):
        with pytest.raises(CANotFoundError):
            await ca.revoke("1", "superseded")

    @pytest.mark.asyncio
    async def test_revoke_twice_is_rejected(self, ca):
        issued = await ca.issue("Jane Doe", "jane@example.com")
        await ca.revoke(issued.serial, "first")
        with pytest.raises(CARejectedError):
            await ca.revoke(issued.serial, "second")

    @pytest.mark.asyncio
    async def test_fail_next_is_one_shot(self, ca):
        ca.fail_next = CAUnavailableError("down")
        with pytest.raises(CAUnavailableError):
            await ca.issue("Jane Doe", "jane@example.com")

        issued = await ca.issue("Jane Doe", "jane@example.com")
        assert issued.serial


class TestCreateCAClient:
    """Tests for transport selection."""

    def test_step_cli(self):
        client = create_ca_client(CASettings(transport=CATransport.STEP_CLI))
        assert isinstance(client, StepCliCAClient)

    def test_rest(self):
        settings = CASettings(transport=CATransport.REST, root_cert="/does/not/exist.crt")
        assert isinstance(create_ca_client(settings), RestCAClient)

    def test_in_memory(self):
        settings = CASettings(transport=CATransport.IN_MEMORY, validity_hours=1)
        assert isinstance(create_ca_client(settings), InMemoryCAClient)
