"""Encrypted storage for issued private keys.

Private keys returned by the CA are sealed with envelope encryption
before they reach the database:
- Data Encryption Key (DEK): random AES-256-GCM key, one per private key
- Key Encryption Key (KEK): configured secret or password-protected file,
  wraps each DEK

The sealed envelope is a small JSON document stored in
``Certificate.encrypted_private_key``. The identity id and certificate
serial are bound in as GCM associated data, so an envelope copied onto
another certificate row fails to open.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

if TYPE_CHECKING:
    from vendorsign.core.config import KeyStoreSettings

logger = logging.getLogger(__name__)

# AES-256 requires 32-byte key
DEK_SIZE_BYTES = 32
# GCM nonce should be 12 bytes per NIST recommendations
GCM_NONCE_SIZE_BYTES = 12
KEK_SALT_SIZE_BYTES = 16
KEK_PBKDF2_ITERATIONS = 600_000

ENVELOPE_VERSION = 1
ENVELOPE_ALGORITHM = "AES-256-GCM"


class KeyMaterialError(Exception):
    """Base exception for key material operations."""

    pass


class KeyUnwrapError(KeyMaterialError):
    """Raised when a sealed key cannot be opened (wrong KEK, tampering, wrong binding)."""

    pass


def _associated_data(identity_id: uuid.UUID | str, serial: str) -> bytes:
    return f"vendorsign:private-key:{identity_id}:{serial}".encode()


class KeyMaterialStore:
    """Seals and opens certificate private keys.

    Example:
        store = KeyMaterialStore.from_settings(settings.keystore)
        sealed = store.seal_private_key(key_pem, identity_id=ident, serial=serial)
        ...
        key_pem = store.open_private_key(sealed, identity_id=ident, serial=serial)
    """

    def __init__(self, kek: bytes, kek_id: str) -> None:
        """Initialize with an unwrapped KEK.

        Args:
            kek: 32-byte key-encryption key.
            kek_id: Identifier recorded alongside every sealed key.

        Raises:
            KeyMaterialError: If the KEK has the wrong size.
        """
        if len(kek) != DEK_SIZE_BYTES:
            msg = f"KEK must be {DEK_SIZE_BYTES} bytes, got {len(kek)}"
            raise KeyMaterialError(msg)
        self._kek = kek
        self._kek_id = kek_id

    @property
    def kek_id(self) -> str:
        return self._kek_id

    @classmethod
    def from_settings(cls, settings: KeyStoreSettings) -> KeyMaterialStore:
        """Build a store from configuration.

        Precedence: explicit base64 KEK, then KEK file, then an ephemeral
        KEK (keys sealed with it are lost on restart).
        """
        if settings.kek is not None:
            try:
                kek = base64.b64decode(settings.kek.get_secret_value(), validate=True)
            except binascii.Error as e:
                msg = "Configured KEK is not valid base64"
                raise KeyMaterialError(msg) from e
            return cls(kek, f"kek-{hashlib.sha256(kek).hexdigest()[:16]}")

        if settings.kek_storage_path is not None:
            password = settings.kek_password.get_secret_value() if settings.kek_password else ""
            return cls.load_or_generate(Path(settings.kek_storage_path), password.encode())

        logger.warning("Using an ephemeral KEK; sealed keys will not survive a restart")
        return cls.ephemeral()

    @classmethod
    def ephemeral(cls) -> KeyMaterialStore:
        return cls(os.urandom(DEK_SIZE_BYTES), f"kek-ephemeral-{uuid.uuid4()}")

    @classmethod
    def load_or_generate(cls, kek_dir: Path, password: bytes) -> KeyMaterialStore:
        """Load the password-protected KEK from ``kek_dir``, creating it if absent.

        Uses synchronous file I/O; this only runs at startup.

        Raises:
            KeyMaterialError: If the KEK file exists but cannot be read or decrypted.
        """
        kek_file = kek_dir / "kek.enc"
        kek_meta_file = kek_dir / "kek.json"

        if kek_file.exists() and kek_meta_file.exists():
            try:
                meta = json.loads(kek_meta_file.read_text())
                kek = _decrypt_kek_at_rest(kek_file.read_bytes(), password)
            except (OSError, ValueError, KeyError, InvalidTag) as e:
                logger.error("Failed to load KEK from %s: %s", kek_dir, type(e).__name__)
                msg = f"Failed to load KEK from {kek_dir}"
                raise KeyMaterialError(msg) from e
            logger.info("Loaded existing KEK: %s", meta["kek_id"])
            return cls(kek, meta["kek_id"])

        kek = os.urandom(DEK_SIZE_BYTES)
        kek_id = f"kek-{uuid.uuid4()}"
        try:
            kek_dir.mkdir(parents=True, exist_ok=True)
            kek_meta_file.write_text(
                json.dumps(
                    {
                        "kek_id": kek_id,
                        "created_at": datetime.now(UTC).isoformat(),
                        "algorithm": "AES-256-GCM-KEYWRAP",
                    },
                    indent=2,
                )
            )
            kek_file.write_bytes(_encrypt_kek_at_rest(kek, password))
            kek_file.chmod(0o600)
        except OSError as e:
            msg = f"Failed to write KEK to {kek_dir}: {e}"
            raise KeyMaterialError(msg) from e

        logger.info("Generated new KEK: %s (saved to %s)", kek_id, kek_file)
        return cls(kek, kek_id)

    def seal_private_key(
        self,
        private_key_pem: str,
        *,
        identity_id: uuid.UUID | str,
        serial: str,
    ) -> bytes:
        """Encrypt a private key PEM for storage.

        Args:
            private_key_pem: Plaintext PEM from the CA.
            identity_id: Owner of the certificate, bound as associated data.
            serial: Certificate serial, bound as associated data.

        Returns:
            JSON envelope bytes suitable for ``Certificate.encrypted_private_key``.
        """
        dek = os.urandom(DEK_SIZE_BYTES)
        nonce = os.urandom(GCM_NONCE_SIZE_BYTES)
        ciphertext = AESGCM(dek).encrypt(
            nonce,
            private_key_pem.encode("utf-8"),
            _associated_data(identity_id, serial),
        )

        envelope = {
            "v": ENVELOPE_VERSION,
            "alg": ENVELOPE_ALGORITHM,
            "kek_id": self._kek_id,
            "nonce": base64.b64encode(nonce).decode("ascii"),
            "wrapped_dek": self._wrap_dek(dek),
            "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        }
        return json.dumps(envelope, separators=(",", ":")).encode("utf-8")

    def open_private_key(
        self,
        sealed: bytes,
        *,
        identity_id: uuid.UUID | str,
        serial: str,
    ) -> str:
        """Decrypt a sealed private key.

        The returned PEM must only be held for the duration of a signing
        computation.

        Raises:
            KeyUnwrapError: If the envelope is malformed, sealed under another
                KEK, tampered with, or bound to a different certificate.
        """
        try:
            envelope = json.loads(sealed)
            if envelope.get("v") != ENVELOPE_VERSION or envelope.get("alg") != ENVELOPE_ALGORITHM:
                msg = f"Unsupported key envelope: v={envelope.get('v')}, alg={envelope.get('alg')}"
                raise KeyUnwrapError(msg)
            nonce = base64.b64decode(envelope["nonce"])
            ciphertext = base64.b64decode(envelope["ciphertext"])
            wrapped_dek = envelope["wrapped_dek"]
            kek_id = envelope["kek_id"]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            msg = "Malformed key envelope"
            raise KeyUnwrapError(msg) from e

        if kek_id != self._kek_id:
            msg = f"Key was sealed under {kek_id}, current KEK is {self._kek_id}"
            raise KeyUnwrapError(msg)

        dek = self._unwrap_dek(wrapped_dek)
        try:
            plaintext = AESGCM(dek).decrypt(
                nonce, ciphertext, _associated_data(identity_id, serial)
            )
        except InvalidTag as e:
            msg = f"Private key for serial {serial} failed authentication"
            raise KeyUnwrapError(msg) from e
        return plaintext.decode("utf-8")

    def _wrap_dek(self, dek: bytes) -> str:
        """Wrap DEK with the KEK; returns base64(nonce + ciphertext)."""
        nonce = os.urandom(GCM_NONCE_SIZE_BYTES)
        wrapped = AESGCM(self._kek).encrypt(nonce, dek, None)
        return base64.b64encode(nonce + wrapped).decode("ascii")

    def _unwrap_dek(self, wrapped_dek: str) -> bytes:
        try:
            wrapped_bytes = base64.b64decode(wrapped_dek)
            nonce = wrapped_bytes[:GCM_NONCE_SIZE_BYTES]
            ciphertext = wrapped_bytes[GCM_NONCE_SIZE_BYTES:]
            return AESGCM(self._kek).decrypt(nonce, ciphertext, None)
        except (ValueError, InvalidTag) as e:
            msg = "Failed to unwrap DEK"
            raise KeyUnwrapError(msg) from e


def _derive_password_key(password: bytes, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KEK_PBKDF2_ITERATIONS,
    )
    return kdf.derive(password)


def _encrypt_kek_at_rest(kek: bytes, password: bytes) -> bytes:
    # Format: salt (16) + nonce (12) + ciphertext
    salt = os.urandom(KEK_SALT_SIZE_BYTES)
    nonce = os.urandom(GCM_NONCE_SIZE_BYTES)
    encrypted = AESGCM(_derive_password_key(password, salt)).encrypt(nonce, kek, None)
    return salt + nonce + encrypted


def _decrypt_kek_at_rest(encrypted: bytes, password: bytes) -> bytes:
    salt = encrypted[:KEK_SALT_SIZE_BYTES]
    nonce = encrypted[KEK_SALT_SIZE_BYTES : KEK_SALT_SIZE_BYTES + GCM_NONCE_SIZE_BYTES]
    ciphertext = encrypted[KEK_SALT_SIZE_BYTES + GCM_NONCE_SIZE_BYTES :]
    return AESGCM(_derive_password_key(password, salt)).decrypt(nonce, ciphertext, None)
