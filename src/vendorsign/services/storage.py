"""Object storage for document bytes.

S3-compatible client (MinIO in development) holding:
- Original uploads under ``input/...``
- Signed artifacts under ``signed/...``, one object per signing pass
- Optional signature images referenced by sign jobs

Every object is written with its SHA-256 digest in user metadata and the
digest is checked again on read.

Example:
    client = ObjectStoreClient.from_settings(settings.s3)
    data = client.get(settings.s3.bucket, document.storage_key_input)
    client.put(settings.s3.bucket, derive_signed_key(key, sign_job_id), signed_bytes)
"""

from __future__ import annotations

import hashlib
import logging
import posixpath
from dataclasses import dataclass
from typing import TYPE_CHECKING

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    import uuid

    from mypy_boto3_s3 import S3Client

    from vendorsign.core.config import S3Settings

logger = logging.getLogger(__name__)

DIGEST_METADATA_KEY = "sha256-digest"
PDF_CONTENT_TYPE = "application/pdf"

INPUT_PREFIX = "input"
SIGNED_PREFIX = "signed"


def derive_signed_key(storage_key_input: str, sign_job_id: uuid.UUID | str) -> str:
    """Storage key for the artifact of one signing pass.

    The leading ``input`` path segment becomes ``signed`` and the file
    name gets ``_signed_<sign_job_id>`` before its extension, so each pass
    writes a fresh object and earlier artifacts are never overwritten.

    >>> derive_signed_key("input/u1/doc.pdf", "j1")
    'signed/u1/doc_signed_j1.pdf'
    """
    directory, filename = posixpath.split(storage_key_input)
    segments = directory.split("/") if directory else []
    if segments and segments[0] == INPUT_PREFIX:
        segments[0] = SIGNED_PREFIX
    else:
        segments.insert(0, SIGNED_PREFIX)

    stem, ext = posixpath.splitext(filename)
    if ext.lower() != ".pdf":
        stem, ext = filename, ".pdf"
    return "/".join([*segments, f"{stem}_signed_{sign_job_id}{ext}"])


@dataclass(frozen=True)
class UploadResult:
    """Result of a put.

    Attributes:
        key: Object key in the bucket.
        bucket: Bucket name.
        sha256_digest: Hex digest of the stored bytes.
        size_bytes: Stored size.
        etag: S3 ETag.
    """

    key: str
    bucket: str
    sha256_digest: str
    size_bytes: int
    etag: str


class StorageError(Exception):
    """Base exception for storage operations.

    Attributes:
        message: Human-readable error description.
        bucket: The bucket involved in the operation.
        key: The object key involved (if applicable).
        operation: The operation that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        bucket: str | None = None,
        key: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message
        self.bucket = bucket
        self.key = key
        self.operation = operation
        super().__init__(message)


class ObjectNotFoundError(StorageError):
    """Raised when an object does not exist."""


class BucketNotFoundError(StorageError):
    """Raised when a bucket does not exist."""


class IntegrityError(StorageError):
    """Raised when stored bytes no longer match their recorded digest."""


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class ObjectStoreClient:
    """S3-compatible storage client with SHA-256 integrity metadata.

    Uses synchronous boto3; async callers should run calls in a thread.
    """

    def __init__(
        self,
        endpoint_url: str | None,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_retries: int = 3,
    ) -> None:
        """Initialize the client.

        Args:
            endpoint_url: S3-compatible endpoint (e.g. http://localhost:9000);
                None for AWS defaults.
            access_key: Access key id.
            secret_key: Secret access key.
            region: Region (us-east-1 for MinIO).
            connect_timeout: Connection timeout in seconds.
            read_timeout: Read timeout in seconds.
            max_retries: Attempts for transient failures.
        """
        self._region = region
        config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": max_retries, "mode": "standard"},
            signature_version="s3v4",
        )
        self._client: S3Client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=config,
        )
        logger.debug("Initialized ObjectStoreClient: endpoint=%s, region=%s", endpoint_url, region)

    @classmethod
    def from_settings(cls, settings: S3Settings) -> ObjectStoreClient:
        return cls(
            endpoint_url=settings.endpoint or None,
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            region=settings.region,
        )

    def ensure_bucket(self, bucket: str) -> bool:
        """Create the bucket if it is missing.

        Returns:
            True if it was created, False if it already existed.

        Raises:
            StorageError: If the bucket cannot be checked or created.
        """
        try:
            self._client.head_bucket(Bucket=bucket)
            return False
        except ClientError as e:
            if _error_code(e) not in ("404", "NoSuchBucket"):
                msg = f"Failed to check bucket existence: {e}"
                raise StorageError(msg, bucket=bucket, operation="head_bucket") from e

        try:
            if self._region == "us-east-1":
                self._client.create_bucket(Bucket=bucket)
            else:
                self._client.create_bucket(
                    Bucket=bucket,
                    CreateBucketConfiguration={"LocationConstraint": self._region},
                )
        except ClientError as e:
            msg = f"Failed to create bucket: {e}"
            raise StorageError(msg, bucket=bucket, operation="create_bucket") from e

        logger.info("Created bucket: %s", bucket)
        return True

    def put(
        self,
        bucket: str,
        key: str,
        data: bytes,
        *,
        content_type: str = PDF_CONTENT_TYPE,
    ) -> UploadResult:
        """Store bytes under ``key``, recording their SHA-256 digest.

        Raises:
            BucketNotFoundError: If the bucket does not exist.
            StorageError: If the write fails.
        """
        digest = hashlib.sha256(data).hexdigest()
        try:
            response = self._client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={DIGEST_METADATA_KEY: digest},
            )
        except ClientError as e:
            if _error_code(e) == "NoSuchBucket":
                msg = f"Bucket does not exist: {bucket}"
                raise BucketNotFoundError(msg, bucket=bucket, key=key, operation="put") from e
            msg = f"Upload failed: {e}"
            raise StorageError(msg, bucket=bucket, key=key, operation="put") from e

        logger.debug("Stored %s/%s (%d bytes, sha256=%s...)", bucket, key, len(data), digest[:16])
        return UploadResult(
            key=key,
            bucket=bucket,
            sha256_digest=digest,
            size_bytes=len(data),
            etag=response.get("ETag", ""),
        )

    def get(self, bucket: str, key: str, *, expected_digest: str | None = None) -> bytes:
        """Fetch bytes stored under ``key`` and check their digest.

        The digest recorded at write time is used unless ``expected_digest``
        is given. Objects written without a digest are returned unchecked.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            BucketNotFoundError: If the bucket does not exist.
            IntegrityError: If the bytes do not match the digest.
            StorageError: If the read fails.
        """
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            data = response["Body"].read()
        except ClientError as e:
            code = _error_code(e)
            if code == "NoSuchKey":
                msg = f"Object does not exist: {bucket}/{key}"
                raise ObjectNotFoundError(msg, bucket=bucket, key=key, operation="get") from e
            if code == "NoSuchBucket":
                msg = f"Bucket does not exist: {bucket}"
                raise BucketNotFoundError(msg, bucket=bucket, key=key, operation="get") from e
            msg = f"Download failed: {e}"
            raise StorageError(msg, bucket=bucket, key=key, operation="get") from e

        check = expected_digest or response.get("Metadata", {}).get(DIGEST_METADATA_KEY)
        computed = hashlib.sha256(data).hexdigest()
        if check and computed != check:
            raise IntegrityError(
                f"Content integrity check failed: expected {check[:16]}..., "
                f"got {computed[:16]}...",
                bucket=bucket,
                key=key,
                operation="get",
            )

        logger.debug("Fetched %s/%s (%d bytes)", bucket, key, len(data))
        return data

    def exists(self, bucket: str, key: str) -> bool:
        """Check whether an object exists.

        Raises:
            StorageError: If the check fails for a reason other than not found.
        """
        try:
            self._client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in ("404", "NoSuchKey"):
                return False
            msg = f"Existence check failed: {e}"
            raise StorageError(msg, bucket=bucket, key=key, operation="exists") from e
        return True
