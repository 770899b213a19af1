"""Object store integration for message attachments.

This module provides an S3-compatible client wrapper and the async
AttachmentStore used by the message engine:

    client = ObjectStoreClient.from_settings(settings.s3)
    store = AttachmentStore(client, bucket=settings.s3.bucket,
                            public_base_url=settings.s3.public_url_base)
    url = await store.upload("user-1/3f2a.png", data, content_type="image/png")

Uploads record a SHA-256 digest in object metadata so a stored attachment
can be checked later.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from memberportal.services.errors import UploadError

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client

    from memberportal.core.config import S3Settings

logger = logging.getLogger(__name__)

# Content types accepted by the attachment picker.
ALLOWED_ATTACHMENT_TYPES = frozenset({"image/png", "image/gif", "image/jpeg"})


@dataclass(frozen=True)
class UploadResult:
    """Result of an upload operation.

    Attributes:
        key: The object key in the bucket.
        bucket: The bucket name.
        sha256_digest: SHA-256 hex digest of the uploaded content.
        size_bytes: Size of the uploaded content in bytes.
        etag: S3 ETag (usually MD5 of content, quoted).
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


class BucketNotFoundError(StorageError):
    """Raised when a bucket does not exist."""


class ObjectStoreClient:
    """S3-compatible object storage client.

    The client uses synchronous boto3; AttachmentStore moves calls onto a
    worker thread so they do not block the event loop.
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
        """Initialize the object store client.

        Args:
            endpoint_url: S3-compatible endpoint URL (None for AWS defaults).
            access_key: S3 access key ID.
            secret_key: S3 secret access key.
            region: AWS region (use us-east-1 for MinIO).
            connect_timeout: Connection timeout in seconds.
            read_timeout: Read timeout in seconds.
            max_retries: Maximum retry attempts for transient failures.
        """
        self._endpoint_url = endpoint_url
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

        logger.debug(
            "Initialized ObjectStoreClient for endpoint=%s region=%s",
            endpoint_url,
            region,
        )

    @classmethod
    def from_settings(cls, settings: S3Settings) -> ObjectStoreClient:
        """Create client from S3Settings configuration."""
        return cls(
            endpoint_url=settings.endpoint,
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            region=settings.region,
        )

    def ensure_bucket(self, bucket: str) -> bool:
        """Ensure a bucket exists, creating it if necessary.

        Returns:
            True if bucket was created, False if it already existed.

        Raises:
            StorageError: If bucket creation fails.
        """
        try:
            self._client.head_bucket(Bucket=bucket)
            return False
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code not in ("404", "NoSuchBucket"):
                raise StorageError(
                    f"Failed to check bucket existence: {e}",
                    bucket=bucket,
                    operation="head_bucket",
                ) from e

        try:
            # us-east-1 rejects an explicit LocationConstraint
            if self._region == "us-east-1":
                self._client.create_bucket(Bucket=bucket)
            else:
                self._client.create_bucket(
                    Bucket=bucket,
                    CreateBucketConfiguration={"LocationConstraint": self._region},
                )
        except ClientError as e:
            raise StorageError(
                f"Failed to create bucket: {e}",
                bucket=bucket,
                operation="create_bucket",
            ) from e

        logger.info("Created bucket: %s", bucket)
        return True

    def upload(
        self,
        bucket: str,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
    ) -> UploadResult:
        """Upload content, recording its SHA-256 digest in object metadata.

        Raises:
            BucketNotFoundError: If bucket does not exist.
            StorageError: If upload fails.
        """
        sha256_digest = hashlib.sha256(data).hexdigest()

        try:
            response = self._client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={"sha256-digest": sha256_digest},
            )
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code == "NoSuchBucket":
                raise BucketNotFoundError(
                    f"Bucket does not exist: {bucket}",
                    bucket=bucket,
                    key=key,
                    operation="upload",
                ) from e
            raise StorageError(
                f"Upload failed: {e}",
                bucket=bucket,
                key=key,
                operation="upload",
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Upload failed: {e}",
                bucket=bucket,
                key=key,
                operation="upload",
            ) from e

        logger.debug(
            "Uploaded %s/%s (%d bytes, sha256=%s)",
            bucket,
            key,
            len(data),
            sha256_digest[:16] + "...",
        )
        return UploadResult(
            key=key,
            bucket=bucket,
            sha256_digest=sha256_digest,
            size_bytes=len(data),
            etag=response.get("ETag", ""),
        )


class ObjectStore(Protocol):
    """Async attachment upload returning a durable URL."""

    async def upload(self, path: str, data: bytes, content_type: str) -> str: ...


class AttachmentStore:
    """ObjectStore over ObjectStoreClient with public URLs.

    Public URLs take the form ``<public_base_url>/<bucket>/<quoted key>``.
    """

    def __init__(
        self,
        client: ObjectStoreClient,
        *,
        bucket: str,
        public_base_url: str,
        allowed_types: frozenset[str] = ALLOWED_ATTACHMENT_TYPES,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._public_base_url = public_base_url.rstrip("/")
        self._allowed_types = allowed_types

    @property
    def bucket(self) -> str:
        return self._bucket

    def public_url(self, key: str) -> str:
        return f"{self._public_base_url}/{self._bucket}/{quote(key)}"

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Upload an attachment and return its public URL.

        Raises:
            UploadError: If the type is not allowed or the upload fails.
        """
        if self._allowed_types and content_type not in self._allowed_types:
            msg = f"Attachment type not allowed: {content_type}"
            raise UploadError(msg, operation="upload")

        try:
            await asyncio.to_thread(
                self._client.upload,
                self._bucket,
                path,
                data,
                content_type=content_type,
            )
        except StorageError as e:
            raise UploadError(e.message, operation="upload") from e

        return self.public_url(path)
