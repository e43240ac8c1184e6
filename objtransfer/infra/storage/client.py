"""Storage client protocol and data types.

This module defines the abstract interface the transfer engine consumes:
single-shot puts and ranged gets, the multipart upload lifecycle, listings
and deletes. Failures surface through the ``StorageError`` taxonomy so that
callers can tell service answers apart from transport breakage.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO, Mapping, Protocol, Sequence

# Suffix of the sidecar objects written by client-side encrypting clients.
INSTRUCTION_SUFFIX = ".instruction"


class StorageError(RuntimeError):
    """Raised when object storage operations fail."""


class StorageServiceError(StorageError):
    """The storage service answered with an error status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class TransportFailureReason(str, enum.Enum):
    CONNECT_FAILURE = "connect_failure"
    CONNECTION_CLOSED = "connection_closed"
    CONNECTION_RESET = "connection_reset"
    KEEP_ALIVE_FAILURE = "keep_alive_failure"
    NAME_RESOLUTION_FAILURE = "name_resolution_failure"
    RECEIVE_FAILURE = "receive_failure"
    OTHER = "other"


class StorageTransportError(StorageError):
    """The request never produced a service answer (network level failure)."""

    def __init__(
        self,
        message: str,
        *,
        reason: TransportFailureReason = TransportFailureReason.OTHER,
    ) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True, slots=True)
class ServerSideEncryption:
    """Server-side encryption parameters.

    ``method`` selects service-managed encryption (``AES256`` or ``aws:kms``).
    The ``customer_*`` fields carry SSE-C key material, which has to be sent
    with every part upload and every read of the object.
    """

    method: str | None = None
    kms_key_id: str | None = None
    customer_algorithm: str | None = None
    customer_key: str | None = None
    customer_key_md5: str | None = None

    @property
    def uses_customer_key(self) -> bool:
        return bool(self.customer_algorithm and self.customer_key)


@dataclass(frozen=True, slots=True)
class UploadOptions:
    """Object attributes applied when an object (or multipart upload) is created."""

    content_type: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)
    acl: str | None = None
    storage_class: str | None = None
    encryption: ServerSideEncryption | None = None
    tags: Mapping[str, str] = field(default_factory=dict)
    checksum_algorithm: str | None = None
    object_lock_mode: str | None = None
    object_lock_retain_until: datetime | None = None
    object_lock_legal_hold: bool | None = None


@dataclass(frozen=True, slots=True)
class CompletedPart:
    """Represents a completed part in a multipart upload."""

    part_number: int
    etag: str
    checksum: str | None = None
    checksum_algorithm: str | None = None


@dataclass(frozen=True, slots=True)
class MultipartUpload:
    """Result of initiating a multipart upload."""

    upload_id: str
    bucket: str
    object_key: str


@dataclass(frozen=True, slots=True)
class UploadResult:
    """Identity of a stored object after a put or a completed multipart upload."""

    bucket: str
    object_key: str
    etag: str | None
    version_id: str | None = None


@dataclass(frozen=True, slots=True)
class ObjectHead:
    """Metadata from a HEAD object request."""

    size_bytes: int
    etag: str | None
    content_type: str | None
    last_modified: datetime | None = None


@dataclass(slots=True)
class GetObjectResult:
    """An open response to a GET object request.

    ``body`` must be closed by whoever consumes it.
    """

    body: BinaryIO
    etag: str | None
    content_length: int | None
    content_type: str | None = None
    content_range: str | None = None
    last_modified: datetime | None = None


@dataclass(frozen=True, slots=True)
class ObjectSummary:
    key: str
    size: int
    last_modified: datetime | None
    etag: str | None = None


@dataclass(frozen=True, slots=True)
class ObjectListing:
    objects: list[ObjectSummary]
    next_token: str | None = None


@dataclass(frozen=True, slots=True)
class MultipartUploadSummary:
    object_key: str
    upload_id: str
    initiated: datetime | None


@dataclass(frozen=True, slots=True)
class MultipartUploadListing:
    uploads: list[MultipartUploadSummary]
    next_key_marker: str | None = None
    next_upload_id_marker: str | None = None

    @property
    def is_truncated(self) -> bool:
        return self.next_key_marker is not None or self.next_upload_id_marker is not None


class ObjectStorageClient(Protocol):
    """Protocol defining the interface for object storage backends.

    Implementations are synchronous and thread-safe; the transfer engine
    drives them from worker threads. ``max_error_retries`` bounds the
    download retry loop and ``is_encrypting`` marks clients that encrypt on
    the client side (parts must then be sent in order).
    """

    max_error_retries: int
    is_encrypting: bool

    def put_object(
        self,
        *,
        bucket: str,
        object_key: str,
        body: BinaryIO,
        content_length: int | None,
        options: UploadOptions,
    ) -> UploadResult:
        """Store ``body`` as a single object.

        Raises:
            StorageError: If the operation fails.
        """
        ...

    def get_object(
        self,
        *,
        bucket: str,
        object_key: str,
        byte_range: str | None = None,
        version_id: str | None = None,
        encryption: ServerSideEncryption | None = None,
        modified_since: datetime | None = None,
        unmodified_since: datetime | None = None,
    ) -> GetObjectResult:
        """Open the object (or ``byte_range`` of it, e.g. ``bytes=10-``) for reading.

        Errors raised while reading ``GetObjectResult.body`` belong to the
        same taxonomy as errors raised by the call itself.

        Raises:
            StorageError: If the operation fails.
        """
        ...

    def head_object(self, *, bucket: str, object_key: str) -> ObjectHead:
        """Get object metadata without downloading the content.

        Raises:
            StorageError: If the object doesn't exist or operation fails.
        """
        ...

    def init_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        options: UploadOptions,
    ) -> MultipartUpload:
        """Initialize a multipart upload session.

        Args:
            bucket: Target bucket name.
            object_key: Object key (path) in the bucket.
            options: Attributes of the object that completion will create.

        Returns:
            MultipartUpload containing the upload_id for subsequent operations.

        Raises:
            StorageError: If the operation fails.
        """
        ...

    def upload_part(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        part_number: int,
        body: BinaryIO,
        content_length: int,
        is_last_part: bool = False,
        encryption: ServerSideEncryption | None = None,
        checksum_algorithm: str | None = None,
    ) -> CompletedPart:
        """Upload one part of a multipart upload.

        Args:
            upload_id: Multipart upload ID from init_multipart_upload.
            part_number: Part number (1-based, max 10000).
            body: Readable stream positioned at the start of the part.
            content_length: Exact number of bytes to send from ``body``.
            is_last_part: Whether no further part follows this one.

        Raises:
            StorageError: If the operation fails.
        """
        ...

    def complete_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        parts: Sequence[CompletedPart],
    ) -> UploadResult:
        """Complete a multipart upload by combining all parts.

        Raises:
            StorageError: If the operation fails.
        """
        ...

    def abort_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
    ) -> None:
        """Abort a multipart upload and clean up uploaded parts.

        Raises:
            StorageError: If the operation fails.
        """
        ...

    def list_multipart_uploads(
        self,
        *,
        bucket: str,
        key_marker: str | None = None,
        upload_id_marker: str | None = None,
    ) -> MultipartUploadListing:
        """List one page of in-progress multipart uploads."""
        ...

    def list_objects(
        self,
        *,
        bucket: str,
        prefix: str | None = None,
        marker: str | None = None,
    ) -> ObjectListing:
        """List one page of objects with the legacy (marker based) API."""
        ...

    def list_objects_v2(
        self,
        *,
        bucket: str,
        prefix: str | None = None,
        continuation_token: str | None = None,
    ) -> ObjectListing:
        """List one page of objects with the continuation-token API."""
        ...

    def delete_object(self, *, bucket: str, object_key: str) -> None:
        """Delete an object from storage.

        Raises:
            StorageError: If the operation fails.
        """
        ...
