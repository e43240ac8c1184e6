"""S3-compatible storage client implementation.

This module provides an S3-compatible storage client that works with
AWS S3, MinIO, and other S3-compatible object storage services.

Dependencies:
    - boto3
    - botocore
"""

from __future__ import annotations

import socket
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, BinaryIO, Iterator, Sequence
from urllib.parse import urlencode

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    HTTPClientError,
    IncompleteReadError,
    ReadTimeoutError,
    ResponseStreamingError,
)
from urllib3.exceptions import ProtocolError

from objtransfer.common.cancellation import TransferCancelledError
from objtransfer.infra.storage.client import (
    CompletedPart,
    GetObjectResult,
    MultipartUpload,
    MultipartUploadListing,
    MultipartUploadSummary,
    ObjectHead,
    ObjectListing,
    ObjectSummary,
    ServerSideEncryption,
    StorageError,
    StorageServiceError,
    StorageTransportError,
    TransportFailureReason,
    UploadOptions,
    UploadResult,
)

if TYPE_CHECKING:
    from objtransfer.common.config import Settings

_CHECKSUM_FIELDS = ("CRC32", "CRC32C", "SHA1", "SHA256")


def _transport_reason(exc: BaseException) -> TransportFailureReason | None:
    """Classify connection-level failures; ``None`` means not a transport error."""
    if isinstance(exc, EndpointConnectionError):
        cause = getattr(exc, "kwargs", {}).get("error")
        if isinstance(cause, socket.gaierror):
            return TransportFailureReason.NAME_RESOLUTION_FAILURE
        return TransportFailureReason.CONNECT_FAILURE
    if isinstance(exc, ConnectionClosedError):
        return TransportFailureReason.CONNECTION_CLOSED
    if isinstance(exc, (ReadTimeoutError, IncompleteReadError, ResponseStreamingError)):
        return TransportFailureReason.RECEIVE_FAILURE
    if isinstance(exc, ProtocolError):
        # urllib3 reports a pooled connection dropped by the server as
        # ProtocolError("Connection aborted.", <cause>)
        if any(isinstance(arg, ConnectionResetError) for arg in exc.args):
            return TransportFailureReason.CONNECTION_RESET
        return TransportFailureReason.KEEP_ALIVE_FAILURE
    if isinstance(exc, ConnectionResetError):
        return TransportFailureReason.CONNECTION_RESET
    if isinstance(exc, (BrokenPipeError, ConnectionAbortedError)):
        return TransportFailureReason.CONNECTION_CLOSED
    if isinstance(exc, socket.gaierror):
        return TransportFailureReason.NAME_RESOLUTION_FAILURE
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return TransportFailureReason.RECEIVE_FAILURE
    if isinstance(exc, HTTPClientError):
        return TransportFailureReason.OTHER
    return None


def translate_storage_error(action: str, exc: Exception) -> StorageError:
    """Map a boto3/botocore/socket failure onto the ``StorageError`` taxonomy."""
    if isinstance(exc, ClientError):
        response = exc.response or {}
        error = response.get("Error", {})
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return StorageServiceError(
            f"Failed to {action}: {exc}",
            status_code=int(status) if status is not None else None,
            error_code=error.get("Code"),
        )
    reason = _transport_reason(exc)
    if reason is not None:
        return StorageTransportError(f"Failed to {action}: {exc}", reason=reason)
    return StorageError(f"Failed to {action}: {exc}")


@contextmanager
def _storage_call(action: str) -> Iterator[None]:
    try:
        yield
    except (StorageError, TransferCancelledError):
        raise
    except Exception as exc:
        raise translate_storage_error(action, exc) from exc


class _ResponseBody:
    """Wraps a botocore ``StreamingBody`` so read errors are translated too."""

    def __init__(self, raw: Any) -> None:
        self._raw = raw
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def readable(self) -> bool:
        return True

    def read(self, amt: int | None = None) -> bytes:
        with _storage_call("read object body"):
            return self._raw.read(amt)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._raw.close()

    def __enter__(self) -> "_ResponseBody":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _encryption_params(
    encryption: ServerSideEncryption | None, *, include_managed: bool
) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if encryption is None:
        return params
    if include_managed and encryption.method:
        params["ServerSideEncryption"] = encryption.method
        if encryption.kms_key_id:
            params["SSEKMSKeyId"] = encryption.kms_key_id
    if encryption.uses_customer_key:
        params["SSECustomerAlgorithm"] = encryption.customer_algorithm
        params["SSECustomerKey"] = encryption.customer_key
        if encryption.customer_key_md5:
            params["SSECustomerKeyMD5"] = encryption.customer_key_md5
    return params


def _object_params(options: UploadOptions) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if options.content_type:
        params["ContentType"] = options.content_type
    if options.metadata:
        params["Metadata"] = dict(options.metadata)
    if options.acl:
        params["ACL"] = options.acl
    if options.storage_class:
        params["StorageClass"] = options.storage_class
    if options.tags:
        params["Tagging"] = urlencode(dict(options.tags))
    if options.checksum_algorithm:
        params["ChecksumAlgorithm"] = options.checksum_algorithm
    if options.object_lock_mode:
        params["ObjectLockMode"] = options.object_lock_mode
    if options.object_lock_retain_until is not None:
        params["ObjectLockRetainUntilDate"] = options.object_lock_retain_until
    if options.object_lock_legal_hold is not None:
        params["ObjectLockLegalHoldStatus"] = (
            "ON" if options.object_lock_legal_hold else "OFF"
        )
    params.update(_encryption_params(options.encryption, include_managed=True))
    return params


def _extract_checksum(response: dict[str, Any]) -> tuple[str | None, str | None]:
    for name in _CHECKSUM_FIELDS:
        value = response.get(f"Checksum{name}")
        if value:
            return value, name
    return None, None


def _object_summaries(contents: Sequence[dict[str, Any]]) -> list[ObjectSummary]:
    return [
        ObjectSummary(
            key=item["Key"],
            size=int(item.get("Size") or 0),
            last_modified=item.get("LastModified"),
            etag=item.get("ETag"),
        )
        for item in contents
    ]


class S3StorageClient:
    """S3-compatible object storage client.

    Supports AWS S3, MinIO, and other S3-compatible services.
    Uses boto3 for all storage operations; botocore performs the per-request
    retries, ``max_error_retries`` only bounds the download resume loop.
    """

    is_encrypting = False

    def __init__(self, *, settings: "Settings") -> None:
        """Initialize the S3 client with configuration from settings.

        Args:
            settings: Application settings containing S3 configuration.
        """
        self._settings = settings
        self._client = self._build_client(settings)
        self.max_error_retries = int(settings.S3_MAX_ATTEMPTS)

    @staticmethod
    def _build_client(settings: "Settings") -> Any:
        """Create a boto3 S3 client from settings."""
        addressing_style = (settings.S3_ADDRESSING_STYLE or "auto").strip().lower()
        config = Config(
            s3={"addressing_style": addressing_style},
            retries={"max_attempts": int(settings.S3_MAX_ATTEMPTS), "mode": "standard"},
        )

        return boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            region_name=settings.S3_REGION,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            use_ssl=bool(settings.S3_USE_SSL),
            config=config,
        )

    def put_object(
        self,
        *,
        bucket: str,
        object_key: str,
        body: BinaryIO,
        content_length: int | None,
        options: UploadOptions,
    ) -> UploadResult:
        """Store ``body`` as a single object."""
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key, "Body": body}
        if content_length is not None:
            params["ContentLength"] = int(content_length)
        params.update(_object_params(options))

        with _storage_call("put object"):
            response = self._client.put_object(**params)

        return UploadResult(
            bucket=bucket,
            object_key=object_key,
            etag=response.get("ETag"),
            version_id=response.get("VersionId"),
        )

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
        """Open the object for streaming reads."""
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key}
        if byte_range:
            params["Range"] = byte_range
        if version_id:
            params["VersionId"] = version_id
        if modified_since is not None:
            params["IfModifiedSince"] = modified_since
        if unmodified_since is not None:
            params["IfUnmodifiedSince"] = unmodified_since
        params.update(_encryption_params(encryption, include_managed=False))

        with _storage_call("get object"):
            response = self._client.get_object(**params)

        length = response.get("ContentLength")
        return GetObjectResult(
            body=_ResponseBody(response["Body"]),  # type: ignore[arg-type]
            etag=response.get("ETag"),
            content_length=int(length) if length is not None else None,
            content_type=response.get("ContentType"),
            content_range=response.get("ContentRange"),
            last_modified=response.get("LastModified"),
        )

    def head_object(self, *, bucket: str, object_key: str) -> ObjectHead:
        """Get object metadata without downloading the content."""
        with _storage_call("get object metadata"):
            response = self._client.head_object(Bucket=bucket, Key=object_key)

        size = response.get("ContentLength")
        return ObjectHead(
            size_bytes=int(size) if size is not None else 0,
            etag=response.get("ETag"),
            content_type=response.get("ContentType"),
            last_modified=response.get("LastModified"),
        )

    def init_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        options: UploadOptions,
    ) -> MultipartUpload:
        """Initialize a multipart upload session."""
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key}
        params.update(_object_params(options))

        with _storage_call("create multipart upload"):
            response = self._client.create_multipart_upload(**params)

        upload_id = response.get("UploadId")
        if not upload_id:
            raise StorageError("S3 response missing UploadId")

        return MultipartUpload(
            upload_id=str(upload_id),
            bucket=bucket,
            object_key=object_key,
        )

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
        """Upload one part; ``is_last_part`` only matters to encrypting clients."""
        params: dict[str, Any] = {
            "Bucket": bucket,
            "Key": object_key,
            "UploadId": upload_id,
            "PartNumber": int(part_number),
            "Body": body,
            "ContentLength": int(content_length),
        }
        if checksum_algorithm:
            params["ChecksumAlgorithm"] = checksum_algorithm
        params.update(_encryption_params(encryption, include_managed=False))

        with _storage_call(f"upload part {part_number}"):
            response = self._client.upload_part(**params)

        etag = response.get("ETag")
        if not etag:
            raise StorageError(f"S3 response missing ETag for part {part_number}")
        checksum, algorithm = _extract_checksum(response)
        return CompletedPart(
            part_number=int(part_number),
            etag=str(etag),
            checksum=checksum,
            checksum_algorithm=algorithm,
        )

    def complete_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
        parts: Sequence[CompletedPart],
    ) -> UploadResult:
        """Complete a multipart upload by combining all parts."""
        payload_parts = []
        for part in sorted(parts, key=lambda p: p.part_number):
            entry: dict[str, Any] = {
                "ETag": part.etag,
                "PartNumber": int(part.part_number),
            }
            if part.checksum and part.checksum_algorithm:
                entry[f"Checksum{part.checksum_algorithm}"] = part.checksum
            payload_parts.append(entry)

        with _storage_call("complete multipart upload"):
            response = self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=object_key,
                UploadId=upload_id,
                MultipartUpload={"Parts": payload_parts},
            )

        return UploadResult(
            bucket=bucket,
            object_key=object_key,
            etag=response.get("ETag"),
            version_id=response.get("VersionId"),
        )

    def abort_multipart_upload(
        self,
        *,
        bucket: str,
        object_key: str,
        upload_id: str,
    ) -> None:
        """Abort a multipart upload and clean up uploaded parts."""
        with _storage_call("abort multipart upload"):
            self._client.abort_multipart_upload(
                Bucket=bucket,
                Key=object_key,
                UploadId=upload_id,
            )

    def list_multipart_uploads(
        self,
        *,
        bucket: str,
        key_marker: str | None = None,
        upload_id_marker: str | None = None,
    ) -> MultipartUploadListing:
        params: dict[str, Any] = {"Bucket": bucket}
        if key_marker:
            params["KeyMarker"] = key_marker
        if upload_id_marker:
            params["UploadIdMarker"] = upload_id_marker

        with _storage_call("list multipart uploads"):
            response = self._client.list_multipart_uploads(**params)

        uploads = [
            MultipartUploadSummary(
                object_key=item["Key"],
                upload_id=item["UploadId"],
                initiated=item.get("Initiated"),
            )
            for item in response.get("Uploads", [])
        ]
        if not response.get("IsTruncated"):
            return MultipartUploadListing(uploads=uploads)
        return MultipartUploadListing(
            uploads=uploads,
            next_key_marker=response.get("NextKeyMarker"),
            next_upload_id_marker=response.get("NextUploadIdMarker"),
        )

    def list_objects(
        self,
        *,
        bucket: str,
        prefix: str | None = None,
        marker: str | None = None,
    ) -> ObjectListing:
        params: dict[str, Any] = {"Bucket": bucket}
        if prefix:
            params["Prefix"] = prefix
        if marker:
            params["Marker"] = marker

        with _storage_call("list objects"):
            response = self._client.list_objects(**params)

        objects = _object_summaries(response.get("Contents", []))
        next_token = None
        if response.get("IsTruncated"):
            # NextMarker is only returned when a delimiter was requested
            next_token = response.get("NextMarker") or (
                objects[-1].key if objects else None
            )
        return ObjectListing(objects=objects, next_token=next_token)

    def list_objects_v2(
        self,
        *,
        bucket: str,
        prefix: str | None = None,
        continuation_token: str | None = None,
    ) -> ObjectListing:
        params: dict[str, Any] = {"Bucket": bucket}
        if prefix:
            params["Prefix"] = prefix
        if continuation_token:
            params["ContinuationToken"] = continuation_token

        with _storage_call("list objects"):
            response = self._client.list_objects_v2(**params)

        next_token = (
            response.get("NextContinuationToken") if response.get("IsTruncated") else None
        )
        return ObjectListing(
            objects=_object_summaries(response.get("Contents", [])),
            next_token=next_token,
        )

    def delete_object(self, *, bucket: str, object_key: str) -> None:
        """Delete an object from storage."""
        with _storage_call("delete object"):
            self._client.delete_object(Bucket=bucket, Key=object_key)
