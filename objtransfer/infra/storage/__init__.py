"""Object storage abstraction layer.

This module provides a protocol-based abstraction for object storage backends,
enabling support for S3, MinIO, and other S3-compatible services.
"""

from .client import (
    INSTRUCTION_SUFFIX,
    CompletedPart,
    GetObjectResult,
    MultipartUpload,
    MultipartUploadListing,
    MultipartUploadSummary,
    ObjectHead,
    ObjectListing,
    ObjectStorageClient,
    ObjectSummary,
    ServerSideEncryption,
    StorageError,
    StorageServiceError,
    StorageTransportError,
    TransportFailureReason,
    UploadOptions,
    UploadResult,
)

__all__ = [
    "INSTRUCTION_SUFFIX",
    "CompletedPart",
    "GetObjectResult",
    "MultipartUpload",
    "MultipartUploadListing",
    "MultipartUploadSummary",
    "ObjectHead",
    "ObjectListing",
    "ObjectStorageClient",
    "ObjectSummary",
    "ServerSideEncryption",
    "StorageError",
    "StorageServiceError",
    "StorageTransportError",
    "TransportFailureReason",
    "UploadOptions",
    "UploadResult",
]
