"""High level entry point for moving files and streams to and from storage.

``TransferUtility`` validates each request before any network call, picks
the command that fits it (single PUT or multipart upload, resumable
download, directory fan-out) and runs that command under a cancellation
token. Progress observers registered on a request are drained before the
call returns, so no callback fires after the awaited method completes.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, BinaryIO, Callable, TypeVar

from objtransfer.common.cancellation import CancellationToken, TransferCancelledError
from objtransfer.infra.observability.metrics import TRANSFERS
from objtransfer.infra.storage.client import ObjectStorageClient, UploadResult
from objtransfer.transfer.commands.abort_uploads import AbortMultipartUploadsCommand
from objtransfer.transfer.commands.download import DownloadCommand
from objtransfer.transfer.commands.download_directory import DownloadDirectoryCommand
from objtransfer.transfer.commands.open_stream import OpenStreamCommand
from objtransfer.transfer.commands.upload import (
    create_upload_command,
    resolve_content_length,
)
from objtransfer.transfer.commands.upload_directory import UploadDirectoryCommand
from objtransfer.transfer.config import TransferConfig
from objtransfer.transfer.errors import TransferValidationError
from objtransfer.transfer.progress import ProgressDispatcher
from objtransfer.transfer.requests import (
    DownloadDirectoryRequest,
    DownloadRequest,
    OpenStreamRequest,
    PathLike,
    UploadDirectoryRequest,
    UploadRequest,
)

if TYPE_CHECKING:
    from objtransfer.common.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

BLOCKED_ARN_SERVICES = frozenset({"s3-object-lambda"})


def check_bucket(bucket: str | None, operation: str) -> str:
    """Reject a missing bucket name and ARNs of services transfers cannot use."""
    if not bucket or not bucket.strip():
        raise TransferValidationError("bucket", "a bucket name is required")
    if bucket.startswith("arn:"):
        fields = bucket.split(":", 5)
        if len(fields) > 2 and fields[2] in BLOCKED_ARN_SERVICES:
            raise TransferValidationError(
                "bucket", f"`{operation}` does not support S3 Object Lambda resources"
            )
    return bucket


def _require(value: Any, field: str, message: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise TransferValidationError(field, message)


def validate_upload_request(request: UploadRequest) -> None:
    check_bucket(request.bucket, "upload")
    path = os.fspath(request.file_path) if request.file_path is not None else ""
    if not path and request.stream is None:
        raise TransferValidationError(
            "file_path",
            "specify either a file_path or a stream to upload an object",
        )
    if path and request.stream is not None:
        raise TransferValidationError(
            "stream", "file_path and stream are mutually exclusive"
        )
    if not request.key:
        if not path:
            raise TransferValidationError(
                "key", "a key is required when uploading from a stream"
            )
        request.key = os.path.basename(path)
    if path and not os.path.isfile(path):
        raise TransferValidationError("file_path", f"the file {path!r} does not exist")
    if request.part_size is not None and request.part_size <= 0:
        raise TransferValidationError("part_size", "part size must be positive")
    if request.content_length is not None and request.content_length < 0:
        raise TransferValidationError(
            "content_length", "content length must not be negative"
        )


def validate_download_request(request: DownloadRequest) -> None:
    check_bucket(request.bucket, "download")
    _require(request.key, "key", "a key is required")
    _require(request.file_path, "file_path", "a destination file_path is required")


def validate_open_stream_request(request: OpenStreamRequest) -> None:
    check_bucket(request.bucket, "open_stream")
    _require(request.key, "key", "a key is required")


def validate_upload_directory_request(request: UploadDirectoryRequest) -> None:
    check_bucket(request.bucket, "upload_directory")
    _require(request.directory, "directory", "a directory is required")
    if not os.path.isdir(request.directory):
        raise TransferValidationError(
            "directory",
            f"the directory {os.fspath(request.directory)!r} does not exist",
        )


def validate_download_directory_request(request: DownloadDirectoryRequest) -> None:
    check_bucket(request.bucket, "download_directory")
    _require(request.s3_directory, "s3_directory", "an s3_directory is required")
    _require(
        request.local_directory, "local_directory", "a local_directory is required"
    )


class TransferUtility:
    """Facade over the transfer commands.

    One instance shares its storage client and ``TransferConfig`` with every
    command it starts; each method accepts a per-call ``config`` override and
    a ``cancel`` token.
    """

    def __init__(
        self, client: ObjectStorageClient, config: TransferConfig | None = None
    ) -> None:
        self._client = client
        self._config = config or TransferConfig()

    @classmethod
    def from_settings(cls, settings: "Settings | None" = None) -> "TransferUtility":
        from objtransfer.common.config import get_settings
        from objtransfer.infra.storage.s3_client import S3StorageClient

        settings = settings or get_settings()
        return cls(
            S3StorageClient(settings=settings), TransferConfig.from_settings(settings)
        )

    @property
    def client(self) -> ObjectStorageClient:
        return self._client

    @property
    def config(self) -> TransferConfig:
        return self._config

    async def upload(
        self,
        request: UploadRequest,
        *,
        cancel: CancellationToken | None = None,
        config: TransferConfig | None = None,
    ) -> UploadResult:
        validate_upload_request(request)
        token = cancel or CancellationToken()
        token.raise_if_cancelled()
        content_length = await asyncio.to_thread(resolve_content_length, request)

        def build(dispatcher: ProgressDispatcher) -> Awaitable[UploadResult]:
            command = create_upload_command(
                self._client,
                config or self._config,
                request,
                content_length=content_length,
                token=token,
                dispatcher=dispatcher,
            )
            return command.execute()

        return await self._run("upload", build)

    async def upload_file(
        self,
        file_path: PathLike,
        bucket: str,
        key: str | None = None,
        *,
        cancel: CancellationToken | None = None,
        config: TransferConfig | None = None,
        **options: Any,
    ) -> UploadResult:
        request = UploadRequest(bucket=bucket, key=key, file_path=file_path, **options)
        return await self.upload(request, cancel=cancel, config=config)

    async def upload_stream(
        self,
        stream: BinaryIO,
        bucket: str,
        key: str,
        *,
        cancel: CancellationToken | None = None,
        config: TransferConfig | None = None,
        **options: Any,
    ) -> UploadResult:
        request = UploadRequest(bucket=bucket, key=key, stream=stream, **options)
        return await self.upload(request, cancel=cancel, config=config)

    async def download(
        self,
        request: DownloadRequest,
        *,
        cancel: CancellationToken | None = None,
        config: TransferConfig | None = None,
    ) -> None:
        validate_download_request(request)
        token = cancel or CancellationToken()

        def build(dispatcher: ProgressDispatcher) -> Awaitable[None]:
            return DownloadCommand(
                self._client,
                config or self._config,
                request,
                token=token,
                dispatcher=dispatcher,
            ).execute()

        await self._run("download", build)

    async def download_file(
        self,
        bucket: str,
        key: str,
        file_path: PathLike,
        *,
        cancel: CancellationToken | None = None,
        config: TransferConfig | None = None,
        **options: Any,
    ) -> None:
        request = DownloadRequest(
            bucket=bucket, key=key, file_path=file_path, **options
        )
        await self.download(request, cancel=cancel, config=config)

    async def open_stream(
        self,
        request: OpenStreamRequest,
        *,
        cancel: CancellationToken | None = None,
        config: TransferConfig | None = None,
    ) -> BinaryIO:
        """Open the object body for reading; closing it is up to the caller."""
        validate_open_stream_request(request)
        token = cancel or CancellationToken()

        def build(dispatcher: ProgressDispatcher) -> Awaitable[BinaryIO]:
            return OpenStreamCommand(
                self._client,
                config or self._config,
                request,
                token=token,
                dispatcher=dispatcher,
            ).execute()

        return await self._run("open_stream", build)

    async def upload_directory(
        self,
        request: UploadDirectoryRequest,
        *,
        cancel: CancellationToken | None = None,
        config: TransferConfig | None = None,
    ) -> list[UploadResult]:
        validate_upload_directory_request(request)
        token = cancel or CancellationToken()

        def build(dispatcher: ProgressDispatcher) -> Awaitable[list[UploadResult]]:
            return UploadDirectoryCommand(
                self._client,
                config or self._config,
                request,
                token=token,
                dispatcher=dispatcher,
            ).execute()

        return await self._run("upload_directory", build)

    async def download_directory(
        self,
        request: DownloadDirectoryRequest,
        *,
        cancel: CancellationToken | None = None,
        config: TransferConfig | None = None,
    ) -> int:
        """Download every object below the prefix; returns the object count."""
        validate_download_directory_request(request)
        token = cancel or CancellationToken()

        def build(dispatcher: ProgressDispatcher) -> Awaitable[int]:
            return DownloadDirectoryCommand(
                self._client,
                config or self._config,
                request,
                token=token,
                dispatcher=dispatcher,
            ).execute()

        return await self._run("download_directory", build)

    async def abort_multipart_uploads(
        self,
        bucket: str,
        initiated_before: datetime,
        *,
        cancel: CancellationToken | None = None,
        config: TransferConfig | None = None,
    ) -> int:
        """Abort multipart uploads started before ``initiated_before``."""
        check_bucket(bucket, "abort_multipart_uploads")
        if initiated_before is None:
            raise TransferValidationError(
                "initiated_before", "a cutoff datetime is required"
            )
        token = cancel or CancellationToken()

        def build(dispatcher: ProgressDispatcher) -> Awaitable[int]:
            return AbortMultipartUploadsCommand(
                self._client,
                config or self._config,
                bucket,
                initiated_before,
                token=token,
                dispatcher=dispatcher,
            ).execute()

        return await self._run("abort_multipart_uploads", build)

    async def _run(
        self, operation: str, build: Callable[[ProgressDispatcher], Awaitable[T]]
    ) -> T:
        dispatcher = ProgressDispatcher()
        try:
            result = await build(dispatcher)
        except (TransferCancelledError, asyncio.CancelledError):
            TRANSFERS.labels(operation=operation, outcome="cancelled").inc()
            logger.info("transfer_cancelled operation=%s", operation)
            raise
        except Exception as exc:
            TRANSFERS.labels(operation=operation, outcome="failed").inc()
            logger.error(
                "transfer_failed operation=%s error_type=%s",
                operation,
                type(exc).__name__,
            )
            raise
        finally:
            await dispatcher.drain()
        TRANSFERS.labels(operation=operation, outcome="success").inc()
        return result
