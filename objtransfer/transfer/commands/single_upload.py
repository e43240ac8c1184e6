from __future__ import annotations

import logging
from typing import BinaryIO, Callable

from objtransfer.common.cancellation import CancellationToken
from objtransfer.infra.observability.metrics import BYTES_TRANSFERRED
from objtransfer.infra.storage.client import ObjectStorageClient, UploadResult
from objtransfer.transfer.commands.base import AdmissionGate, BaseCommand
from objtransfer.transfer.config import TransferConfig
from objtransfer.transfer.progress import (
    ProgressDispatcher,
    ProgressStream,
    TransferProgressAggregator,
    UploadProgress,
)
from objtransfer.transfer.requests import UploadRequest

logger = logging.getLogger(__name__)


def upload_event_factory(
    request: UploadRequest,
) -> Callable[[int, int, int | None, int], UploadProgress]:
    file_path = str(request.file_path) if request.file_path is not None else None

    def make_event(
        increment: int, transferred: int, total: int | None, compensation: int
    ) -> UploadProgress:
        return UploadProgress(
            bucket=request.bucket,
            key=request.key or "",
            file_path=file_path,
            increment=increment,
            transferred=transferred,
            total=total,
            compensation=compensation,
        )

    return make_event


def release_source_stream(request: UploadRequest) -> None:
    """Close a caller-supplied stream once the upload no longer needs it."""
    stream = request.stream
    if stream is not None and request.file_path is None and request.auto_close_stream:
        stream.close()


class SingleObjectUploadCommand(BaseCommand):
    """Uploads an object of known, below-threshold size with one PUT."""

    def __init__(
        self,
        client: ObjectStorageClient,
        config: TransferConfig,
        request: UploadRequest,
        *,
        content_length: int,
        token: CancellationToken,
        dispatcher: ProgressDispatcher,
        gate: AdmissionGate | None = None,
        progress_listener: Callable[[UploadProgress], None] | None = None,
    ) -> None:
        super().__init__(client, config, token=token, dispatcher=dispatcher)
        self._request = request
        self._content_length = content_length
        self._gate = gate
        self._aggregator = TransferProgressAggregator(
            total=content_length,
            make_event=upload_event_factory(request),
            sink=self._progress_sink(request.progress_callback, progress_listener),
        )

    async def execute(self) -> UploadResult:
        if self._gate is not None:
            await self._gate.acquire(self._token)
        try:
            return await self._put()
        finally:
            if self._gate is not None:
                self._gate.release()

    async def _put(self) -> UploadResult:
        request = self._request
        source: BinaryIO
        if request.file_path is not None:
            source = open(request.file_path, "rb")
        else:
            source = request.stream  # type: ignore[assignment]
        try:
            body = ProgressStream(
                source,
                length=self._content_length,
                interval=self._config.progress_update_interval,
                on_progress=self._aggregator.record,
                token=self._token,
            )
            result = await self._call(
                self._client.put_object,
                bucket=request.bucket,
                object_key=request.key,
                body=body,
                content_length=self._content_length,
                options=request.upload_options(),
            )
        finally:
            if request.file_path is not None:
                source.close()
            else:
                release_source_stream(request)

        self._aggregator.finish()
        BYTES_TRANSFERRED.labels(direction="upload").inc(self._content_length)
        logger.debug(
            "object_uploaded key=%s bytes=%s",
            request.key,
            self._content_length,
            extra={"extra": {"bucket": request.bucket, "etag": result.etag}},
        )
        return result
