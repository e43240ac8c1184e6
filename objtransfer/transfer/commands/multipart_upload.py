from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import BinaryIO, Callable

from objtransfer.common.cancellation import CancellationToken
from objtransfer.infra.observability.metrics import BYTES_TRANSFERRED, MULTIPART_ABORTS
from objtransfer.infra.storage.client import (
    CompletedPart,
    MultipartUpload,
    ObjectStorageClient,
    UploadResult,
)
from objtransfer.transfer.commands.base import (
    AdmissionGate,
    BaseCommand,
    FanOut,
    PartStream,
    read_fully,
)
from objtransfer.transfer.commands.single_upload import (
    release_source_stream,
    upload_event_factory,
)
from objtransfer.transfer.config import MIN_PART_SIZE, TransferConfig, plan_part_size
from objtransfer.transfer.errors import IncompleteMultipartUploadError
from objtransfer.transfer.progress import (
    ProgressDispatcher,
    ProgressStream,
    TransferProgressAggregator,
    UploadProgress,
)
from objtransfer.transfer.requests import UploadRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PartDescriptor:
    part_number: int
    offset: int
    length: int
    is_last: bool


def plan_parts(content_length: int, part_size: int) -> list[PartDescriptor]:
    parts = []
    offset = 0
    number = 1
    while offset < content_length:
        length = min(part_size, content_length - offset)
        parts.append(
            PartDescriptor(
                part_number=number,
                offset=offset,
                length=length,
                is_last=offset + length >= content_length,
            )
        )
        offset += part_size
        number += 1
    return parts


class UnseekablePartReader:
    """Cuts a forward-only stream into parts using a one-chunk look-ahead.

    A part is emitted once the buffer holds more than ``min_part_size``
    bytes or the look-ahead read hits end of stream; in the latter case the
    part is the last one. An empty stream yields a single empty last part.
    """

    def __init__(
        self,
        stream: BinaryIO,
        *,
        min_part_size: int,
        read_size: int,
        token: CancellationToken,
    ) -> None:
        self._stream = stream
        self._min_part_size = min_part_size
        self._read_size = read_size
        self._token = token
        self._look_ahead: bytes | None = None
        self.bytes_read = 0

    def _read_chunk(self) -> bytes:
        self._token.raise_if_cancelled()
        chunk = read_fully(self._stream, self._read_size)
        self.bytes_read += len(chunk)
        return chunk

    def next_part(self) -> tuple[bytes, bool]:
        buffer = bytearray()
        chunk = self._look_ahead if self._look_ahead is not None else self._read_chunk()
        while True:
            buffer += chunk
            look_ahead = self._read_chunk()
            if len(buffer) > self._min_part_size or not look_ahead:
                self._look_ahead = look_ahead
                return bytes(buffer), not look_ahead
            chunk = look_ahead


class MultipartUploadCommand(BaseCommand):
    """Uploads one object as a multipart upload.

    Known-length sources are split up front and sent concurrently; a source
    of unknown length (or an unseekable stream) is read part by part and
    sent strictly in order. Every initiated upload is either completed or
    aborted.
    """

    def __init__(
        self,
        client: ObjectStorageClient,
        config: TransferConfig,
        request: UploadRequest,
        *,
        content_length: int | None,
        token: CancellationToken,
        dispatcher: ProgressDispatcher,
        shared_gate: AdmissionGate | None = None,
        progress_listener: Callable[[UploadProgress], None] | None = None,
    ) -> None:
        super().__init__(client, config, token=token, dispatcher=dispatcher)
        self._request = request
        self._content_length = content_length
        self._shared_gate = shared_gate
        self._aggregator = TransferProgressAggregator(
            total=content_length,
            make_event=upload_event_factory(request),
            sink=self._progress_sink(request.progress_callback, progress_listener),
        )
        self.gate: AdmissionGate | None = None

    @property
    def _is_unseekable(self) -> bool:
        stream = self._request.stream
        if self._request.file_path is None and stream is not None:
            if not stream.seekable():
                return True
        return self._content_length is None

    async def execute(self) -> UploadResult:
        request = self._request
        try:
            upload = await self._call(
                self._client.init_multipart_upload,
                bucket=request.bucket,
                object_key=request.key,
                options=request.upload_options(),
            )
            logger.info(
                "multipart_initiated upload_id=%s key=%s",
                upload.upload_id,
                request.key,
                extra={"extra": {"bucket": request.bucket}},
            )
            if self._is_unseekable:
                result, total = await self._upload_unseekable(upload)
            else:
                result, total = await self._upload_known_length(upload)
        finally:
            release_source_stream(request)

        self._aggregator.finish(total)
        BYTES_TRANSFERRED.labels(direction="upload").inc(total)
        return result

    async def _upload_known_length(
        self, upload: MultipartUpload
    ) -> tuple[UploadResult, int]:
        request = self._request
        content_length = self._content_length or 0
        part_size = request.part_size or plan_part_size(content_length)
        parts = plan_parts(content_length, part_size)

        if request.file_path is not None and not self._client.is_encrypting:
            concurrency = self._config.concurrent_service_requests
        else:
            # a shared stream (or an encrypting client) needs parts in order
            concurrency = 1
        self.gate = AdmissionGate(min(concurrency, max(1, len(parts))))
        gates = [self.gate]
        if self._shared_gate is not None:
            gates.append(self._shared_gate)

        origin = 0 if request.stream is None else request.stream.tell()
        stop = self._token.linked()
        fan_out: FanOut[CompletedPart] = FanOut(gates=gates, stop=stop)
        logger.debug(
            "multipart_scheduling upload_id=%s parts=%s part_size=%s concurrency=%s",
            upload.upload_id,
            len(parts),
            part_size,
            self.gate.limit,
        )
        try:
            completed = await fan_out.run(
                parts, lambda part: self._upload_part(upload, part, origin, stop)
            )
            if len(completed) != len(parts):
                raise IncompleteMultipartUploadError(
                    expected=len(parts), completed=len(completed)
                )
            result = await self._call(
                self._client.complete_multipart_upload,
                bucket=request.bucket,
                object_key=request.key,
                upload_id=upload.upload_id,
                parts=sorted(completed, key=lambda p: p.part_number),
            )
        except BaseException as exc:
            stop.cancel("multipart upload failed")
            await fan_out.settle(self._config.multipart_upload_finalize_timeout)
            await self._abort(upload, exc)
            raise

        logger.info(
            "multipart_completed upload_id=%s key=%s parts=%s",
            upload.upload_id,
            request.key,
            len(parts),
        )
        return result, content_length

    async def _upload_part(
        self,
        upload: MultipartUpload,
        part: PartDescriptor,
        origin: int,
        stop: CancellationToken,
    ) -> CompletedPart:
        stop.raise_if_cancelled()
        return await asyncio.to_thread(self._send_part, upload, part, origin, stop)

    def _send_part(
        self,
        upload: MultipartUpload,
        part: PartDescriptor,
        origin: int,
        stop: CancellationToken,
    ) -> CompletedPart:
        request = self._request
        if request.file_path is not None:
            window = PartStream(
                open(request.file_path, "rb"),
                start=part.offset,
                length=part.length,
                owns_raw=True,
            )
        else:
            window = PartStream(
                request.stream,  # type: ignore[arg-type]
                start=origin + part.offset,
                length=part.length,
                owns_raw=False,
            )
        with window:
            body = ProgressStream(
                window,  # type: ignore[arg-type]
                length=part.length,
                interval=self._config.progress_update_interval,
                on_progress=self._aggregator.record,
                token=stop,
            )
            completed = self._client.upload_part(
                bucket=request.bucket,
                object_key=request.key,
                upload_id=upload.upload_id,
                part_number=part.part_number,
                body=body,  # type: ignore[arg-type]
                content_length=part.length,
                is_last_part=part.is_last,
                encryption=request.encryption,
                checksum_algorithm=request.checksum_algorithm,
            )
        logger.debug(
            "part_uploaded upload_id=%s part=%s bytes=%s",
            upload.upload_id,
            part.part_number,
            part.length,
        )
        return completed

    async def _upload_unseekable(
        self, upload: MultipartUpload
    ) -> tuple[UploadResult, int]:
        request = self._request
        stop = self._token.linked()
        reader = UnseekablePartReader(
            request.stream,  # type: ignore[arg-type]
            min_part_size=request.part_size or MIN_PART_SIZE,
            read_size=self._config.read_buffer_size,
            token=stop,
        )
        completed: list[CompletedPart] = []
        read_task: asyncio.Task[tuple[bytes, bool]] | None = asyncio.create_task(
            asyncio.to_thread(reader.next_part)
        )
        upload_task: asyncio.Task[CompletedPart] | None = None
        part_number = 1
        try:
            while read_task is not None:
                data, is_last = await read_task
                read_task = None
                if upload_task is not None:
                    completed.append(await upload_task)
                upload_task = asyncio.create_task(
                    self._upload_buffer(upload, part_number, data, is_last, stop)
                )
                part_number += 1
                if not is_last:
                    # read the next part while the current one is on the wire
                    read_task = asyncio.create_task(asyncio.to_thread(reader.next_part))
            completed.append(await upload_task)
            upload_task = None
            result = await self._call(
                self._client.complete_multipart_upload,
                bucket=request.bucket,
                object_key=request.key,
                upload_id=upload.upload_id,
                parts=completed,
            )
        except BaseException as exc:
            stop.cancel("multipart upload failed")
            tasks = [t for t in (read_task, upload_task) if t is not None]
            pending = [t for t in tasks if not t.done()]
            if pending:
                await asyncio.wait(
                    pending, timeout=self._config.multipart_upload_finalize_timeout
                )
            for task in tasks:
                if task.done() and not task.cancelled():
                    # the failure being raised below supersedes this one
                    task.exception()
            await self._abort(upload, exc)
            raise

        logger.info(
            "multipart_completed upload_id=%s key=%s parts=%s",
            upload.upload_id,
            request.key,
            len(completed),
        )
        return result, reader.bytes_read

    async def _upload_buffer(
        self,
        upload: MultipartUpload,
        part_number: int,
        data: bytes,
        is_last: bool,
        stop: CancellationToken,
    ) -> CompletedPart:
        stop.raise_if_cancelled()
        body = ProgressStream(
            io.BytesIO(data),
            length=len(data),
            interval=self._config.progress_update_interval,
            on_progress=self._aggregator.record,
            token=stop,
        )
        completed = await asyncio.to_thread(
            self._client.upload_part,
            bucket=self._request.bucket,
            object_key=self._request.key,
            upload_id=upload.upload_id,
            part_number=part_number,
            body=body,
            content_length=len(data),
            is_last_part=is_last,
            encryption=self._request.encryption,
            checksum_algorithm=self._request.checksum_algorithm,
        )
        logger.debug(
            "part_uploaded upload_id=%s part=%s bytes=%s last=%s",
            upload.upload_id,
            part_number,
            len(data),
            is_last,
        )
        return completed

    async def _abort(self, upload: MultipartUpload, cause: BaseException) -> None:
        logger.error(
            "multipart_failed upload_id=%s key=%s error=%s",
            upload.upload_id,
            upload.object_key,
            cause,
        )
        try:
            await asyncio.to_thread(
                self._client.abort_multipart_upload,
                bucket=upload.bucket,
                object_key=upload.object_key,
                upload_id=upload.upload_id,
            )
        except Exception:
            MULTIPART_ABORTS.labels(outcome="failed").inc()
            logger.warning(
                "multipart_abort_failed upload_id=%s key=%s",
                upload.upload_id,
                upload.object_key,
                exc_info=True,
            )
        else:
            MULTIPART_ABORTS.labels(outcome="aborted").inc()
            logger.info(
                "multipart_aborted upload_id=%s key=%s",
                upload.upload_id,
                upload.object_key,
            )
