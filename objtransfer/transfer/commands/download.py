from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable

from objtransfer.common.cancellation import CancellationToken, TransferCancelledError
from objtransfer.infra.observability.metrics import BYTES_TRANSFERRED, DOWNLOAD_RETRIES
from objtransfer.infra.storage.client import (
    GetObjectResult,
    ObjectStorageClient,
    StorageError,
    StorageTransportError,
    TransportFailureReason,
)
from objtransfer.transfer.commands.base import BaseCommand
from objtransfer.transfer.config import TransferConfig
from objtransfer.transfer.progress import (
    DownloadProgress,
    ProgressDispatcher,
    ProgressStream,
    TransferProgressAggregator,
)
from objtransfer.transfer.requests import DownloadRequest

logger = logging.getLogger(__name__)

RETRYABLE_TRANSPORT_REASONS = frozenset(
    {
        TransportFailureReason.CONNECT_FAILURE,
        TransportFailureReason.CONNECTION_CLOSED,
        TransportFailureReason.CONNECTION_RESET,
        TransportFailureReason.KEEP_ALIVE_FAILURE,
        TransportFailureReason.NAME_RESOLUTION_FAILURE,
        TransportFailureReason.RECEIVE_FAILURE,
    }
)


def _local_length(path: Path) -> int:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0


def _truncate(path: Path) -> None:
    with open(path, "wb"):
        pass


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, OSError):
        return True
    return (
        isinstance(exc, StorageTransportError)
        and exc.reason in RETRYABLE_TRANSPORT_REASONS
    )


class DownloadCommand(BaseCommand):
    """Downloads one object to a local file, resuming after transient failures.

    The first attempt fetches the whole object; each retry asks only for the
    bytes missing from the local file. When the object's ETag changes between
    attempts the download starts over so the file never mixes two versions.
    """

    max_backoff_seconds = 30.0

    def __init__(
        self,
        client: ObjectStorageClient,
        config: TransferConfig,
        request: DownloadRequest,
        *,
        token: CancellationToken,
        dispatcher: ProgressDispatcher,
        progress_listener: Callable[[DownloadProgress], None] | None = None,
        expected_size: int | None = None,
    ) -> None:
        super().__init__(client, config, token=token, dispatcher=dispatcher)
        self._request = request
        self._path = Path(request.file_path)
        file_path = str(request.file_path)

        def make_event(
            increment: int, transferred: int, total: int | None, compensation: int
        ) -> DownloadProgress:
            return DownloadProgress(
                bucket=request.bucket,
                key=request.key,
                file_path=file_path,
                increment=increment,
                transferred=transferred,
                total=total,
                compensation=compensation,
            )

        self._aggregator = TransferProgressAggregator(
            total=expected_size,
            make_event=make_event,
            sink=self._progress_sink(request.progress_callback, progress_listener),
        )
        self._total = expected_size

    async def execute(self) -> None:
        request = self._request
        await asyncio.to_thread(self._path.parent.mkdir, parents=True, exist_ok=True)

        max_retries = int(self._client.max_error_retries)
        retries = 0
        most_recent_etag: str | None = None
        while True:
            self._token.raise_if_cancelled()
            offset = 0
            if retries != 0:
                offset = await asyncio.to_thread(_local_length, self._path)
                if self._total is not None and offset >= self._total:
                    break
            try:
                response = await self._call(
                    self._client.get_object,
                    bucket=request.bucket,
                    object_key=request.key,
                    byte_range=f"bytes={offset}-" if retries != 0 else None,
                    version_id=request.version_id,
                    encryption=request.encryption,
                    modified_since=request.modified_since,
                    unmodified_since=request.unmodified_since,
                )
                try:
                    if most_recent_etag and response.etag != most_recent_etag:
                        logger.warning(
                            "download_object_changed key=%s etag=%s previous_etag=%s",
                            request.key,
                            response.etag,
                            most_recent_etag,
                            extra={"extra": {"bucket": request.bucket}},
                        )
                        DOWNLOAD_RETRIES.labels(cause="etag_changed").inc()
                        most_recent_etag = response.etag
                        retries = 0
                        self._total = None
                        # a later ranged retry must not resume on the old version
                        await asyncio.to_thread(_truncate, self._path)
                        self._aggregator.reconcile(0)
                        await self._wait_before_retry(retries)
                        continue
                    most_recent_etag = response.etag
                    if response.content_length is not None and (
                        self._total is None or retries == 0
                    ):
                        self._total = offset + response.content_length
                        self._aggregator.set_total(self._total)
                    await asyncio.to_thread(
                        self._write_body, response, append=retries != 0
                    )
                finally:
                    response.body.close()
                break
            except TransferCancelledError:
                raise
            except Exception as exc:
                retries += 1
                if not self._should_retry(exc, retries, max_retries):
                    if isinstance(exc, (OSError, StorageError)):
                        raise
                    if isinstance(exc.__cause__, OSError):
                        raise exc.__cause__
                    raise StorageError(
                        f"Failed to download {request.key}: {exc}"
                    ) from exc
                DOWNLOAD_RETRIES.labels(cause="transient").inc()
                self._aggregator.reconcile(
                    await asyncio.to_thread(_local_length, self._path)
                )
                await self._wait_before_retry(retries)

        self._aggregator.finish(self._total)
        BYTES_TRANSFERRED.labels(direction="download").inc(self._aggregator.transferred)
        logger.debug(
            "object_downloaded key=%s path=%s etag=%s",
            request.key,
            self._path,
            most_recent_etag,
        )

    def _write_body(self, response: GetObjectResult, *, append: bool) -> None:
        body = ProgressStream(
            response.body,
            length=response.content_length,
            interval=self._config.progress_update_interval,
            on_progress=self._aggregator.record,
            token=self._token,
        )
        with open(self._path, "ab" if append else "wb") as fh:
            while True:
                chunk = body.read(self._config.read_buffer_size)
                if not chunk:
                    break
                fh.write(chunk)

    def _should_retry(self, exc: Exception, retries: int, max_retries: int) -> bool:
        if not is_retryable(exc):
            logger.error(
                "download_failed key=%s error_type=%s non_retryable",
                self._request.key,
                type(exc).__name__,
            )
            return False
        if retries < max_retries:
            logger.info(
                "download_retry key=%s error_type=%s retry=%s max_retries=%s",
                self._request.key,
                type(exc).__name__,
                retries,
                max_retries,
            )
            return True
        logger.error(
            "download_failed key=%s error_type=%s retries_exhausted=%s",
            self._request.key,
            type(exc).__name__,
            max_retries,
        )
        return False

    async def _wait_before_retry(self, retries: int) -> None:
        delay = min(4**retries * 0.1, self.max_backoff_seconds)
        if delay > 0:
            await asyncio.sleep(delay)
        self._token.raise_if_cancelled()
