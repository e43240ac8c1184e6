from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from objtransfer.common.cancellation import CancellationToken
from objtransfer.infra.storage.client import (
    INSTRUCTION_SUFFIX,
    ObjectListing,
    ObjectStorageClient,
    ObjectSummary,
    StorageServiceError,
)
from objtransfer.transfer.commands.base import (
    AdmissionGate,
    BaseCommand,
    FanOut,
    as_utc,
)
from objtransfer.transfer.commands.download import DownloadCommand
from objtransfer.transfer.config import TransferConfig
from objtransfer.transfer.errors import TransferValidationError
from objtransfer.transfer.progress import (
    DirectoryProgressAggregator,
    ProgressDispatcher,
)
from objtransfer.transfer.requests import DownloadDirectoryRequest, DownloadRequest

logger = logging.getLogger(__name__)

NOT_IMPLEMENTED = 501


@dataclass(frozen=True, slots=True)
class PlannedDownload:
    summary: ObjectSummary
    path: Path


def normalize_listing_prefix(directory: str, *, disable_slash_correction: bool) -> str:
    prefix = directory.replace("\\", "/")
    if not disable_slash_correction and not prefix.endswith("/"):
        prefix += "/"
    if prefix.startswith("/"):
        prefix = prefix[1:]
    return prefix


def relative_key_offset(prefix: str, *, disable_slash_correction: bool) -> int:
    """Length of the key part that maps onto the local directory itself.

    A raw prefix such as ``logs/2024-`` maps keys relative to its parent
    "folder" (``logs/``).
    """
    if disable_slash_correction and not prefix.endswith("/"):
        return prefix.rfind("/") + 1
    return len(prefix)


class DownloadDirectoryCommand(BaseCommand):
    """Downloads every object below a key prefix into a local directory.

    Objects are fetched one at a time unless ``download_files_concurrently``
    is set; the local disk, not the network, is usually the bottleneck.
    """

    def __init__(
        self,
        client: ObjectStorageClient,
        config: TransferConfig,
        request: DownloadDirectoryRequest,
        *,
        token: CancellationToken,
        dispatcher: ProgressDispatcher,
    ) -> None:
        super().__init__(client, config, token=token, dispatcher=dispatcher)
        self._request = request
        self._local_directory = Path(request.local_directory).resolve()
        self._prefix = normalize_listing_prefix(
            request.s3_directory,
            disable_slash_correction=request.disable_slash_correction,
        )
        self.file_gate: AdmissionGate | None = None

    async def execute(self) -> int:
        request = self._request
        await asyncio.to_thread(
            self._local_directory.mkdir, parents=True, exist_ok=True
        )

        listing = await self._list_objects()
        summaries = [item for item in listing if self._should_download(item)]
        planned = self._plan(summaries)
        total_bytes = sum(item.summary.size for item in planned)
        concurrent = request.download_files_concurrently
        progress = DirectoryProgressAggregator(
            total_files=len(planned),
            total_bytes=total_bytes,
            serial=not concurrent,
            sink=self._progress_sink(request.progress_callback),
        )
        self.file_gate = AdmissionGate(
            self._config.concurrent_service_requests if concurrent else 1
        )
        logger.info(
            "directory_download_started prefix=%s files=%s bytes=%s",
            self._prefix,
            len(planned),
            total_bytes,
            extra={"extra": {"bucket": request.bucket}},
        )
        stop = self._token.linked()
        fan_out: FanOut[None] = FanOut(gates=[self.file_gate], stop=stop)
        await fan_out.run(planned, lambda item: self._download(item, stop, progress))
        progress.finish()
        logger.info(
            "directory_download_completed prefix=%s files=%s",
            self._prefix,
            len(planned),
        )
        return len(planned)

    async def _list_objects(self) -> list[ObjectSummary]:
        try:
            return await self._list_pages(v2=True)
        except StorageServiceError as exc:
            if exc.status_code != NOT_IMPLEMENTED:
                raise
            logger.info(
                "list_objects_v2_not_implemented bucket=%s falling_back=list_objects",
                self._request.bucket,
            )
            return await self._list_pages(v2=False)

    async def _list_pages(self, *, v2: bool) -> list[ObjectSummary]:
        objects: list[ObjectSummary] = []
        token: str | None = None
        while True:
            page: ObjectListing
            if v2:
                page = await self._call(
                    self._client.list_objects_v2,
                    bucket=self._request.bucket,
                    prefix=self._prefix or None,
                    continuation_token=token,
                )
            else:
                page = await self._call(
                    self._client.list_objects,
                    bucket=self._request.bucket,
                    prefix=self._prefix or None,
                    marker=token,
                )
            objects.extend(page.objects)
            token = page.next_token
            if not token:
                return objects

    def _should_download(self, item: ObjectSummary) -> bool:
        request = self._request
        if item.key.endswith("/"):
            return False
        if item.last_modified is not None:
            modified = as_utc(item.last_modified)
            since = request.modified_since
            if since is not None and modified <= as_utc(since):
                return False
            until = request.unmodified_since
            if until is not None and modified > as_utc(until):
                return False
        if self._client.is_encrypting and item.key.endswith(INSTRUCTION_SUFFIX):
            return False
        return True

    def _plan(self, summaries: list[ObjectSummary]) -> list[PlannedDownload]:
        offset = relative_key_offset(
            self._prefix,
            disable_slash_correction=self._request.disable_slash_correction,
        )
        planned = []
        for summary in summaries:
            relative = summary.key[offset:]
            path = (self._local_directory / relative).resolve()
            inside = path.is_relative_to(self._local_directory)
            if not inside or path == self._local_directory:
                raise TransferValidationError(
                    "key",
                    f"object {summary.key!r} would be written outside of "
                    f"{str(self._local_directory)!r}",
                )
            planned.append(PlannedDownload(summary=summary, path=path))
        return planned

    async def _download(
        self,
        item: PlannedDownload,
        stop: CancellationToken,
        progress: DirectoryProgressAggregator,
    ) -> None:
        request = self._request
        command = DownloadCommand(
            self._client,
            self._config,
            DownloadRequest(
                bucket=request.bucket,
                key=item.summary.key,
                file_path=item.path,
                encryption=request.encryption,
            ),
            token=stop,
            dispatcher=self._dispatcher,
            progress_listener=progress.child_progress,
            expected_size=item.summary.size,
        )
        await command.execute()
        progress.file_completed()
