from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from objtransfer.common.cancellation import CancellationToken
from objtransfer.infra.storage.client import ObjectStorageClient, UploadResult
from objtransfer.transfer.commands.base import AdmissionGate, BaseCommand, FanOut
from objtransfer.transfer.commands.upload import create_upload_command
from objtransfer.transfer.config import TransferConfig
from objtransfer.transfer.progress import (
    DirectoryProgressAggregator,
    ProgressDispatcher,
)
from objtransfer.transfer.requests import UploadDirectoryRequest, UploadRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LocalFile:
    path: Path
    size: int


def normalize_key_prefix(prefix: str | None) -> str:
    if not prefix:
        return ""
    prefix = prefix.replace("\\", "/")
    if prefix.startswith("/"):
        prefix = prefix[1:]
    if prefix and not prefix.endswith("/"):
        prefix += "/"
    return prefix


def object_key_for(directory: Path, path: Path, prefix: str) -> str:
    key = str(path.relative_to(directory)).replace("\\", "/")
    if key.startswith("/"):
        key = key[1:]
    return prefix + key


def enumerate_files(directory: Path, pattern: str, recursive: bool) -> list[LocalFile]:
    matches = directory.rglob(pattern) if recursive else directory.glob(pattern)
    return [
        LocalFile(path=path, size=path.stat().st_size)
        for path in sorted(matches)
        if path.is_file()
    ]


class UploadDirectoryCommand(BaseCommand):
    """Uploads every matching file of a local directory tree.

    Files are admitted through an outer gate (one file at a time unless
    ``upload_files_concurrently``); their parts share one inner gate so the
    total number of requests on the wire stays bounded.
    """

    def __init__(
        self,
        client: ObjectStorageClient,
        config: TransferConfig,
        request: UploadDirectoryRequest,
        *,
        token: CancellationToken,
        dispatcher: ProgressDispatcher,
    ) -> None:
        super().__init__(client, config, token=token, dispatcher=dispatcher)
        self._request = request
        self._directory = Path(request.directory).resolve()
        self._prefix = normalize_key_prefix(request.key_prefix)
        self.file_gate: AdmissionGate | None = None
        self.request_gate: AdmissionGate | None = None

    async def execute(self) -> list[UploadResult]:
        request = self._request
        files = await asyncio.to_thread(
            enumerate_files, self._directory, request.search_pattern, request.recursive
        )
        total_bytes = sum(item.size for item in files)
        concurrent = request.upload_files_concurrently
        progress = DirectoryProgressAggregator(
            total_files=len(files),
            total_bytes=total_bytes,
            serial=not concurrent,
            sink=self._progress_sink(request.progress_callback),
        )
        self.file_gate = AdmissionGate(
            self._config.concurrent_service_requests if concurrent else 1
        )
        if not self._client.is_encrypting:
            self.request_gate = AdmissionGate(self._config.concurrent_service_requests)

        logger.info(
            "directory_upload_started directory=%s files=%s bytes=%s",
            self._directory,
            len(files),
            total_bytes,
            extra={"extra": {"bucket": request.bucket, "prefix": self._prefix}},
        )
        stop = self._token.linked()
        fan_out: FanOut[UploadResult] = FanOut(gates=[self.file_gate], stop=stop)
        results = await fan_out.run(
            files, lambda item: self._upload_file(item, stop, progress)
        )
        progress.finish()
        logger.info(
            "directory_upload_completed directory=%s files=%s",
            self._directory,
            len(results),
        )
        return results

    def _file_request(self, item: LocalFile) -> UploadRequest:
        request = self._request
        file_request = UploadRequest(
            bucket=request.bucket,
            key=object_key_for(self._directory, item.path, self._prefix),
            file_path=item.path,
            content_type=request.content_type,
            metadata=dict(request.metadata),
            acl=request.acl,
            storage_class=request.storage_class,
            encryption=request.encryption,
            tags=dict(request.tags),
            checksum_algorithm=request.checksum_algorithm,
            object_lock_mode=request.object_lock_mode,
            object_lock_retain_until=request.object_lock_retain_until,
            object_lock_legal_hold=request.object_lock_legal_hold,
        )
        if request.file_request_callback is not None:
            request.file_request_callback(file_request)
        return file_request

    async def _upload_file(
        self,
        item: LocalFile,
        stop: CancellationToken,
        progress: DirectoryProgressAggregator,
    ) -> UploadResult:
        file_request = self._file_request(item)
        command = create_upload_command(
            self._client,
            self._config,
            file_request,
            content_length=item.size,
            token=stop,
            dispatcher=self._dispatcher,
            gate=self.request_gate,
            progress_listener=progress.child_progress,
        )
        result = await command.execute()
        progress.file_completed()
        return result
