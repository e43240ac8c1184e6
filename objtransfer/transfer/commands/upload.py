from __future__ import annotations

import os
from typing import Callable

from objtransfer.common.cancellation import CancellationToken
from objtransfer.infra.storage.client import ObjectStorageClient
from objtransfer.transfer.commands.base import AdmissionGate
from objtransfer.transfer.commands.multipart_upload import MultipartUploadCommand
from objtransfer.transfer.commands.single_upload import SingleObjectUploadCommand
from objtransfer.transfer.config import TransferConfig
from objtransfer.transfer.progress import ProgressDispatcher, UploadProgress
from objtransfer.transfer.requests import UploadRequest


def resolve_content_length(request: UploadRequest) -> int | None:
    """Bytes the upload will send, or ``None`` when the source cannot tell.

    Rewinds a seekable stream first when ``auto_reset_stream_position`` is set.
    """
    if request.file_path is not None:
        return os.path.getsize(request.file_path)
    stream = request.stream
    if stream is None:
        return None
    seekable = stream.seekable()
    if request.auto_reset_stream_position and seekable:
        stream.seek(0)
    if request.content_length is not None:
        return request.content_length
    if not seekable:
        return None
    position = stream.tell()
    end = stream.seek(0, os.SEEK_END)
    stream.seek(position)
    return end - position


def create_upload_command(
    client: ObjectStorageClient,
    config: TransferConfig,
    request: UploadRequest,
    *,
    content_length: int | None,
    token: CancellationToken,
    dispatcher: ProgressDispatcher,
    gate: AdmissionGate | None = None,
    progress_listener: Callable[[UploadProgress], None] | None = None,
) -> SingleObjectUploadCommand | MultipartUploadCommand:
    """Single PUT below the size threshold, multipart at or above it or when unsized."""
    if content_length is not None and (
        content_length == 0 or content_length < config.min_size_before_part_upload
    ):
        return SingleObjectUploadCommand(
            client,
            config,
            request,
            content_length=content_length,
            token=token,
            dispatcher=dispatcher,
            gate=gate,
            progress_listener=progress_listener,
        )
    return MultipartUploadCommand(
        client,
        config,
        request,
        content_length=content_length,
        token=token,
        dispatcher=dispatcher,
        shared_gate=gate,
        progress_listener=progress_listener,
    )
