"""Request objects accepted by ``TransferUtility``.

Requests belong to the caller. Commands read them and only ever fill in an
absent ``key`` on an upload (derived from the file name).
"""

from __future__ import annotations

import mimetypes
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, BinaryIO, Callable

from objtransfer.infra.storage.client import ServerSideEncryption, UploadOptions

if TYPE_CHECKING:
    from objtransfer.transfer.progress import (
        DirectoryProgress,
        DownloadProgress,
        UploadProgress,
    )

PathLike = str | os.PathLike


@dataclass
class UploadRequest:
    """Upload of one file or stream to ``bucket``/``key``.

    Exactly one of ``file_path`` and ``stream`` must be given. For a stream,
    ``content_length`` may state how many bytes remain; otherwise it is
    derived from a seekable stream, and an unseekable stream is uploaded in
    parts without knowing its size up front.
    """

    bucket: str
    key: str | None = None
    file_path: PathLike | None = None
    stream: BinaryIO | None = None
    content_length: int | None = None
    part_size: int | None = None
    content_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    acl: str | None = None
    storage_class: str | None = None
    encryption: ServerSideEncryption | None = None
    tags: dict[str, str] = field(default_factory=dict)
    checksum_algorithm: str | None = None
    object_lock_mode: str | None = None
    object_lock_retain_until: datetime | None = None
    object_lock_legal_hold: bool | None = None
    auto_close_stream: bool = True
    auto_reset_stream_position: bool = True
    progress_callback: Callable[["UploadProgress"], None] | None = None

    def resolved_content_type(self) -> str | None:
        if self.content_type:
            return self.content_type
        name = self.file_path if self.file_path is not None else self.key
        if not name:
            return None
        return mimetypes.guess_type(os.fspath(name))[0]

    def upload_options(self) -> UploadOptions:
        return UploadOptions(
            content_type=self.resolved_content_type(),
            metadata=dict(self.metadata),
            acl=self.acl,
            storage_class=self.storage_class,
            encryption=self.encryption,
            tags=dict(self.tags),
            checksum_algorithm=self.checksum_algorithm,
            object_lock_mode=self.object_lock_mode,
            object_lock_retain_until=self.object_lock_retain_until,
            object_lock_legal_hold=self.object_lock_legal_hold,
        )


@dataclass
class DownloadRequest:
    bucket: str
    key: str
    file_path: PathLike
    version_id: str | None = None
    encryption: ServerSideEncryption | None = None
    modified_since: datetime | None = None
    unmodified_since: datetime | None = None
    progress_callback: Callable[["DownloadProgress"], None] | None = None


@dataclass
class OpenStreamRequest:
    bucket: str
    key: str
    version_id: str | None = None
    encryption: ServerSideEncryption | None = None
    modified_since: datetime | None = None
    unmodified_since: datetime | None = None


@dataclass
class UploadDirectoryRequest:
    """Upload of every file below ``directory`` matching ``search_pattern``.

    Object attributes set here apply to every file; ``file_request_callback``
    may adjust each per-file ``UploadRequest`` before it is sent.
    """

    bucket: str
    directory: PathLike
    key_prefix: str | None = None
    search_pattern: str = "*"
    recursive: bool = False
    upload_files_concurrently: bool = False
    content_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    acl: str | None = None
    storage_class: str | None = None
    encryption: ServerSideEncryption | None = None
    tags: dict[str, str] = field(default_factory=dict)
    checksum_algorithm: str | None = None
    object_lock_mode: str | None = None
    object_lock_retain_until: datetime | None = None
    object_lock_legal_hold: bool | None = None
    file_request_callback: Callable[[UploadRequest], None] | None = None
    progress_callback: Callable[["DirectoryProgress"], None] | None = None


@dataclass
class DownloadDirectoryRequest:
    """Download of every object below the ``s3_directory`` key prefix."""

    bucket: str
    s3_directory: str
    local_directory: PathLike
    modified_since: datetime | None = None
    unmodified_since: datetime | None = None
    disable_slash_correction: bool = False
    download_files_concurrently: bool = False
    encryption: ServerSideEncryption | None = None
    progress_callback: Callable[["DirectoryProgress"], None] | None = None
