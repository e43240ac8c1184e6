from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from objtransfer.common.config import Settings

MIN_PART_SIZE = 5 * 1024 * 1024
MAX_PARTS = 10000

DEFAULT_CONCURRENT_SERVICE_REQUESTS = 10
DEFAULT_MIN_SIZE_BEFORE_PART_UPLOAD = 16 * 1024 * 1024
DEFAULT_MULTIPART_FINALIZE_TIMEOUT = 5.0
DEFAULT_PROGRESS_UPDATE_INTERVAL = 100 * 1024
DEFAULT_READ_BUFFER_SIZE = 8 * 1024


def plan_part_size(total_size: int | None) -> int:
    """Smallest part size that keeps ``total_size`` within ``MAX_PARTS`` parts."""
    if total_size is None:
        return MIN_PART_SIZE
    return max(MIN_PART_SIZE, math.ceil(total_size / MAX_PARTS))


@dataclass(frozen=True, slots=True)
class TransferConfig:
    """Tuning knobs shared by every command of a transfer utility."""

    concurrent_service_requests: int = DEFAULT_CONCURRENT_SERVICE_REQUESTS
    min_size_before_part_upload: int = DEFAULT_MIN_SIZE_BEFORE_PART_UPLOAD
    multipart_upload_finalize_timeout: float = DEFAULT_MULTIPART_FINALIZE_TIMEOUT
    progress_update_interval: int = DEFAULT_PROGRESS_UPDATE_INTERVAL
    read_buffer_size: int = DEFAULT_READ_BUFFER_SIZE

    def __post_init__(self) -> None:
        if self.concurrent_service_requests < 1:
            object.__setattr__(self, "concurrent_service_requests", 1)
        if self.min_size_before_part_upload < 0:
            raise ValueError("min_size_before_part_upload must not be negative")
        if self.multipart_upload_finalize_timeout < 0:
            raise ValueError("multipart_upload_finalize_timeout must not be negative")
        if self.progress_update_interval < 1:
            raise ValueError("progress_update_interval must be positive")
        if self.read_buffer_size < 1:
            raise ValueError("read_buffer_size must be positive")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "TransferConfig":
        return cls(
            concurrent_service_requests=settings.TRANSFER_CONCURRENT_SERVICE_REQUESTS,
            min_size_before_part_upload=settings.TRANSFER_MIN_SIZE_BEFORE_PART_UPLOAD,
            multipart_upload_finalize_timeout=(
                settings.TRANSFER_MULTIPART_FINALIZE_TIMEOUT
            ),
            progress_update_interval=settings.TRANSFER_PROGRESS_UPDATE_INTERVAL,
        )

    def replace(self, **changes) -> "TransferConfig":
        return dataclasses.replace(self, **changes)
