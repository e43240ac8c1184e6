from objtransfer.common.cancellation import CancellationToken

from .config import MAX_PARTS, MIN_PART_SIZE, TransferConfig, plan_part_size
from .errors import (
    IncompleteMultipartUploadError,
    TransferCancelledError,
    TransferError,
    TransferValidationError,
)
from .progress import DirectoryProgress, DownloadProgress, UploadProgress
from .requests import (
    DownloadDirectoryRequest,
    DownloadRequest,
    OpenStreamRequest,
    UploadDirectoryRequest,
    UploadRequest,
)
from .utility import TransferUtility

__all__ = [
    "CancellationToken",
    "DirectoryProgress",
    "DownloadDirectoryRequest",
    "DownloadProgress",
    "DownloadRequest",
    "IncompleteMultipartUploadError",
    "MAX_PARTS",
    "MIN_PART_SIZE",
    "OpenStreamRequest",
    "TransferCancelledError",
    "TransferConfig",
    "TransferError",
    "TransferUtility",
    "TransferValidationError",
    "UploadDirectoryRequest",
    "UploadProgress",
    "UploadRequest",
    "plan_part_size",
]
