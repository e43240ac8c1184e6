from __future__ import annotations

from objtransfer.common.cancellation import TransferCancelledError


class TransferError(Exception):
    """Base class for failures raised by the transfer layer itself."""


class TransferValidationError(TransferError, ValueError):
    """Raised before any network call when a request is unusable."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class IncompleteMultipartUploadError(TransferError):
    """Raised when the completed parts do not match the planned parts."""

    def __init__(self, *, expected: int, completed: int) -> None:
        super().__init__(
            f"multipart upload finished {completed} of {expected} planned parts"
        )
        self.expected = expected
        self.completed = completed


__all__ = [
    "IncompleteMultipartUploadError",
    "TransferCancelledError",
    "TransferError",
    "TransferValidationError",
]
