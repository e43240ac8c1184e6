"""Cooperative cancellation shared by the event loop and worker threads."""

from __future__ import annotations

import threading


class TransferCancelledError(Exception):
    """Raised when a transfer stops because its cancellation token fired."""


class CancellationToken:
    """A thread-safe cancellation flag.

    Tokens can be linked: a child token created by ``linked()`` reports
    cancellation when either it or any of its ancestors has been cancelled,
    while cancelling the child leaves the parent untouched.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str | None:
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def linked(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TransferCancelledError(self.reason or "transfer cancelled")
