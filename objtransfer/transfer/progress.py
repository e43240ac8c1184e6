"""Byte-accurate progress reporting.

Body streams are wrapped in ``ProgressStream`` which counts the bytes the
storage client (or the download loop) actually reads. Counts flow into an
aggregator that owns the cumulative total for one transfer, and snapshots
are handed to a ``ProgressDispatcher`` that calls the observer on its own
thread so a slow observer never stalls the transfer.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Generic, TypeVar

from objtransfer.common.cancellation import CancellationToken

logger = logging.getLogger(__name__)

E = TypeVar("E")


def _percent(transferred: int, total: int | None) -> int:
    if total is None:
        return 0
    if total == 0:
        return 100
    return min(100, int(transferred * 100 // total))


@dataclass(frozen=True, slots=True)
class UploadProgress:
    bucket: str
    key: str
    file_path: str | None
    increment: int
    transferred: int
    total: int | None
    compensation: int = 0

    @property
    def percent_done(self) -> int:
        return _percent(self.transferred, self.total)


@dataclass(frozen=True, slots=True)
class DownloadProgress:
    bucket: str
    key: str
    file_path: str | None
    increment: int
    transferred: int
    total: int | None
    compensation: int = 0

    @property
    def percent_done(self) -> int:
        return _percent(self.transferred, self.total)


@dataclass(frozen=True, slots=True)
class DirectoryProgress:
    """Aggregate state of a directory transfer.

    The ``current_file*`` fields are only filled in when files are
    transferred one at a time.
    """

    files_completed: int
    total_files: int
    transferred: int
    total: int
    current_file: str | None = None
    current_file_transferred: int | None = None
    current_file_total: int | None = None

    @property
    def percent_done(self) -> int:
        return _percent(self.transferred, self.total)


class ProgressDispatcher:
    """Delivers events to observers on a single worker thread, in submission order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None

    def publish(self, callback: Callable[[Any], None] | None, event: Any) -> None:
        if callback is None:
            return
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="objtransfer-progress"
                )
            self._executor.submit(self._deliver, callback, event)

    @staticmethod
    def _deliver(callback: Callable[[Any], None], event: Any) -> None:
        try:
            callback(event)
        except Exception:
            # observer failures must not fail the transfer they observe
            logger.exception(
                "progress_callback_failed",
                extra={"extra": {"event_type": type(event).__name__}},
            )

    def close(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    async def drain(self) -> None:
        await asyncio.to_thread(self.close)


class RetryCompensator:
    """Remembers what one body stream already reported.

    When the storage client rewinds a body to resend it, the bytes reported
    past the new position are owed back and attached as ``compensation`` to
    the next report, so aggregators can add ``increment - compensation``.
    """

    def __init__(self) -> None:
        self.reported = 0
        self.owed = 0

    def rewind(self, position: int) -> None:
        if position < self.reported:
            self.owed += self.reported - position
            self.reported = position

    def settle(self, increment: int) -> int:
        owed, self.owed = self.owed, 0
        self.reported += increment
        return owed


class ProgressStream:
    """Read-only proxy that reports the bytes read through it.

    A report is made once the unreported byte count reaches ``interval``,
    when the stream has yielded ``length`` bytes, and at end of stream.
    """

    def __init__(
        self,
        raw: BinaryIO,
        *,
        length: int | None,
        interval: int,
        on_progress: Callable[[int, int], None],
        token: CancellationToken | None = None,
    ) -> None:
        self._raw = raw
        self._length = length
        self._interval = max(1, interval)
        self._on_progress = on_progress
        self._token = token
        self._compensator = RetryCompensator()
        self._pending = 0
        self._closed = False
        self._origin = raw.tell() if self._raw_seekable() else 0

    def _raw_seekable(self) -> bool:
        seekable = getattr(self._raw, "seekable", None)
        return bool(seekable and seekable())

    @property
    def transferred(self) -> int:
        return self._compensator.reported + self._pending

    @property
    def closed(self) -> bool:
        return self._closed

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return self._raw_seekable()

    def read(self, size: int | None = -1) -> bytes:
        if self._token is not None:
            self._token.raise_if_cancelled()
        data = self._raw.read(-1 if size is None else size)
        count = len(data)
        self._pending += count
        if count == 0:
            self.flush_progress()
        elif self._pending >= self._interval or (
            self._length is not None and self.transferred >= self._length
        ):
            self.flush_progress()
        return data

    def flush_progress(self) -> None:
        if self._pending == 0 and self._compensator.owed == 0:
            return
        increment, self._pending = self._pending, 0
        compensation = self._compensator.settle(increment)
        self._on_progress(increment, compensation)

    def tell(self) -> int:
        return self._raw.tell()

    def seek(self, offset: int, whence: int = 0) -> int:
        position = self._raw.seek(offset, whence)
        relative = position - self._origin
        if relative < self._compensator.reported:
            self._compensator.rewind(relative)
            self._pending = 0
        else:
            self._pending = relative - self._compensator.reported
        return position

    def close(self) -> None:
        # the wrapped stream belongs to whoever created this proxy
        self._closed = True

    def __enter__(self) -> "ProgressStream":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class TransferProgressAggregator(Generic[E]):
    """Cumulative byte count of one object transfer.

    ``record`` may be called from several worker threads at once (one per
    part); snapshots are built and published under the same lock so
    observers see them in the order the counts were applied.
    """

    def __init__(
        self,
        *,
        total: int | None,
        make_event: Callable[[int, int, int | None, int], E],
        sink: Callable[[E], None],
    ) -> None:
        self._lock = threading.Lock()
        self._total = total
        self._make_event = make_event
        self._sink = sink
        self._transferred = 0
        self._last_published: tuple[int, int | None] | None = None

    @property
    def transferred(self) -> int:
        with self._lock:
            return self._transferred

    def set_total(self, total: int | None) -> None:
        with self._lock:
            self._total = total

    def record(self, increment: int, compensation: int = 0) -> None:
        with self._lock:
            self._transferred += increment - compensation
            self._publish(increment, compensation)

    def reconcile(self, actual: int) -> None:
        """Force the cumulative count to ``actual`` bytes (after a failed attempt)."""
        with self._lock:
            delta = actual - self._transferred
            if delta == 0:
                return
            self._transferred = actual
            if delta > 0:
                self._publish(delta, 0)
            else:
                self._publish(0, -delta)

    def finish(self, total: int | None = None) -> None:
        """Publish the final snapshot of a successful transfer.

        ``total`` resolves a transfer whose size was unknown up front.
        """
        with self._lock:
            if total is not None:
                self._total = total
            if self._total is None:
                self._total = self._transferred
            increment = self._total - self._transferred
            if increment < 0:
                self._total = self._transferred
                increment = 0
            self._transferred = self._total
            if increment == 0 and self._last_published == (
                self._transferred,
                self._total,
            ):
                return
            self._publish(increment, 0)

    def _publish(self, increment: int, compensation: int) -> None:
        self._last_published = (self._transferred, self._total)
        self._sink(
            self._make_event(
                increment, self._transferred, self._total, compensation
            )
        )


class DirectoryProgressAggregator:
    """Folds per-file progress into one ``DirectoryProgress`` stream.

    Child events arrive synchronously from the per-file aggregators.
    """

    def __init__(
        self,
        *,
        total_files: int,
        total_bytes: int,
        serial: bool,
        sink: Callable[[DirectoryProgress], None],
    ) -> None:
        self._lock = threading.Lock()
        self._total_files = total_files
        self._total_bytes = total_bytes
        self._serial = serial
        self._sink = sink
        self._files_completed = 0
        self._transferred = 0
        self._published = False

    @property
    def files_completed(self) -> int:
        with self._lock:
            return self._files_completed

    def child_progress(self, event: UploadProgress | DownloadProgress) -> None:
        with self._lock:
            self._transferred += event.increment - event.compensation
            if self._serial:
                self._publish(
                    current_file=event.file_path or event.key,
                    current_file_transferred=event.transferred,
                    current_file_total=event.total,
                )
            else:
                self._publish()

    def file_completed(self) -> None:
        with self._lock:
            self._files_completed += 1
            self._publish()

    def finish(self) -> None:
        with self._lock:
            if self._published and self._transferred == self._total_bytes:
                return
            self._publish()

    def _publish(self, **current: Any) -> None:
        self._published = True
        self._sink(
            DirectoryProgress(
                files_completed=self._files_completed,
                total_files=self._total_files,
                transferred=self._transferred,
                total=self._total_bytes,
                **current,
            )
        )
