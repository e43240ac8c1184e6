from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    BinaryIO,
    Callable,
    Generic,
    Iterable,
    Sequence,
    TypeVar,
)

from objtransfer.common.cancellation import CancellationToken, TransferCancelledError
from objtransfer.infra.storage.client import ObjectStorageClient
from objtransfer.transfer.config import TransferConfig
from objtransfer.transfer.progress import ProgressDispatcher

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class AdmissionGate:
    """Counting semaphore that bounds in-flight storage operations.

    ``in_flight`` and ``peak_in_flight`` are only touched on the event loop.
    """

    def __init__(self, limit: int) -> None:
        self.limit = max(1, int(limit))
        self._semaphore = asyncio.Semaphore(self.limit)
        self.in_flight = 0
        self.peak_in_flight = 0

    async def acquire(self, token: CancellationToken) -> None:
        token.raise_if_cancelled()
        await self._semaphore.acquire()
        if token.cancelled:
            self._semaphore.release()
            token.raise_if_cancelled()
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)

    def release(self) -> None:
        self.in_flight -= 1
        self._semaphore.release()


async def wait_all_or_first_exception(
    tasks: Sequence[asyncio.Task[T]], stop: CancellationToken
) -> list[T]:
    """Wait for every task; fail with the first non-cancellation error.

    The first failure trips ``stop`` so that no new siblings are scheduled,
    while siblings already running are allowed to settle. Cancellation is
    only reported when no real error occurred.
    """
    pending = set(tasks)
    first_error: BaseException | None = None
    cancellation: BaseException | None = None
    try:
        while pending:
            done, pending = await asyncio.wait(
                pending, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                if task.cancelled():
                    if cancellation is None:
                        cancellation = TransferCancelledError("task cancelled")
                    stop.cancel("task cancelled")
                    continue
                exc = task.exception()
                if exc is None:
                    continue
                if isinstance(exc, TransferCancelledError):
                    if cancellation is None:
                        cancellation = exc
                    continue
                if first_error is None:
                    first_error = exc
                    stop.cancel(f"sibling failed: {exc}")
    except asyncio.CancelledError:
        stop.cancel("cancelled")
        raise
    if first_error is not None:
        raise first_error
    if cancellation is not None:
        raise cancellation
    return [task.result() for task in tasks]


class FanOut(Generic[R]):
    """Runs one coroutine per item, each under every gate in ``gates``.

    Gates are acquired in order before a task is created and released in
    reverse order when it finishes, so a tripped ``stop`` token prevents
    any further item from being dispatched.
    """

    def __init__(
        self, *, gates: Sequence[AdmissionGate], stop: CancellationToken
    ) -> None:
        self._gates = list(gates)
        self._stop = stop
        self.tasks: list[asyncio.Task[R]] = []

    async def run(
        self, items: Iterable[T], work: Callable[[T], Awaitable[R]]
    ) -> list[R]:
        interrupted: TransferCancelledError | None = None
        try:
            for item in items:
                await self._admit()
                self.tasks.append(asyncio.create_task(self._guarded(work(item))))
        except TransferCancelledError as exc:
            interrupted = exc
            self._stop.cancel(str(exc))
        except asyncio.CancelledError:
            self._stop.cancel("cancelled")
            raise
        results = await wait_all_or_first_exception(self.tasks, self._stop)
        if interrupted is not None:
            raise interrupted
        return results

    async def settle(self, timeout: float | None) -> None:
        """Wait (bounded by ``timeout``) for dispatched tasks to finish."""
        pending = [task for task in self.tasks if not task.done()]
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    async def _admit(self) -> None:
        acquired: list[AdmissionGate] = []
        try:
            for gate in self._gates:
                await gate.acquire(self._stop)
                acquired.append(gate)
        except BaseException:
            for gate in reversed(acquired):
                gate.release()
            raise

    async def _guarded(self, coro: Awaitable[R]) -> R:
        try:
            return await coro
        except TransferCancelledError:
            raise
        except Exception as exc:
            self._stop.cancel(f"sibling failed: {exc}")
            raise
        finally:
            for gate in reversed(self._gates):
                gate.release()


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def read_fully(stream: BinaryIO, size: int) -> bytes:
    """Read until ``size`` bytes or end of stream, whichever comes first."""
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class PartStream:
    """Window of ``length`` bytes starting at absolute position ``start`` of ``raw``.

    Positions reported by ``tell``/``seek`` are relative to the window, so a
    storage client rewinding the body for a retry stays inside the part.
    """

    def __init__(
        self, raw: BinaryIO, *, start: int, length: int, owns_raw: bool
    ) -> None:
        self._raw = raw
        self._start = start
        self._length = length
        self._owns_raw = owns_raw
        self._position = 0
        self._closed = False
        self._raw.seek(start)

    @property
    def closed(self) -> bool:
        return self._closed

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def read(self, size: int | None = -1) -> bytes:
        remaining = self._length - self._position
        if remaining <= 0:
            return b""
        if size is None or size < 0 or size > remaining:
            size = remaining
        data = self._raw.read(size)
        self._position += len(data)
        return data

    def tell(self) -> int:
        return self._position

    def seek(self, offset: int, whence: int = 0) -> int:
        if whence == 0:
            target = offset
        elif whence == 1:
            target = self._position + offset
        elif whence == 2:
            target = self._length + offset
        else:
            raise ValueError(f"invalid whence ({whence})")
        target = min(max(0, target), self._length)
        self._raw.seek(self._start + target)
        self._position = target
        return target

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_raw:
            self._raw.close()

    def __enter__(self) -> "PartStream":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class BaseCommand:
    """State and helpers shared by transfer commands."""

    def __init__(
        self,
        client: ObjectStorageClient,
        config: TransferConfig,
        *,
        token: CancellationToken,
        dispatcher: ProgressDispatcher,
    ) -> None:
        self._client = client
        self._config = config
        self._token = token
        self._dispatcher = dispatcher

    @property
    def client(self) -> ObjectStorageClient:
        return self._client

    def _progress_sink(
        self,
        callback: Callable[[Any], None] | None,
        listener: Callable[[Any], None] | None = None,
    ) -> Callable[[Any], None]:
        """Send events to an in-process ``listener``, then to the observer."""

        def sink(event: Any) -> None:
            if listener is not None:
                listener(event)
            self._dispatcher.publish(callback, event)

        return sink

    async def _call(self, fn: Callable[..., R], /, *args: Any, **kwargs: Any) -> R:
        """Run a blocking storage call in the default executor."""
        self._token.raise_if_cancelled()
        return await asyncio.to_thread(functools.partial(fn, *args, **kwargs))
