"""Tests for resumable downloads and streamed reads."""

import pytest

from objtransfer.common.cancellation import CancellationToken, TransferCancelledError
from objtransfer.infra.storage.client import (
    StorageError,
    StorageServiceError,
    StorageTransportError,
    TransportFailureReason,
)
from objtransfer.transfer.commands.download import is_retryable
from objtransfer.transfer.requests import DownloadRequest, OpenStreamRequest
from tests.conftest import BUCKET

PAYLOAD = b"0123456789"


def _reset(message: str = "connection reset") -> StorageTransportError:
    return StorageTransportError(
        message, reason=TransportFailureReason.CONNECTION_RESET
    )


class TestRetryClassification:
    @pytest.mark.parametrize(
        "reason",
        [
            TransportFailureReason.CONNECT_FAILURE,
            TransportFailureReason.CONNECTION_CLOSED,
            TransportFailureReason.CONNECTION_RESET,
            TransportFailureReason.KEEP_ALIVE_FAILURE,
            TransportFailureReason.NAME_RESOLUTION_FAILURE,
            TransportFailureReason.RECEIVE_FAILURE,
        ],
    )
    def test_transient_transport_reasons(self, reason):
        assert is_retryable(StorageTransportError("x", reason=reason))

    def test_other_failures_are_fatal(self):
        assert not is_retryable(
            StorageTransportError("x", reason=TransportFailureReason.OTHER)
        )
        assert not is_retryable(StorageServiceError("x", status_code=403))
        assert not is_retryable(ValueError("x"))

    def test_io_errors_are_retryable(self):
        assert is_retryable(ConnectionResetError())
        assert is_retryable(OSError("disk hiccup"))


class TestDownload:
    @pytest.mark.asyncio
    async def test_downloads_whole_object(self, utility, storage, tmp_path):
        storage.put(BUCKET, "obj", PAYLOAD)
        target = tmp_path / "nested" / "dir" / "obj.bin"
        events = []

        await utility.download(
            DownloadRequest(
                bucket=BUCKET,
                key="obj",
                file_path=target,
                progress_callback=events.append,
            )
        )

        assert target.read_bytes() == PAYLOAD
        assert storage.get_ranges == [None]
        assert events[-1].transferred == len(PAYLOAD)
        assert events[-1].total == len(PAYLOAD)
        assert events[-1].percent_done == 100

    @pytest.mark.asyncio
    async def test_resumes_from_local_length(self, utility, storage, tmp_path):
        storage.put(BUCKET, "obj", PAYLOAD)
        storage.body_failures = [(3, _reset())]
        target = tmp_path / "obj.bin"
        events = []

        await utility.download_file(
            BUCKET, "obj", target, progress_callback=events.append
        )

        assert target.read_bytes() == PAYLOAD
        assert storage.get_ranges == [None, "bytes=3-"]
        assert events[-1].transferred == len(PAYLOAD)

    @pytest.mark.asyncio
    async def test_io_error_is_retried(self, utility, storage, tmp_path):
        storage.put(BUCKET, "obj", PAYLOAD)
        storage.failures["get_object"] = [ConnectionResetError("peer reset")]
        target = tmp_path / "obj.bin"

        await utility.download_file(BUCKET, "obj", target)

        assert target.read_bytes() == PAYLOAD
        assert storage.calls.count("get_object") == 2

    @pytest.mark.asyncio
    async def test_changed_etag_restarts_from_scratch(
        self, utility, storage, tmp_path
    ):
        storage.put(BUCKET, "obj", PAYLOAD)
        replacement = b"replaced-content"
        storage.body_failures = [(3, _reset())]
        storage.before_get = [
            lambda: None,
            lambda: storage.put(BUCKET, "obj", replacement),
        ]
        target = tmp_path / "obj.bin"
        events = []

        await utility.download_file(
            BUCKET, "obj", target, progress_callback=events.append
        )

        assert target.read_bytes() == replacement
        assert storage.get_ranges == [None, "bytes=3-", None]
        assert events[-1].transferred == len(replacement)
        assert events[-1].total == len(replacement)

    @pytest.mark.asyncio
    async def test_failed_restart_does_not_resume_on_old_content(
        self, utility, storage, tmp_path
    ):
        storage.put(BUCKET, "obj", b"A" * 20)
        storage.body_failures = [(8, _reset())]

        def drop_connection():
            raise ConnectionResetError("peer reset")

        storage.before_get = [
            lambda: None,
            lambda: storage.put(BUCKET, "obj", b"B" * 20),
            drop_connection,
        ]
        target = tmp_path / "obj.bin"
        events = []

        await utility.download_file(
            BUCKET, "obj", target, progress_callback=events.append
        )

        assert target.read_bytes() == b"B" * 20
        assert storage.get_ranges == [None, "bytes=8-", "bytes=0-"]
        assert events[-1].transferred == 20

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, utility, storage, tmp_path):
        storage.max_error_retries = 2
        storage.put(BUCKET, "obj", PAYLOAD)
        storage.body_failures = [(0, _reset("first")), (0, _reset("second"))]

        with pytest.raises(StorageTransportError, match="second"):
            await utility.download_file(BUCKET, "obj", tmp_path / "obj.bin")

        assert storage.calls.count("get_object") == 2

    @pytest.mark.asyncio
    async def test_service_error_is_not_retried(self, utility, storage, tmp_path):
        with pytest.raises(StorageServiceError) as excinfo:
            await utility.download_file(BUCKET, "missing", tmp_path / "x.bin")

        assert excinfo.value.status_code == 404
        assert storage.calls == ["get_object"]

    @pytest.mark.asyncio
    async def test_wrapped_io_error_is_unwrapped(self, utility, storage, tmp_path):
        storage.put(BUCKET, "obj", PAYLOAD)
        cause = PermissionError("access denied")
        wrapper = RuntimeError("write failed")
        wrapper.__cause__ = cause
        storage.failures["get_object"] = [wrapper]

        with pytest.raises(PermissionError) as excinfo:
            await utility.download_file(BUCKET, "obj", tmp_path / "obj.bin")

        assert excinfo.value is cause

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self, utility, storage, tmp_path):
        storage.put(BUCKET, "obj", PAYLOAD)
        storage.failures["get_object"] = [ValueError("bad header")]

        with pytest.raises(StorageError, match="Failed to download obj") as excinfo:
            await utility.download_file(BUCKET, "obj", tmp_path / "obj.bin")

        assert isinstance(excinfo.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_cancelled_download_makes_no_calls(self, utility, storage, tmp_path):
        storage.put(BUCKET, "obj", PAYLOAD)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(TransferCancelledError):
            await utility.download_file(BUCKET, "obj", tmp_path / "o", cancel=token)

        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_cancel_while_streaming_body(self, utility, storage, tmp_path):
        storage.put(BUCKET, "obj", PAYLOAD)
        token = CancellationToken()
        storage.before_get = [lambda: token.cancel("shutting down")]

        with pytest.raises(TransferCancelledError):
            await utility.download_file(BUCKET, "obj", tmp_path / "o", cancel=token)


class TestOpenStream:
    @pytest.mark.asyncio
    async def test_returns_readable_body(self, utility, storage):
        storage.put(BUCKET, "obj", PAYLOAD)

        body = await utility.open_stream(OpenStreamRequest(bucket=BUCKET, key="obj"))
        try:
            assert body.read() == PAYLOAD
        finally:
            body.close()

    @pytest.mark.asyncio
    async def test_missing_object_raises(self, utility):
        with pytest.raises(StorageServiceError):
            await utility.open_stream(OpenStreamRequest(bucket=BUCKET, key="nope"))
