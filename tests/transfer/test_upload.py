"""Tests for single and multipart uploads through the transfer utility."""

import io
import math

import pytest

from objtransfer.common.cancellation import CancellationToken, TransferCancelledError
from objtransfer.infra.storage.client import StorageError, StorageServiceError
from objtransfer.transfer.commands.multipart_upload import MultipartUploadCommand
from objtransfer.transfer.commands.single_upload import SingleObjectUploadCommand
from objtransfer.transfer.commands.upload import (
    create_upload_command,
    resolve_content_length,
)
from objtransfer.transfer.config import MIN_PART_SIZE, TransferConfig, plan_part_size
from objtransfer.transfer.progress import ProgressDispatcher
from objtransfer.transfer.requests import DownloadRequest, UploadRequest
from objtransfer.transfer.utility import TransferUtility
from tests.conftest import BUCKET

DATA = bytes(range(24))


class ForwardOnlyStream:
    """A stream that can only be read front to back."""

    def __init__(self, data: bytes) -> None:
        self._inner = io.BytesIO(data)
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        return self._inner.read(size)

    def seekable(self) -> bool:
        return False

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def data_file(tmp_path):
    path = tmp_path / "payload.bin"
    path.write_bytes(DATA)
    return path


class TestCommandSelection:
    def test_below_threshold_uses_single_put(self, storage, small_config):
        request = UploadRequest(bucket=BUCKET, key="k", stream=io.BytesIO(b"x"))
        command = create_upload_command(
            storage,
            small_config,
            request,
            content_length=15,
            token=CancellationToken(),
            dispatcher=ProgressDispatcher(),
        )
        assert isinstance(command, SingleObjectUploadCommand)

    def test_threshold_and_unknown_length_use_multipart(self, storage, small_config):
        request = UploadRequest(bucket=BUCKET, key="k", stream=io.BytesIO(b"x"))
        for length in (16, None):
            command = create_upload_command(
                storage,
                small_config,
                request,
                content_length=length,
                token=CancellationToken(),
                dispatcher=ProgressDispatcher(),
            )
            assert isinstance(command, MultipartUploadCommand)

    def test_resolve_content_length_rewinds_stream(self):
        stream = io.BytesIO(b"0123456789")
        stream.seek(4)
        request = UploadRequest(bucket=BUCKET, key="k", stream=stream)
        assert resolve_content_length(request) == 10

        stream.seek(4)
        request.auto_reset_stream_position = False
        assert resolve_content_length(request) == 6
        assert stream.tell() == 4

    def test_resolve_content_length_unknown_for_unseekable(self):
        request = UploadRequest(bucket=BUCKET, key="k", stream=ForwardOnlyStream(b"ab"))
        assert resolve_content_length(request) is None


class TestSingleUpload:
    @pytest.mark.asyncio
    async def test_upload_file_derives_key_and_content_type(
        self, utility, storage, tmp_path
    ):
        path = tmp_path / "notes.txt"
        path.write_bytes(b"hello world")

        result = await utility.upload_file(path, BUCKET)

        assert result.object_key == "notes.txt"
        assert storage.data(BUCKET, "notes.txt") == b"hello world"
        assert storage.objects[(BUCKET, "notes.txt")].options.content_type == "text/plain"
        assert storage.calls == ["put_object"]

    @pytest.mark.asyncio
    async def test_zero_length_file_is_single_put(self, utility, storage, tmp_path):
        path = tmp_path / "empty.bin"
        path.write_bytes(b"")
        events = []

        await utility.upload(
            UploadRequest(bucket=BUCKET, file_path=path, progress_callback=events.append)
        )

        assert storage.data(BUCKET, "empty.bin") == b""
        assert storage.calls == ["put_object"]
        assert len(events) == 1
        assert events[0].total == 0
        assert events[0].percent_done == 100

    @pytest.mark.asyncio
    async def test_stream_is_closed_when_auto_close(self, utility, storage):
        stream = io.BytesIO(b"hello")

        await utility.upload_stream(stream, BUCKET, "greeting")

        assert stream.closed
        assert storage.data(BUCKET, "greeting") == b"hello"

    @pytest.mark.asyncio
    async def test_stream_left_open_and_rewound(self, utility, storage):
        stream = io.BytesIO(b"hello")
        stream.seek(3)

        await utility.upload_stream(
            stream, BUCKET, "greeting", auto_close_stream=False
        )

        assert not stream.closed
        assert storage.data(BUCKET, "greeting") == b"hello"

    @pytest.mark.asyncio
    async def test_object_attributes_are_forwarded(self, utility, storage, tmp_path):
        path = tmp_path / "a.bin"
        path.write_bytes(b"abc")

        await utility.upload(
            UploadRequest(
                bucket=BUCKET,
                key="tagged",
                file_path=path,
                content_type="application/x-custom",
                metadata={"owner": "ops"},
                tags={"env": "test"},
                storage_class="STANDARD_IA",
            )
        )

        options = storage.objects[(BUCKET, "tagged")].options
        assert options.content_type == "application/x-custom"
        assert options.metadata == {"owner": "ops"}
        assert options.tags == {"env": "test"}
        assert options.storage_class == "STANDARD_IA"

    @pytest.mark.asyncio
    async def test_put_failure_propagates(self, utility, storage, tmp_path):
        path = tmp_path / "a.bin"
        path.write_bytes(b"abc")
        boom = StorageServiceError("Failed to put object", status_code=500)
        storage.failures["put_object"] = [boom]

        with pytest.raises(StorageServiceError) as excinfo:
            await utility.upload_file(path, BUCKET)

        assert excinfo.value is boom


class TestMultipartUpload:
    @pytest.mark.asyncio
    async def test_known_length_file_parts(self, utility, storage, tmp_path):
        path = tmp_path / "big.bin"
        payload = bytes(range(50))
        path.write_bytes(payload)

        await utility.upload(
            UploadRequest(bucket=BUCKET, key="big", file_path=path, part_size=8)
        )

        assert storage.data(BUCKET, "big") == payload
        parts = sorted(storage.uploaded_parts)
        assert [number for number, _, _ in parts] == [1, 2, 3, 4, 5, 6, 7]
        assert parts[-1] == (7, 2, True)
        assert not any(is_last for _, _, is_last in parts[:-1])
        assert storage.calls.count("complete_multipart_upload") == 1
        assert storage.open_uploads() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("concurrency", [1, 5, 10])
    async def test_parts_respect_concurrency_limit(
        self, storage, small_config, tmp_path, concurrency
    ):
        path = tmp_path / "big.bin"
        path.write_bytes(bytes(192))
        storage.part_delay = 0.02
        command = create_upload_command(
            storage,
            small_config.replace(concurrent_service_requests=concurrency),
            UploadRequest(bucket=BUCKET, key="big", file_path=path, part_size=8),
            content_length=192,
            token=CancellationToken(),
            dispatcher=ProgressDispatcher(),
        )

        await command.execute()

        assert len(storage.uploaded_parts) == 24
        assert command.gate.limit == concurrency
        assert 1 <= command.gate.peak_in_flight <= concurrency
        assert 1 <= storage.peak_in_flight <= concurrency
        assert command.gate.in_flight == 0

    @pytest.mark.asyncio
    async def test_stream_source_sends_parts_one_at_a_time(self, utility, storage):
        storage.part_delay = 0.01
        stream = io.BytesIO(DATA)

        await utility.upload_stream(stream, BUCKET, "from-stream", part_size=8)

        assert storage.data(BUCKET, "from-stream") == DATA
        assert storage.peak_in_flight == 1
        assert stream.closed

    @pytest.mark.asyncio
    async def test_stream_uploads_from_current_position(self, utility, storage):
        stream = io.BytesIO(b"HEADER" + DATA)
        stream.seek(6)

        await utility.upload_stream(
            stream,
            BUCKET,
            "tail",
            part_size=8,
            auto_reset_stream_position=False,
        )

        assert storage.data(BUCKET, "tail") == DATA

    @pytest.mark.asyncio
    async def test_encrypting_client_uploads_file_parts_serially(
        self, utility, storage, data_file
    ):
        storage.is_encrypting = True
        storage.part_delay = 0.01

        await utility.upload(
            UploadRequest(bucket=BUCKET, key="enc", file_path=data_file, part_size=8)
        )

        assert storage.peak_in_flight == 1
        assert storage.data(BUCKET, "enc") == DATA

    @pytest.mark.asyncio
    async def test_part_failure_aborts_and_propagates_same_error(
        self, utility, storage, data_file
    ):
        boom = StorageServiceError("Failed to upload part 3", status_code=500)
        storage.part_failures[3] = boom

        with pytest.raises(StorageServiceError) as excinfo:
            await utility.upload(
                UploadRequest(bucket=BUCKET, key="k", file_path=data_file, part_size=4)
            )

        assert excinfo.value is boom
        assert storage.calls.count("abort_multipart_upload") == 1
        assert "complete_multipart_upload" not in storage.calls
        assert storage.open_uploads() == []
        assert (BUCKET, "k") not in storage.objects

    @pytest.mark.asyncio
    async def test_abort_failure_does_not_mask_original_error(
        self, utility, storage, data_file
    ):
        boom = StorageServiceError("Failed to upload part 1", status_code=500)
        storage.part_failures[1] = boom
        storage.failures["abort_multipart_upload"] = [StorageError("abort failed")]

        with pytest.raises(StorageServiceError) as excinfo:
            await utility.upload(
                UploadRequest(bucket=BUCKET, key="k", file_path=data_file, part_size=8)
            )

        assert excinfo.value is boom

    @pytest.mark.asyncio
    async def test_complete_failure_aborts(self, utility, storage, data_file):
        storage.failures["complete_multipart_upload"] = [
            StorageServiceError("Failed to complete multipart upload", status_code=400)
        ]

        with pytest.raises(StorageServiceError):
            await utility.upload(
                UploadRequest(bucket=BUCKET, key="k", file_path=data_file, part_size=8)
            )

        assert storage.calls.count("abort_multipart_upload") == 1


def _payload(size: int) -> bytes:
    return (bytes(range(251)) * (size // 251 + 1))[:size]


class TestRoundTrip:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "size",
        [
            0,
            1,
            MIN_PART_SIZE - 1,
            MIN_PART_SIZE,
            MIN_PART_SIZE + 1,
            3 * MIN_PART_SIZE + 1,
        ],
    )
    async def test_upload_then_download_returns_same_bytes(
        self, storage, tmp_path, size
    ):
        utility = TransferUtility(
            storage,
            TransferConfig(
                concurrent_service_requests=4,
                min_size_before_part_upload=MIN_PART_SIZE,
            ),
        )
        payload = _payload(size)
        source = tmp_path / "source.bin"
        source.write_bytes(payload)
        target = tmp_path / "copy.bin"

        await utility.upload(UploadRequest(bucket=BUCKET, key="obj", file_path=source))
        await utility.download(
            DownloadRequest(bucket=BUCKET, key="obj", file_path=target)
        )

        assert target.read_bytes() == payload
        part_size = plan_part_size(size)
        assert part_size == MIN_PART_SIZE
        if size < MIN_PART_SIZE:
            assert storage.calls.count("put_object") == 1
            assert "init_multipart_upload" not in storage.calls
        else:
            expected_parts = math.ceil(size / part_size)
            assert len(storage.uploaded_parts) == expected_parts
            (completed,) = [u for u in storage.uploads.values() if u["completed"]]
            assert sorted(completed["parts"]) == list(range(1, expected_parts + 1))


class TestUnseekableUpload:
    @pytest.mark.asyncio
    async def test_parts_cut_with_look_ahead(self, utility, storage, small_config):
        stream = ForwardOnlyStream(b"abcdefghij")

        await utility.upload_stream(
            stream,
            BUCKET,
            "piped",
            part_size=4,
            config=small_config.replace(read_buffer_size=2),
        )

        assert storage.data(BUCKET, "piped") == b"abcdefghij"
        assert storage.uploaded_parts == [(1, 6, False), (2, 4, True)]
        assert stream.closed

    @pytest.mark.asyncio
    async def test_empty_stream_sends_single_empty_part(self, utility, storage):
        events = []

        await utility.upload_stream(
            ForwardOnlyStream(b""), BUCKET, "empty", progress_callback=events.append
        )

        assert storage.uploaded_parts == [(1, 0, True)]
        assert storage.data(BUCKET, "empty") == b""
        assert events[-1].total == 0
        assert events[-1].percent_done == 100

    @pytest.mark.asyncio
    async def test_unknown_total_resolved_at_the_end(self, utility, storage):
        events = []

        await utility.upload_stream(
            ForwardOnlyStream(DATA),
            BUCKET,
            "piped",
            part_size=8,
            progress_callback=events.append,
        )

        assert all(event.total is None for event in events[:-1])
        assert events[-1].total == len(DATA)
        assert events[-1].transferred == len(DATA)

    @pytest.mark.asyncio
    async def test_part_failure_aborts(self, utility, storage):
        boom = StorageServiceError("Failed to upload part 2", status_code=503)
        storage.part_failures[2] = boom

        with pytest.raises(StorageServiceError) as excinfo:
            await utility.upload_stream(
                ForwardOnlyStream(DATA), BUCKET, "piped", part_size=8
            )

        assert excinfo.value is boom
        assert storage.calls.count("abort_multipart_upload") == 1
        assert storage.open_uploads() == []


class TestUploadCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, utility, storage, data_file):
        token = CancellationToken()
        token.cancel("caller gave up")

        with pytest.raises(TransferCancelledError, match="caller gave up"):
            await utility.upload_file(data_file, BUCKET, cancel=token)

        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_cancel_between_parts_aborts_upload(
        self, utility, storage, small_config, data_file
    ):
        token = CancellationToken()

        def cancel_after_first(part_number: int) -> None:
            if part_number == 1:
                token.cancel("stop")

        storage.after_part = cancel_after_first

        with pytest.raises(TransferCancelledError):
            await utility.upload(
                UploadRequest(bucket=BUCKET, key="k", file_path=data_file, part_size=8),
                cancel=token,
                config=small_config.replace(concurrent_service_requests=1),
            )

        assert [number for number, _, _ in storage.uploaded_parts] == [1]
        assert storage.calls.count("abort_multipart_upload") == 1
        assert storage.open_uploads() == []


class TestUploadProgress:
    @pytest.mark.asyncio
    async def test_cumulative_progress_is_monotonic_and_complete(
        self, utility, data_file
    ):
        events = []

        await utility.upload(
            UploadRequest(
                bucket=BUCKET,
                key="k",
                file_path=data_file,
                part_size=8,
                progress_callback=events.append,
            )
        )

        cumulative = [event.transferred for event in events]
        assert cumulative == sorted(cumulative)
        assert events[-1].transferred == len(DATA)
        assert events[-1].total == len(DATA)
        assert events[-1].percent_done == 100
        assert sum(event.increment for event in events) == len(DATA)

    @pytest.mark.asyncio
    async def test_rewound_part_is_compensated(self, utility, storage, data_file):
        storage.rewind_parts = {2}
        events = []

        await utility.upload(
            UploadRequest(
                bucket=BUCKET,
                key="k",
                file_path=data_file,
                part_size=8,
                progress_callback=events.append,
            )
        )

        assert any(event.compensation == 8 for event in events)
        net = sum(event.increment - event.compensation for event in events)
        assert net == len(DATA)
        assert events[-1].transferred == len(DATA)

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_fail_upload(
        self, utility, storage, data_file
    ):
        def observer(event):
            raise RuntimeError("observer bug")

        await utility.upload(
            UploadRequest(
                bucket=BUCKET,
                key="k",
                file_path=data_file,
                progress_callback=observer,
            )
        )

        assert storage.data(BUCKET, "k") == DATA
