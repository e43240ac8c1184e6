from __future__ import annotations

import pytest

from objtransfer.transfer.commands.download import DownloadCommand
from objtransfer.transfer.config import TransferConfig
from objtransfer.transfer.utility import TransferUtility
from tests.transfer.mock_storage import MockStorageClient

BUCKET = "test-bucket"


@pytest.fixture(autouse=True)
def no_download_backoff(monkeypatch):
    monkeypatch.setattr(DownloadCommand, "max_backoff_seconds", 0.0)


@pytest.fixture
def storage() -> MockStorageClient:
    return MockStorageClient()


@pytest.fixture
def small_config() -> TransferConfig:
    """Thresholds scaled down so tests move a handful of bytes per part."""
    return TransferConfig(
        concurrent_service_requests=4,
        min_size_before_part_upload=16,
        progress_update_interval=4,
        read_buffer_size=4,
    )


@pytest.fixture
def utility(storage, small_config) -> TransferUtility:
    return TransferUtility(storage, small_config)
