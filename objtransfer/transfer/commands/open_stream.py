from __future__ import annotations

import logging
from typing import BinaryIO

from objtransfer.common.cancellation import CancellationToken
from objtransfer.infra.storage.client import ObjectStorageClient
from objtransfer.transfer.commands.base import BaseCommand
from objtransfer.transfer.config import TransferConfig
from objtransfer.transfer.progress import ProgressDispatcher
from objtransfer.transfer.requests import OpenStreamRequest

logger = logging.getLogger(__name__)


class OpenStreamCommand(BaseCommand):
    """Opens the object body for streaming reads; the caller closes it."""

    def __init__(
        self,
        client: ObjectStorageClient,
        config: TransferConfig,
        request: OpenStreamRequest,
        *,
        token: CancellationToken,
        dispatcher: ProgressDispatcher,
    ) -> None:
        super().__init__(client, config, token=token, dispatcher=dispatcher)
        self._request = request

    async def execute(self) -> BinaryIO:
        request = self._request
        response = await self._call(
            self._client.get_object,
            bucket=request.bucket,
            object_key=request.key,
            version_id=request.version_id,
            encryption=request.encryption,
            modified_since=request.modified_since,
            unmodified_since=request.unmodified_since,
        )
        logger.debug(
            "object_stream_opened key=%s content_length=%s",
            request.key,
            response.content_length,
        )
        return response.body
