from __future__ import annotations

import logging
from datetime import datetime

from objtransfer.common.cancellation import CancellationToken
from objtransfer.infra.observability.metrics import MULTIPART_ABORTS
from objtransfer.infra.storage.client import (
    MultipartUploadListing,
    MultipartUploadSummary,
    ObjectStorageClient,
)
from objtransfer.transfer.commands.base import (
    AdmissionGate,
    BaseCommand,
    FanOut,
    as_utc,
)
from objtransfer.transfer.config import TransferConfig
from objtransfer.transfer.progress import ProgressDispatcher

logger = logging.getLogger(__name__)


class AbortMultipartUploadsCommand(BaseCommand):
    """Aborts every multipart upload in ``bucket`` initiated before a cutoff.

    Listing pages are walked to the end before any abort is sent; aborts
    then run under the configured concurrency.
    """

    def __init__(
        self,
        client: ObjectStorageClient,
        config: TransferConfig,
        bucket: str,
        initiated_before: datetime,
        *,
        token: CancellationToken,
        dispatcher: ProgressDispatcher,
    ) -> None:
        super().__init__(client, config, token=token, dispatcher=dispatcher)
        self._bucket = bucket
        self._cutoff = as_utc(initiated_before)
        self.gate: AdmissionGate | None = None

    async def execute(self) -> int:
        stale = [item for item in await self._list_uploads() if self._is_stale(item)]
        logger.info(
            "multipart_sweep_started bucket=%s stale=%s cutoff=%s",
            self._bucket,
            len(stale),
            self._cutoff.isoformat(),
        )
        self.gate = AdmissionGate(self._config.concurrent_service_requests)
        stop = self._token.linked()
        fan_out: FanOut[None] = FanOut(gates=[self.gate], stop=stop)
        await fan_out.run(stale, self._abort)
        logger.info(
            "multipart_sweep_completed bucket=%s aborted=%s", self._bucket, len(stale)
        )
        return len(stale)

    async def _list_uploads(self) -> list[MultipartUploadSummary]:
        uploads: list[MultipartUploadSummary] = []
        key_marker: str | None = None
        upload_id_marker: str | None = None
        while True:
            page: MultipartUploadListing = await self._call(
                self._client.list_multipart_uploads,
                bucket=self._bucket,
                key_marker=key_marker,
                upload_id_marker=upload_id_marker,
            )
            uploads.extend(page.uploads)
            if not page.is_truncated:
                return uploads
            key_marker = page.next_key_marker
            upload_id_marker = page.next_upload_id_marker

    def _is_stale(self, item: MultipartUploadSummary) -> bool:
        return item.initiated is not None and as_utc(item.initiated) < self._cutoff

    async def _abort(self, item: MultipartUploadSummary) -> None:
        await self._call(
            self._client.abort_multipart_upload,
            bucket=self._bucket,
            object_key=item.object_key,
            upload_id=item.upload_id,
        )
        MULTIPART_ABORTS.labels(outcome="swept").inc()
        logger.debug(
            "multipart_swept upload_id=%s key=%s", item.upload_id, item.object_key
        )
