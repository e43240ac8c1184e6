from prometheus_client import Counter

# Low-cardinality labels only: never put bucket names or keys here.
BYTES_TRANSFERRED = Counter(
    "objtransfer_bytes_total",
    "Bytes moved between local storage and the object store",
    ["direction"],
)

TRANSFERS = Counter(
    "objtransfer_transfers_total",
    "Finished transfer operations",
    ["operation", "outcome"],
)

DOWNLOAD_RETRIES = Counter(
    "objtransfer_download_retries_total",
    "Download attempts repeated after a transient failure or an ETag change",
    ["cause"],
)

MULTIPART_ABORTS = Counter(
    "objtransfer_multipart_aborts_total",
    "Multipart uploads aborted by failure cleanup or by the stale-upload sweep",
    ["outcome"],
)
