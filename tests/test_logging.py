import json
import logging
import sys

from objtransfer.common.logging import JsonFormatter, setup_logging


def _record(**kwargs) -> logging.LogRecord:
    record = logging.LogRecord(
        name="objtransfer.transfer.utility",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="transfer_failed operation=%s",
        args=("upload",),
        exc_info=kwargs.pop("exc_info", None),
    )
    for key, value in kwargs.items():
        setattr(record, key, value)
    return record


def test_json_formatter_merges_extra():
    payload = json.loads(
        JsonFormatter().format(_record(extra={"bucket": "b", "parts": 3}))
    )

    assert payload == {
        "level": "INFO",
        "logger": "objtransfer.transfer.utility",
        "message": "transfer_failed operation=upload",
        "bucket": "b",
        "parts": 3,
    }


def test_json_formatter_includes_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record(exc_info=sys.exc_info())

    payload = json.loads(JsonFormatter().format(record))

    assert "RuntimeError: boom" in payload["exception"]


def test_setup_logging_sets_package_level():
    setup_logging("DEBUG", json_output=False)
    try:
        assert logging.getLogger("objtransfer").level == logging.DEBUG
        assert logging.getLogger("botocore").level == logging.WARNING
    finally:
        setup_logging("INFO")
