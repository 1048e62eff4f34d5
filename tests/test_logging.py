from __future__ import annotations

import io
import json
import logging
from collections.abc import Iterator

import pytest

from barcode_lab.job_context import job_id_var
from barcode_lab.logging import (
    _ConsoleFormatter,
    _JsonFormatter,
    get_logger,
    init_logging,
    log_event,
)


@pytest.fixture
def json_buf() -> Iterator[io.StringIO]:
    buf = io.StringIO()
    h = logging.StreamHandler(buf)
    h.setFormatter(_JsonFormatter())
    logger = get_logger()
    old_level = logger.level
    logger.setLevel(logging.DEBUG)
    logger.addHandler(h)
    try:
        yield buf
    finally:
        logger.removeHandler(h)
        logger.setLevel(old_level)


def _lines(buf: io.StringIO) -> list[dict[str, object]]:
    return [json.loads(line) for line in buf.getvalue().splitlines() if line.strip()]


def test_plain_message(json_buf: io.StringIO) -> None:
    get_logger().info("hello world")
    (rec,) = _lines(json_buf)
    assert rec["message"] == "hello world"
    assert rec["level"] == "INFO"
    assert rec["logger"] == "barcode_lab"
    assert "job_id" not in rec


def test_evt_fields_are_typed(json_buf: io.StringIO) -> None:
    log_event(
        "trial_done",
        {"trial": 3, "accuracy": 0.875, "stopped": False, "note": "has space", "mode": "grid"},
    )
    (rec,) = _lines(json_buf)
    assert rec["message"] == "trial_done"
    assert rec["trial"] == 3
    assert rec["accuracy"] == 0.875
    assert rec["stopped"] is False
    assert rec["mode"] == "grid"
    assert "note" not in rec


def test_job_id_from_context(json_buf: io.StringIO) -> None:
    token = job_id_var.set("job-1")
    try:
        get_logger().warning("slot_busy")
    finally:
        job_id_var.reset(token)
    (rec,) = _lines(json_buf)
    assert rec["job_id"] == "job-1"


def test_exc_info_present(json_buf: io.StringIO) -> None:
    try:
        raise ValueError("boom")
    except ValueError:
        get_logger().exception("oops")
    (rec,) = _lines(json_buf)
    assert "Traceback" in str(rec["exc_info"])


def test_console_formatter_splits_event_and_pairs() -> None:
    fmt = _ConsoleFormatter()
    rec = logging.LogRecord(
        "barcode_lab", logging.INFO, __file__, 1, "job_done accuracy=0.9 x", None, None
    )
    out = fmt.format(rec)
    assert "job_done" in out and "accuracy" in out and "0.9" in out and "[INFO]" in out


def test_init_logging_does_not_stack_handlers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BARCODE_LAB_LOG_LEVEL", "debug")
    logger = get_logger()
    saved = (list(logger.handlers), logger.level, logger.propagate)
    try:
        init_logging("json")
        init_logging("json")
        streams = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
        assert len(streams) == 1
        assert logger.level == logging.DEBUG
        assert isinstance(streams[0].formatter, _JsonFormatter)
        init_logging("pretty")
        assert isinstance(logger.handlers[-1].formatter, _ConsoleFormatter)
    finally:
        logger.handlers = saved[0]
        logger.setLevel(saved[1])
        logger.propagate = saved[2]
