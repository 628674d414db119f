"""Tests for JSON log formatting and context loggers."""

import json
import logging

from stocksync.logging_config import SyncJsonFormatter, get_logger


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="stocksync.ingest.scanner",
        level=logging.WARNING,
        pathname="/app/stocksync/ingest/scanner.py",
        lineno=42,
        msg="Scroll cursor rejected for user %s",
        args=(123456789,),
        exc_info=None,
        func="_step",
    )
    record.__dict__.update(extra)
    return record


def test_json_formatter_adds_call_site_and_context():
    formatter = SyncJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    line = json.loads(formatter.format(_record(user_id=123456789, event_id="abc")))

    assert line["message"] == "Scroll cursor rejected for user 123456789"
    assert line["level"] == "WARNING"
    assert line["logger"] == "stocksync.ingest.scanner"
    assert line["source"] == "scanner.py:42"
    assert line["function"] == "_step"
    assert line["user_id"] == 123456789
    assert line["event_id"] == "abc"
    assert "item_id" not in line
    assert line["timestamp"].endswith("Z")


def test_context_logger_merges_extra(caplog):
    log = get_logger("stocksync.tests", user_id=7)

    with caplog.at_level(logging.INFO, logger="stocksync.tests"):
        log.info("page stored", extra={"item_id": "MLM1"})
        log.info("override", extra={"user_id": 8})

    first, second = caplog.records
    assert first.user_id == 7
    assert first.item_id == "MLM1"
    assert second.user_id == 8
