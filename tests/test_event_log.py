"""Tests for the bounded error/event log."""

import logging
from unittest.mock import MagicMock

from event_log import ErrorLog
from pod_state import Severity


def test_entries_are_timestamped_and_unique(error_log, clock):
    first = error_log.error("one")
    clock.advance(1)
    second = error_log.warning("two", kind="ParseError")
    assert first.id != second.id
    assert second.timestamp - first.timestamp == 1
    assert second.severity is Severity.WARNING
    assert second.kind == "ParseError"


def test_insertion_order(error_log):
    for i in range(5):
        error_log.info(f"msg {i}")
    assert [e.message for e in error_log.entries()] == [f"msg {i}" for i in range(5)]


def test_oldest_evicted_at_capacity(clock):
    log = ErrorLog(max_entries=1000, clock=clock)
    for i in range(1005):
        log.error(f"msg {i}")
    entries = log.entries()
    assert len(entries) == 1000
    assert entries[0].message == "msg 5"
    assert entries[-1].message == "msg 1004"


def test_clear(error_log):
    error_log.error("boom")
    error_log.clear()
    assert error_log.entries() == []
    assert len(error_log) == 0


def test_string_severity_accepted(error_log):
    entry = error_log.record("hot", "warning")
    assert entry.severity is Severity.WARNING


def test_subscribers_notified(error_log):
    listener = MagicMock()
    error_log.subscribe(listener)
    entry = error_log.error("x")
    listener.assert_called_once_with(entry)
    error_log.unsubscribe(listener)
    error_log.error("y")
    listener.assert_called_once()


def test_failing_subscriber_does_not_break_recording(error_log):
    error_log.subscribe(MagicMock(side_effect=RuntimeError("ui gone")))
    error_log.error("still recorded")
    assert len(error_log) == 1


def test_entries_mirrored_to_logging(error_log, caplog):
    with caplog.at_level(logging.WARNING, logger="event_log"):
        error_log.warning("Low pressure", kind="Emergency")
    assert "[Emergency] Low pressure" in caplog.text


def test_to_dict(error_log):
    entry = error_log.error("boom", kind="SendFailed")
    data = entry.to_dict()
    assert data["severity"] == "error"
    assert data["kind"] == "SendFailed"
    assert data["message"] == "boom"
