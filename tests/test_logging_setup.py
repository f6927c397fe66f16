"""
Tests for logging_setup module.

Verifies:
- JSON structured logging format
- Session and client correlation
- PII fields and redaction
- Records from third-party loggers
- Root logger configuration
"""
import json
import logging
from datetime import datetime
from io import StringIO

import pytest

from logging_setup import (
    Component,
    JSONFormatter,
    get_logger,
    redact,
    setup_logging,
)


def _capture(redact_pii: bool = False) -> StringIO:
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(JSONFormatter(redact_pii=redact_pii))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG)
    return buffer


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def capture_logs():
    return _capture()


def _entries(buffer: StringIO) -> list:
    return [json.loads(line) for line in buffer.getvalue().splitlines() if line]


class TestJSONFormat:
    """One JSON object per record."""

    def test_basic_fields(self, capture_logs):
        get_logger(Component.RETRIEVAL).info("Query finished", client_id="acme", result_count=3)

        entry = _entries(capture_logs)[0]
        assert entry["severity"] == "info"
        assert entry["component"] == "retrieval"
        assert entry["message"] == "Query finished"
        assert entry["client_id"] == "acme"
        assert entry["result_count"] == 3

    def test_timestamp_is_record_time(self, capture_logs):
        get_logger(Component.ORCHESTRATOR).info("Timestamp test")

        dt = datetime.fromisoformat(_entries(capture_logs)[0]["timestamp"])
        assert dt.tzinfo is not None

    def test_no_record_internals(self, capture_logs):
        get_logger(Component.STORE).info("Snapshot written")

        entry = _entries(capture_logs)[0]
        for internal in ("msg", "args", "levelno", "pathname", "lineno", "exc_text"):
            assert internal not in entry

    def test_non_serializable_fields_are_stringified(self, capture_logs):
        get_logger(Component.STORE).info("Snapshot written", path=StringIO)

        assert "StringIO" in _entries(capture_logs)[0]["path"]

    def test_exception(self, capture_logs):
        try:
            raise ValueError("snapshot corrupt")
        except ValueError:
            get_logger(Component.STORE).exception("Failed to load snapshot")

        entry = _entries(capture_logs)[0]
        assert entry["severity"] == "error"
        assert "ValueError: snapshot corrupt" in entry["exception"]

    def test_third_party_logger_tagged_with_name(self, capture_logs):
        logging.getLogger("uvicorn.error").warning("Shutting down")

        entry = _entries(capture_logs)[0]
        assert entry["component"] == "uvicorn.error"
        assert "session_id" not in entry

    def test_severity_levels(self, capture_logs):
        logger = get_logger(Component.ERROR_HANDLER)
        logger.debug("d")
        logger.info("i")
        logger.warning("w")
        logger.error("e")
        logger.critical("c")

        assert [e["severity"] for e in _entries(capture_logs)] == [
            "debug", "info", "warning", "error", "critical"
        ]

    def test_disabled_level_not_written(self, capture_logs):
        logging.getLogger().setLevel(logging.INFO)
        get_logger(Component.RETRIEVAL).debug("noise")

        assert capture_logs.getvalue() == ""


class TestCorrelation:
    """session_id / client_id binding."""

    def test_session_id(self, capture_logs):
        get_logger(Component.ORCHESTRATOR, session_id="s1").info("Session test")

        assert _entries(capture_logs)[0]["session_id"] == "s1"

    def test_absent_when_not_bound(self, capture_logs):
        get_logger(Component.STORE).info("No session")

        entry = _entries(capture_logs)[0]
        assert "session_id" not in entry
        assert "client_id" not in entry

    def test_with_session_and_client(self, capture_logs):
        base = get_logger(Component.ORCHESTRATOR)
        bound = base.with_session("s1", client_id="acme")

        bound.info("Bound")
        bound.with_session("s2").info("Rebound")

        first, second = _entries(capture_logs)
        assert (first["session_id"], first["client_id"]) == ("s1", "acme")
        assert (second["session_id"], second["client_id"]) == ("s2", "acme")
        assert base.session_id is None

    def test_explicit_client_id_wins(self, capture_logs):
        get_logger(Component.API).with_session("s1", client_id="acme").info("x", client_id="globex")

        assert _entries(capture_logs)[0]["client_id"] == "globex"

    def test_component_string(self, capture_logs):
        get_logger("custom_component").info("Test")

        assert _entries(capture_logs)[0]["component"] == "custom_component"


class TestPII:
    """Personal data stays under the pii key and can be masked."""

    def test_pii_kept_separate(self, capture_logs):
        logger = get_logger(Component.ORCHESTRATOR, session_id="s1")
        logger.info_pii("Transcript received", transcript="my name is Jane", speaker_id="alice")

        entry = _entries(capture_logs)[0]
        assert entry["pii"] == {"transcript": "my name is Jane", "speaker_id": "alice"}
        assert "transcript" not in entry

    def test_redacted(self):
        buffer = _capture(redact_pii=True)

        get_logger(Component.ORCHESTRATOR).debug_pii("Transcript received", transcript="my name is Jane")

        assert _entries(buffer)[0]["pii"] == {"transcript": {"redacted": True, "length": 15}}

    def test_redact_none(self):
        assert redact(None) == {"redacted": True, "length": 0}


class TestSetupLogging:
    """Root logger configuration."""

    def test_json(self):
        setup_logging(level="DEBUG", use_json=True, redact_pii=True)

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.handlers[0].formatter.redact_pii is True

    def test_text_handles_foreign_records(self):
        setup_logging(level="info", use_json=False)

        root = logging.getLogger()
        assert root.level == logging.INFO
        formatter = root.handlers[0].formatter
        assert not isinstance(formatter, JSONFormatter)

        record = logging.LogRecord("aiohttp.client", logging.INFO, __file__, 1, "hello", None, None)
        assert "[-] hello" in formatter.format(record)

    def test_unknown_level_defaults_to_info(self):
        setup_logging(level="LOUD")

        assert logging.getLogger().level == logging.INFO
