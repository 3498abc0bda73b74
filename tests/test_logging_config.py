"""
Tests for structured logging
"""

import json
import logging
import sys
import uuid

from secure_banking.logging_config import JSONFormatter, get_logger, log_action, setup_logging


def make_record(**attributes):
    record = logging.LogRecord(
        name="secure_banking.sessions", level=logging.WARNING, pathname=__file__,
        lineno=1, msg="Session expiring in %s seconds", args=(240,), exc_info=None
    )
    for key, value in attributes.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test JSON log output"""

    def test_structured_fields(self):
        record = make_record(
            owner_id="owner-1", action="session_near_expiry",
            resource="s1", extra={"seconds_remaining": 240}
        )
        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "WARNING"
        assert entry["module"] == "secure_banking.sessions"
        assert entry["message"] == "Session expiring in 240 seconds"
        assert entry["owner_id"] == "owner-1"
        assert entry["action"] == "session_near_expiry"
        assert entry["extra"] == {"seconds_remaining": 240}
        assert "timestamp" in entry

    def test_absent_fields_omitted(self):
        entry = json.loads(JSONFormatter().format(make_record()))
        assert "owner_id" not in entry
        assert "correlation_id" not in entry
        assert "exception" not in entry

    def test_exception_included(self):
        try:
            raise RuntimeError("sweep failed")
        except RuntimeError:
            record = make_record(exc_info=sys.exc_info())
        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: sweep failed" in entry["exception"]


class TestSetupLogging:
    """Test logger configuration"""

    def test_json_to_file(self, tmp_path):
        name = f"tests.setup.{uuid.uuid4().hex}"
        log_file = tmp_path / "bank.log"
        logger = setup_logging("DEBUG", "json", str(log_file), logger_name=name)

        log_action(logger, "info", "Removed 2 expired session(s)", action="sessions_cleaned",
                   extra={"removed": 2})
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip())
        assert entry["action"] == "sessions_cleaned"
        assert entry["extra"] == {"removed": 2}
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        setup_logging("INFO", "text", str(tmp_path / "other.log"), logger_name=name)
        assert len(logger.handlers) == 1
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()

    def test_get_logger(self):
        assert get_logger("secure_banking.funding").name == "secure_banking.funding"


class TestLogAction:
    """Test structured action logging"""

    def test_attributes_attached(self, recording_logger, log_handler):
        log_action(recording_logger, "warning", "Evicted 1 session(s)",
                   owner_id="owner-1", action="sessions_evicted", resource="sessions",
                   extra={"evicted": 1})

        record = log_handler.records[0]
        assert record.levelno == logging.WARNING
        assert record.owner_id == "owner-1"
        assert record.action == "sessions_evicted"
        assert record.resource == "sessions"
        assert record.extra == {"evicted": 1}
        assert not hasattr(record, "correlation_id")
