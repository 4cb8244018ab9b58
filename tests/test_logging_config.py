"""
Tests for structured logging helpers
"""

import io
import json
import sys
import logging

from datetime import datetime, timezone

from retail_ledger.logging_config import (
    JSONFormatter, TextFormatter, get_logger, log_action, setup_logging
)


class CapturingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestJSONFormatter:
    """Test JSON output"""

    def test_structured_fields(self):
        record = logging.LogRecord("retail_ledger.engine", logging.INFO, __file__, 1,
                                   "withdraw committed", (), None)
        record.action = "withdraw"
        record.correlation_id = "WITHDRAW-abc"
        record.extra = {"balances": {"1": "11500.00"}}

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "retail_ledger.engine"
        assert entry["message"] == "withdraw committed"
        assert entry["action"] == "withdraw"
        assert entry["correlation_id"] == "WITHDRAW-abc"
        assert entry["extra"]["balances"]["1"] == "11500.00"
        assert "resource" not in entry

    def test_timestamp_and_thread_come_from_record(self):
        record = logging.LogRecord("retail_ledger.engine", logging.INFO, __file__, 1,
                                   "deposit committed", (), None)
        record.created = 0.0
        record.threadName = "worker-3"

        entry = json.loads(JSONFormatter().format(record))

        assert datetime.fromisoformat(entry["timestamp"]) == datetime(1970, 1, 1, tzinfo=timezone.utc)
        assert entry["thread"] == "worker-3"
        assert "exception" not in entry

    def test_exception_included(self):
        try:
            raise RuntimeError("storage down")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: storage down" in entry["exception"]


class TestLogAction:
    """Test log_action"""

    def setup_method(self):
        self.logger = get_logger("tests.log_action")
        self.logger.setLevel(logging.INFO)
        self.handler = CapturingHandler()
        self.logger.addHandler(self.handler)

    def teardown_method(self):
        self.logger.removeHandler(self.handler)

    def test_attaches_structured_attributes(self):
        log_action(self.logger, "warning", "deposit rejected", action="deposit",
                   resource="account:1", correlation_id="DEPOSIT-1", extra={"error": "not_found"})

        record = self.handler.records[0]
        assert record.levelno == logging.WARNING
        assert record.action == "deposit"
        assert record.resource == "account:1"
        assert record.correlation_id == "DEPOSIT-1"
        assert record.extra == {"error": "not_found"}

    def test_respects_level(self):
        log_action(self.logger, "debug", "too chatty")
        assert self.handler.records == []

    def test_unset_fields_not_attached(self):
        log_action(self.logger, "info", "account opened", action="open_account")

        record = self.handler.records[0]
        assert record.action == "open_account"
        assert not hasattr(record, "correlation_id")
        assert not hasattr(record, "resource")


class TestTextFormatter:
    """Test plain text output"""

    def make_record(self):
        return logging.LogRecord("retail_ledger.engine", logging.INFO, __file__, 1,
                                 "transfer committed", (), None)

    def test_reference_appended(self):
        record = self.make_record()
        record.correlation_id = "TRANSFER-9"

        line = TextFormatter().format(record)

        assert "INFO retail_ledger.engine" in line
        assert line.endswith("transfer committed (TRANSFER-9)")

    def test_no_reference(self):
        assert TextFormatter().format(self.make_record()).endswith("transfer committed")


class TestSetupLogging:
    """Test logger setup"""

    def test_json_handler_installed_once(self):
        logger = setup_logging("DEBUG", "json", logger_name="tests.setup_logging")
        setup_logging("DEBUG", "json", logger_name="tests.setup_logging")

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.level == logging.DEBUG
        assert logger.propagate is False

    def test_text_format(self):
        logger = setup_logging("WARNING", "text", logger_name="tests.setup_logging_text")
        assert isinstance(logger.handlers[0].formatter, TextFormatter)
        assert logger.level == logging.WARNING

    def test_writes_to_given_stream(self):
        stream = io.StringIO()
        logger = setup_logging("INFO", "json", logger_name="tests.setup_logging_stream",
                               stream=stream)

        log_action(logger, "info", "withdraw committed", action="withdraw",
                   correlation_id="WITHDRAW-7")

        entry = json.loads(stream.getvalue().splitlines()[0])
        assert entry["message"] == "withdraw committed"
        assert entry["correlation_id"] == "WITHDRAW-7"
        assert entry["thread"]
