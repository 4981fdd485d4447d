"""
Structured logging tests
"""

import json
import logging

from helpdesk.shared.infrastructure.logging import (
    CustomJsonFormatter, get_context_logger, log_latency
)


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def capture(name: str):
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    handler = ListHandler()
    logger.addHandler(handler)
    return logger, handler


class TestCustomJsonFormatter:

    def format(self, **extra) -> dict:
        formatter = CustomJsonFormatter("%(name)s %(levelname)s %(message)s", environment="testing")
        record = logging.LogRecord("helpdesk.test", logging.INFO, __file__, 1, "hello", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return json.loads(formatter.format(record))

    def test_adds_context_fields(self):
        data = self.format(trace_id="trace-1")

        assert data["message"] == "hello"
        assert data["trace_id"] == "trace-1"
        assert data["environment"] == "testing"
        assert "timestamp" in data

    def test_redacts_secrets(self):
        data = self.format(api_key="sk-123", auth_token="abc", prompt_tokens=12)

        assert data["api_key"] == "***REDACTED***"
        assert data["auth_token"] == "***REDACTED***"
        assert data["prompt_tokens"] == 12


class TestContextLogger:

    def test_trace_id_on_every_record(self):
        logger, handler = capture("helpdesk.test.context")
        log = get_context_logger("helpdesk.test.context", trace_id="trace-9")

        log.info("step", extra={"step": "classify"})

        record = handler.records[-1]
        assert record.trace_id == "trace-9"
        assert record.step == "classify"
        logger.removeHandler(handler)

    def test_plain_logger_without_ids(self):
        assert isinstance(get_context_logger("helpdesk.test.plain"), logging.Logger)

    def test_log_latency(self):
        logger, handler = capture("helpdesk.test.latency")

        with log_latency(logger, "knowledge_lookup", ticket_id="t-1"):
            pass

        record = handler.records[-1]
        assert record.operation == "knowledge_lookup"
        assert record.ticket_id == "t-1"
        assert record.latency_ms >= 0
        logger.removeHandler(handler)
