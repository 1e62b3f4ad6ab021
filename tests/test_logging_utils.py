"""
Tests for structured logging utilities module.

Tests cover JSON formatting, request ID correlation,
and standardized log methods for API and external calls.
"""

import json
import logging
import os
import uuid
from unittest.mock import patch

import pytest

from shared.logging_utils import (
    StructuredFormatter,
    configure_structured_logging,
    external_call,
    log_api_request,
    log_external_call,
    request_id_var,
    set_request_id,
)


def _record(msg="Test", level=logging.INFO, args=(), exc_info=None):
    return logging.LogRecord(
        name="test.logger",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )


class TestStructuredFormatter:
    """Tests for StructuredFormatter class."""

    def test_format_includes_required_fields(self):
        """Formatter should include timestamp, level, logger, message."""
        parsed = json.loads(StructuredFormatter().format(_record("Warning message", logging.WARNING)))

        assert "timestamp" in parsed
        assert parsed["level"] == "WARNING"
        assert parsed["logger"] == "test.logger"
        assert parsed["message"] == "Warning message"
        assert parsed["app"] == "scout-billing"

    def test_format_includes_request_id_from_context(self):
        """Formatter should include request_id from context variable."""
        token = request_id_var.set("req-12345")
        try:
            parsed = json.loads(StructuredFormatter().format(_record()))
            assert parsed["request_id"] == "req-12345"
        finally:
            request_id_var.reset(token)

    def test_format_includes_lambda_function_name(self):
        """Formatter should include AWS_LAMBDA_FUNCTION_NAME env var."""
        with patch.dict(os.environ, {"AWS_LAMBDA_FUNCTION_NAME": "stripe-webhook"}):
            parsed = json.loads(StructuredFormatter().format(_record()))

        assert parsed["function_name"] == "stripe-webhook"

    def test_format_includes_extra_fields(self):
        """Formatter should include extra fields passed to log call."""
        record = _record()
        record.user_id = "user_123"
        record.stripe_event_id = "evt_123"

        parsed = json.loads(StructuredFormatter().format(record))

        assert parsed["user_id"] == "user_123"
        assert parsed["stripe_event_id"] == "evt_123"

    def test_format_excludes_standard_record_fields(self):
        """Formatter should not duplicate standard LogRecord fields."""
        parsed = json.loads(StructuredFormatter().format(_record()))

        for field in ("levelno", "pathname", "lineno", "funcName", "process", "thread"):
            assert field not in parsed

    def test_format_includes_exception_info(self):
        """Formatter should include exception traceback when present."""
        try:
            raise ValueError("Test error")
        except ValueError:
            import sys

            exc_info = sys.exc_info()

        parsed = json.loads(StructuredFormatter().format(_record("Error occurred", logging.ERROR, exc_info=exc_info)))

        assert "ValueError" in parsed["exception"]
        assert "Test error" in parsed["exception"]

    def test_format_handles_message_with_args(self):
        """Formatter should correctly format messages with arguments."""
        record = _record("Resolved tier %s for %s", args=("pro", "user_123"))

        parsed = json.loads(StructuredFormatter().format(record))

        assert parsed["message"] == "Resolved tier pro for user_123"


class TestConfigureStructuredLogging:
    """Tests for configure_structured_logging function."""

    def test_returns_root_logger(self):
        assert configure_structured_logging() is logging.getLogger()

    def test_sets_log_level(self):
        logger = configure_structured_logging(level=logging.DEBUG)
        assert logger.level == logging.DEBUG

        # Reset
        configure_structured_logging(level=logging.INFO)

    def test_replaces_existing_handlers(self):
        """Should leave exactly one handler using StructuredFormatter."""
        root = logging.getLogger()
        root.addHandler(logging.StreamHandler())
        root.addHandler(logging.StreamHandler())

        configure_structured_logging()

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)


class TestSetRequestId:
    """Tests for set_request_id function."""

    def test_extracts_api_gateway_request_id(self):
        event = {"requestContext": {"requestId": "api-gw-req-123"}}

        assert set_request_id(event) == "api-gw-req-123"
        assert request_id_var.get() == "api-gw-req-123"

    @pytest.mark.parametrize("header", ["x-request-id", "X-Request-Id"])
    def test_extracts_request_id_header(self, header):
        event = {"requestContext": {}, "headers": {header: "header-req-456"}}

        assert set_request_id(event) == "header-req-456"

    def test_api_gateway_id_takes_priority(self):
        event = {"requestContext": {"requestId": "api-gw-priority"}, "headers": {"x-request-id": "header-ignored"}}

        assert set_request_id(event) == "api-gw-priority"

    def test_generates_uuid_when_no_id_found(self):
        result = set_request_id({"headers": None})

        uuid.UUID(result)  # Raises if invalid
        assert request_id_var.get() == result


class TestLogApiRequest:
    """Tests for log_api_request function."""

    def test_logs_request_with_extra_fields(self, caplog):
        logger = logging.getLogger("test.api")

        with caplog.at_level(logging.INFO):
            log_api_request(logger, "POST", "/stripe/webhook", 200, 45.5, user_id="user_123")

        record = caplog.records[0]
        assert record.levelno == logging.INFO
        assert "POST /stripe/webhook -> 200" in caplog.text
        assert record.http_method == "POST"
        assert record.status_code == 200
        assert record.user_id == "user_123"

    def test_anonymous_user(self, caplog):
        logger = logging.getLogger("test.api")

        with caplog.at_level(logging.INFO):
            log_api_request(logger, "GET", "/stripe/test", 200, 1.0)

        assert caplog.records[0].user_id == "anonymous"


class TestExternalCalls:
    """Tests for log_external_call and the external_call context manager."""

    def test_failed_call_logged_at_warning(self, caplog):
        logger = logging.getLogger("test.external")

        with caplog.at_level(logging.INFO):
            log_external_call(logger, "stripe", "customers.create", False, 120.0, error="card_declined")

        record = caplog.records[0]
        assert record.levelno == logging.WARNING
        assert record.service == "stripe"
        assert record.error == "card_declined"

    def test_context_manager_logs_success(self, caplog):
        logger = logging.getLogger("test.external")

        with caplog.at_level(logging.INFO):
            with external_call(logger, "supabase", "update profiles"):
                pass

        record = caplog.records[0]
        assert record.success is True
        assert record.operation == "update profiles"

    def test_context_manager_logs_and_reraises(self, caplog):
        logger = logging.getLogger("test.external")

        with caplog.at_level(logging.INFO):
            with pytest.raises(ConnectionError):
                with external_call(logger, "stripe", "subscriptions.retrieve"):
                    raise ConnectionError("reset by peer")

        record = caplog.records[0]
        assert record.success is False
        assert record.error == "reset by peer"
