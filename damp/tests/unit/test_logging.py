"""Unit tests for logging helpers."""

import json
import logging

from damp.core.logging import (
    ContextFilter,
    CustomJsonFormatter,
    get_logger,
    get_operation_id,
    sanitize_error,
    set_operation_id,
)


class TestSanitizeError:
    def test_paths_are_shortened(self):
        error = FileNotFoundError("No such file: /home/dev/secret/project/config.yml")
        assert sanitize_error(error) == "No such file: .../config.yml"

    def test_credentials_are_redacted(self):
        error = RuntimeError("login failed password=hunter2 for root")
        sanitized = sanitize_error(error)
        assert "hunter2" not in sanitized
        assert "[REDACTED]" in sanitized

    def test_long_messages_are_truncated(self):
        sanitized = sanitize_error(RuntimeError("x" * 1000), max_length=50)
        assert sanitized.endswith("...[truncated]")
        assert len(sanitized) == 50 + len("...[truncated]")

    def test_empty_message_uses_type_name(self):
        assert sanitize_error(TimeoutError()) == "TimeoutError"


class TestOperationContext:
    def test_filter_stamps_operation_id(self):
        record = logging.LogRecord("damp", logging.INFO, __file__, 1, "msg", None, None)
        set_operation_id("install_service:redis:abc")
        try:
            ContextFilter().filter(record)
        finally:
            set_operation_id(None)
        assert record.operation_id == "install_service:redis:abc"
        assert get_operation_id() is None

    def test_json_formatter_includes_context(self):
        record = logging.LogRecord("damp.test", logging.WARNING, __file__, 1, "hello", None, None)
        record.operation_id = "op-1"
        payload = json.loads(CustomJsonFormatter("%(message)s").format(record))
        assert payload["message"] == "hello"
        assert payload["level"] == "WARNING"
        assert payload["component"] == "damp.test"
        assert payload["operation_id"] == "op-1"


def test_get_logger_returns_named_logger():
    assert get_logger("damp.services.example").name == "damp.services.example"
