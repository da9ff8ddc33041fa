"""Tests for logging configuration and job context."""

import json
import logging

from brdsync.core.config import LoggingSettings, Settings
from brdsync.core.job_context import (
    JobContextFilter,
    get_current_job_context,
    job_logging_context,
)
from brdsync.core.logging import (
    SECURITY_LOGGER_NAME,
    JSONFormatter,
    build_logging_config,
    get_security_logger,
)


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="brdsync.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test structured log output."""

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(_record("synced")))

        assert data["message"] == "synced"
        assert data["level"] == "INFO"
        assert data["logger"] == "brdsync.test"

    def test_extra_fields_included(self):
        data = json.loads(
            JSONFormatter().format(_record(connection_id="conn-1", error_code="X"))
        )

        assert data["connection_id"] == "conn-1"
        assert data["error_code"] == "X"


class TestLoggingConfig:
    """Test dictConfig generation."""

    def test_plain_format(self):
        config = build_logging_config(Settings(logging=LoggingSettings(json_logs=False)))

        assert "format" in config["formatters"]["default"]
        assert SECURITY_LOGGER_NAME in config["loggers"]

    def test_json_format(self):
        config = build_logging_config(Settings(logging=LoggingSettings(json_logs=True)))

        assert config["formatters"]["default"]["()"].endswith("JSONFormatter")

    def test_security_logger_name(self):
        assert get_security_logger().name == SECURITY_LOGGER_NAME


class TestJobContext:
    """Test job context propagation into log records."""

    def test_filter_without_context(self):
        record = _record()
        JobContextFilter().filter(record)

        assert record.job_context == ""
        assert record.job_id == ""

    def test_filter_with_context(self):
        record = _record()
        with job_logging_context(job_id="job-1", operation_type="bulk_import"):
            JobContextFilter().filter(record)
            assert get_current_job_context()["job_id"] == "job-1"

        assert record.job_id == "job-1"
        assert record.job_context == "[operation=bulk_import, job_id=job-1] "
        assert get_current_job_context() == {}
