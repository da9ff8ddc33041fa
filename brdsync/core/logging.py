"""
Logging configuration for the application.
"""

import json
import logging
import logging.config
from typing import Any, Dict

from brdsync.core.config import Settings, get_settings

SECURITY_LOGGER_NAME = "brdsync.security"

_STANDARD_RECORD_FIELDS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "taskName",
    "job_context",
}


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields (request_id, job_id, error_code, ...)
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_FIELDS and key not in log_data:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def build_logging_config(settings: Settings) -> Dict[str, Any]:
    """Build the dictConfig mapping for the given settings."""
    if settings.logging.json_logs:
        formatter: Dict[str, Any] = {
            "()": f"{JSONFormatter.__module__}.{JSONFormatter.__name__}"
        }
    else:
        formatter = {"format": settings.logging.format}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "job_context": {"()": "brdsync.core.job_context.JobContextFilter"},
        },
        "formatters": {
            "default": formatter,
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "level": settings.logging.level,
                "formatter": "default",
                "filters": ["job_context"],
                "stream": "ext://sys.stdout",
            },
            "error": {
                "class": "logging.StreamHandler",
                "level": "ERROR",
                "formatter": "default",
                "filters": ["job_context"],
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "brdsync": {
                "level": settings.logging.level,
                "handlers": ["default", "error"],
                "propagate": False,
            },
            SECURITY_LOGGER_NAME: {
                "level": "INFO",
                "handlers": ["default", "error"],
                "propagate": False,
            },
            "uvicorn.error": {
                "level": "INFO",
                "handlers": ["default"],
                "propagate": False,
            },
            "sqlalchemy.engine": {
                "level": "WARNING" if not settings.database.echo else "INFO",
                "handlers": ["default"],
                "propagate": False,
            },
            "apscheduler": {
                "level": "WARNING",
                "handlers": ["default"],
                "propagate": False,
            },
        },
        "root": {
            "level": settings.logging.level,
            "handlers": ["default"],
        },
    }


def configure_logging() -> None:
    """Configure application logging."""
    settings = get_settings()
    logging.config.dictConfig(build_logging_config(settings))

    logger = logging.getLogger(__name__)
    logger.info(
        f"Logging configured - Level: {settings.logging.level}, "
        f"JSON: {settings.logging.json_logs}"
    )


def get_security_logger() -> logging.Logger:
    """Logger reserved for security events (bad signatures, state replay)."""
    return logging.getLogger(SECURITY_LOGGER_NAME)
