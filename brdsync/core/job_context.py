"""Job context management for logging.

Every record emitted while a sync job runs carries the job id and its
operation type, so interleaved output from concurrent workers can be told
apart.
"""

import contextvars
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator

# Context variables for job execution
_job_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "job_context", default={}
)


class JobContextFilter(logging.Filter):
    """Logging filter that adds job context information to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add job context fields to the log record."""
        context = _job_context.get()

        record.job_id = context.get("job_id", "")  # type: ignore[attr-defined]
        record.operation_type = context.get("operation_type", "")  # type: ignore[attr-defined]

        job_parts = []
        if record.operation_type:  # type: ignore[attr-defined]
            job_parts.append(f"operation={record.operation_type}")  # type: ignore[attr-defined]
        if record.job_id:  # type: ignore[attr-defined]
            job_parts.append(f"job_id={record.job_id}")  # type: ignore[attr-defined]

        record.job_context = f"[{', '.join(job_parts)}] " if job_parts else ""  # type: ignore[attr-defined]

        return True


@contextmanager
def job_logging_context(
    job_id: str, operation_type: str, **extra_context: Any
) -> Iterator[None]:
    """Context manager that sets up job-specific logging context.

    Args:
        job_id: The ID of the current job
        operation_type: The sync operation the job performs
        **extra_context: Additional context to include

    Example:
        with job_logging_context(job_id="123", operation_type="webhook_sync"):
            logger.info("Reconciling PROJ-1")  # Will include job context
    """
    current_context = _job_context.get()
    new_context = {
        **current_context,
        "job_id": job_id,
        "operation_type": operation_type,
        **extra_context,
    }

    token = _job_context.set(new_context)
    try:
        yield
    finally:
        _job_context.reset(token)


def get_current_job_context() -> Dict[str, Any]:
    """Get the current job context."""
    return _job_context.get().copy()
