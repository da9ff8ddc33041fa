"""
Cancellation token implementation for sync jobs.

A running job checks its token between items; cancelling a job flips the
token so the handler stops at the next item boundary.
"""

import asyncio
from typing import Dict, Optional


class CancellationToken:
    """Token that can be used to check if a job should be cancelled."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        """Mark this token as cancelled."""
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        """Check if the token has been cancelled."""
        return self._cancelled

    def check_cancellation(self) -> None:
        """Raise CancelledError if the token has been cancelled."""
        if self._cancelled:
            raise asyncio.CancelledError("Job was cancelled")


class CancellationTokenManager:
    """Manages cancellation tokens for running jobs."""

    def __init__(self) -> None:
        self._tokens: Dict[str, CancellationToken] = {}

    def create_token(self, job_id: str) -> CancellationToken:
        """Create a new cancellation token for a job."""
        token = CancellationToken()
        self._tokens[job_id] = token
        return token

    def get_token(self, job_id: str) -> Optional[CancellationToken]:
        """Get the cancellation token for a job."""
        return self._tokens.get(job_id)

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job by its ID."""
        token = self._tokens.get(job_id)
        if token:
            token.cancel()
            return True
        return False

    def remove_token(self, job_id: str) -> None:
        """Remove a job's token once the job has stopped running."""
        self._tokens.pop(job_id, None)
