"""Sliding-window request limiter for outbound Jira calls."""

from collections import deque
from datetime import timedelta
from typing import Deque, Dict, Optional

from brdsync.utils.timeutils import utcnow


class RateLimiter:
    """Simple in-memory sliding-window rate limiter."""

    def __init__(self, max_requests: int = 100, window_seconds: int = 60):
        """
        Initialize rate limiter.

        Args:
            max_requests: Maximum requests allowed
            window_seconds: Time window in seconds
        """
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: Dict[str, Deque] = {}

    def _prune(self, key: str) -> Deque:
        window_start = utcnow() - timedelta(seconds=self.window_seconds)
        requests = self.requests.setdefault(key, deque())
        while requests and requests[0] <= window_start:
            requests.popleft()
        return requests

    def is_allowed(self, key: str) -> bool:
        """
        Check if a request is allowed and record it when it is.

        Args:
            key: Unique key for rate limiting (the Jira site id)

        Returns:
            True if request is allowed
        """
        requests = self._prune(key)
        if len(requests) < self.max_requests:
            requests.append(utcnow())
            return True
        return False

    def retry_after(self, key: str) -> Optional[float]:
        """Seconds until the next request for ``key`` would be allowed."""
        requests = self._prune(key)
        if len(requests) < self.max_requests:
            return None
        oldest = requests[0]
        wait = (oldest + timedelta(seconds=self.window_seconds) - utcnow()).total_seconds()
        return max(wait, 0.0)
