"""Jira Cloud REST client package."""

from .client import JiraClient
from .rate_limiter import RateLimiter

__all__ = ["JiraClient", "RateLimiter"]
