"""
Custom exception classes for the crawl dispatcher.
"""

from typing import Optional, Dict, Any


class CrawlDispatcherError(Exception):
    """Base exception for all crawl dispatcher errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(CrawlDispatcherError):
    """Exception raised for invalid or unloadable configuration."""
    pass


class DispatchError(CrawlDispatcherError):
    """Exception raised when a structural precondition of a run is violated."""
    pass


class FetchError(CrawlDispatcherError):
    """
    Base class for failures a fetcher may raise instead of returning an outcome.

    Subclasses map one-to-one onto the retryable outcome kinds.
    """
    pass


class NetworkError(FetchError):
    """Connection-level failure (DNS, refused, reset)."""
    pass


class RateLimitedError(FetchError):
    """Destination answered with an explicit "too many requests" signal."""

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class ServerError(FetchError):
    """Destination failed on its side (5xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.status_code = status_code


class FetchTimeoutError(FetchError):
    """Fetch did not complete within the task timeout."""
    pass


class MaxRetriesExceededError(CrawlDispatcherError):
    """
    Terminal per-task failure: every allowed attempt failed.

    Never raised by the dispatcher itself; surfaced through
    ``TaskResult.raise_for_failure()`` so one task's exhaustion
    cannot abort a run.
    """

    def __init__(self, message: str, last_kind: Optional[str] = None, attempts: int = 0,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.last_kind = last_kind
        self.attempts = attempts
