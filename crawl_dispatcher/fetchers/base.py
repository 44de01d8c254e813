"""
Fetcher interface, outcome model and destination key extraction.
"""

import socket
import concurrent.futures
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Sequence
from urllib.parse import urlparse

import requests

from crawl_dispatcher.utils.errors import (
    FetchError,
    FetchTimeoutError,
    NetworkError,
    RateLimitedError,
    ServerError,
)
from crawl_dispatcher.utils.logging import get_logger


logger = get_logger(__name__)


class OutcomeKind(Enum):
    """Classification of a single fetch attempt."""
    SUCCESS = "Success"
    NETWORK_ERROR = "NetworkError"
    RATE_LIMITED = "RateLimited"
    SERVER_ERROR = "ServerError"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"

    @property
    def retryable(self) -> bool:
        return self in (
            OutcomeKind.NETWORK_ERROR,
            OutcomeKind.RATE_LIMITED,
            OutcomeKind.SERVER_ERROR,
            OutcomeKind.TIMEOUT,
        )


@dataclass
class FetchOutcome:
    """What a fetcher reports back for one attempt."""
    kind: OutcomeKind
    payload: Any = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    retry_after: Optional[float] = None

    @property
    def success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def ok(cls, payload: Any = None, status_code: Optional[int] = None) -> "FetchOutcome":
        return cls(kind=OutcomeKind.SUCCESS, payload=payload, status_code=status_code)

    @classmethod
    def failure(cls, kind: OutcomeKind, error_message: Optional[str] = None,
                status_code: Optional[int] = None,
                retry_after: Optional[float] = None) -> "FetchOutcome":
        if kind is OutcomeKind.SUCCESS:
            raise ValueError("failure outcome cannot have kind SUCCESS")
        return cls(kind=kind, status_code=status_code,
                   error_message=error_message, retry_after=retry_after)

    @classmethod
    def cancelled(cls, reason: str = "run cancelled") -> "FetchOutcome":
        return cls(kind=OutcomeKind.CANCELLED, error_message=reason)


class BaseFetcher(ABC):
    """
    Abstract fetch capability consumed by the worker pool.

    A fetcher may either return a ``FetchOutcome`` or raise; raised
    exceptions are classified with ``classify_exception``. Sessions are
    optional: fetchers that keep per-worker state (connection pools,
    browser contexts) override ``create_session``/``close_session``.
    """

    def create_session(self) -> Any:
        """Create the context object owned by one worker session."""
        return None

    def close_session(self, session: Any) -> None:
        """Dispose of a context created by ``create_session``."""
        return None

    @abstractmethod
    def fetch(self, target: str, session: Any = None, timeout: Optional[float] = None) -> FetchOutcome:
        """
        Fetch a single target.

        Args:
            target: URL to fetch
            session: Context from ``create_session`` for the calling worker
            timeout: Upper bound for the attempt in seconds, if any

        Returns:
            Classified outcome of the attempt
        """


class CallableFetcher(BaseFetcher):
    """Adapts a plain ``fn(target) -> FetchOutcome`` function to the fetcher interface."""

    def __init__(self, fn: Callable[[str], FetchOutcome]):
        self._fn = fn

    def fetch(self, target: str, session: Any = None, timeout: Optional[float] = None) -> FetchOutcome:
        return self._fn(target)


def classify_status(status_code: int, rate_limit_codes: Sequence[int] = (429,)) -> OutcomeKind:
    """
    Map an HTTP status code onto an outcome kind.

    Any completed response that is neither rate limited nor a 5xx counts
    as a successful fetch; judging its content is the caller's business.
    """
    if status_code in rate_limit_codes:
        return OutcomeKind.RATE_LIMITED
    if 500 <= status_code <= 599:
        return OutcomeKind.SERVER_ERROR
    return OutcomeKind.SUCCESS


def classify_exception(error: BaseException) -> FetchOutcome:
    """
    Turn an exception raised by a fetcher into a failure outcome.

    Args:
        error: Exception raised during the fetch attempt

    Returns:
        Failure outcome with the matching kind
    """
    message = f"{type(error).__name__}: {error}"

    if isinstance(error, RateLimitedError):
        return FetchOutcome.failure(OutcomeKind.RATE_LIMITED, message, retry_after=error.retry_after)
    if isinstance(error, ServerError):
        return FetchOutcome.failure(OutcomeKind.SERVER_ERROR, message, status_code=error.status_code)
    if isinstance(error, (FetchTimeoutError, requests.Timeout, socket.timeout,
                          TimeoutError, concurrent.futures.TimeoutError)):
        return FetchOutcome.failure(OutcomeKind.TIMEOUT, message)
    if isinstance(error, (NetworkError, requests.ConnectionError, ConnectionError)):
        return FetchOutcome.failure(OutcomeKind.NETWORK_ERROR, message)
    if isinstance(error, (FetchError, requests.RequestException, OSError)):
        return FetchOutcome.failure(OutcomeKind.NETWORK_ERROR, message)

    logger.error(f"Unexpected fetcher exception treated as network error: {message}", exc_info=error)
    return FetchOutcome.failure(OutcomeKind.NETWORK_ERROR, message)


def default_destination_key(target: str) -> str:
    """Derive the rate-limiting key (lower-cased host, plus port if given) from a URL."""
    try:
        parsed = urlparse(target)
        host = parsed.hostname
        port = parsed.port
    except (TypeError, ValueError, AttributeError):
        return "unknown"
    if not host:
        return "unknown"
    return f"{host}:{port}" if port else host
