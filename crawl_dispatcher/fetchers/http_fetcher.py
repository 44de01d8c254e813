"""
HTTP fetcher built on requests, with user agent rotation and status classification.
"""

import random
from typing import Dict, Optional, Sequence, Any

import requests
from requests.adapters import HTTPAdapter

from crawl_dispatcher.utils.logging import get_logger
from .base import BaseFetcher, FetchOutcome, OutcomeKind, classify_exception, classify_status


logger = get_logger(__name__)


class UserAgentRotator:
    """Rotates user agents across requests."""

    def __init__(self, user_agents: Optional[Sequence[str]] = None):
        """Initialize with common user agents."""
        self.user_agents = list(user_agents or [
            'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
            'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
            'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0',
            'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15',
            'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
        ])
        if not self.user_agents:
            raise ValueError("UserAgentRotator needs at least one user agent")
        self.current_index = 0

    def get_random_user_agent(self) -> str:
        """Get a random user agent."""
        return random.choice(self.user_agents)

    def get_next_user_agent(self) -> str:
        """Get the next user agent in rotation."""
        user_agent = self.user_agents[self.current_index]
        self.current_index = (self.current_index + 1) % len(self.user_agents)
        return user_agent


class HttpFetcher(BaseFetcher):
    """
    Fetcher performing plain HTTP GET requests.

    Each worker session owns its own ``requests.Session`` so connection
    pools are never shared between threads. Retries are deliberately
    disabled at the adapter level: retrying is the dispatcher's job.
    """

    def __init__(self,
                 headers: Optional[Dict[str, str]] = None,
                 rate_limit_codes: Sequence[int] = (429,),
                 default_timeout: Optional[float] = 30.0,
                 rotate_user_agent: bool = True,
                 verify: bool = True,
                 pool_maxsize: int = 10):
        """
        Initialize HTTP fetcher.

        Args:
            headers: Extra headers sent with every request
            rate_limit_codes: Status codes classified as rate limited
            default_timeout: Request timeout used when the task has none
            rotate_user_agent: Whether to pick a user agent per request
            verify: TLS certificate verification
            pool_maxsize: Connection pool size per session
        """
        self.headers = dict(headers or {})
        self.rate_limit_codes = tuple(rate_limit_codes)
        self.default_timeout = default_timeout
        self.rotate_user_agent = rotate_user_agent
        self.verify = verify
        self.pool_maxsize = pool_maxsize
        self.user_agent_rotator = UserAgentRotator()

    def create_session(self) -> requests.Session:
        """Create requests session with a non-retrying adapter."""
        session = requests.Session()

        adapter = HTTPAdapter(pool_connections=self.pool_maxsize,
                              pool_maxsize=self.pool_maxsize,
                              max_retries=0)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        return session

    def close_session(self, session: Any) -> None:
        if session is not None:
            session.close()

    def fetch(self, target: str, session: Any = None, timeout: Optional[float] = None) -> FetchOutcome:
        """
        Perform one GET request and classify the result.

        Args:
            target: URL to request
            session: Session from ``create_session``; a throwaway one is used when absent
            timeout: Request timeout in seconds

        Returns:
            Classified fetch outcome
        """
        owns_session = session is None
        if owns_session:
            session = self.create_session()

        try:
            response = session.get(
                target,
                headers=self._prepare_headers(),
                timeout=timeout if timeout is not None else self.default_timeout,
                verify=self.verify,
            )
        except requests.exceptions.RequestException as e:
            logger.debug(f"HTTP request failed: GET {target} ({type(e).__name__}: {e})")
            return classify_exception(e)
        finally:
            if owns_session:
                session.close()

        return self.classify_response(response)

    def classify_response(self, response: requests.Response) -> FetchOutcome:
        """Map a completed response onto an outcome."""
        kind = classify_status(response.status_code, self.rate_limit_codes)

        if kind is OutcomeKind.SUCCESS:
            logger.debug(f"HTTP request completed: GET {response.url} (status={response.status_code})")
            return FetchOutcome.ok(payload=response, status_code=response.status_code)

        message = f"HTTP {response.status_code} from {response.url}"
        if kind is OutcomeKind.RATE_LIMITED:
            retry_after = self._get_retry_after(response)
            logger.warning(f"Rate limited by {response.url}, retry_after={retry_after}")
            return FetchOutcome.failure(kind, message, status_code=response.status_code,
                                        retry_after=retry_after)

        return FetchOutcome.failure(kind, message, status_code=response.status_code)

    def _prepare_headers(self) -> Dict[str, str]:
        """Default browser-like headers merged with the configured ones."""
        user_agent = (self.user_agent_rotator.get_random_user_agent()
                      if self.rotate_user_agent else self.user_agent_rotator.user_agents[0])
        default_headers = {
            'User-Agent': user_agent,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.5',
            'Accept-Encoding': 'gzip, deflate',
            'Connection': 'keep-alive',
        }
        return {**default_headers, **self.headers}

    def _get_retry_after(self, response: requests.Response) -> Optional[float]:
        """Extract retry-after header value in seconds."""
        retry_after = response.headers.get('Retry-After')
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                # HTTP-date form is ignored; the backoff schedule applies instead
                pass
        return None
