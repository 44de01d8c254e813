"""
Per-destination rate controller with adaptive backoff.
"""

import time
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional, Any

from crawl_dispatcher.config import DispatcherConfig
from crawl_dispatcher.fetchers.base import OutcomeKind
from crawl_dispatcher.utils.logging import get_logger
from .thread_safe import CancellationToken, ThreadSafeCounter


logger = get_logger(__name__)


@dataclass
class DomainState:
    """Rate limiting state of one destination."""
    current_delay: float
    consecutive_failures: int = 0
    last_request_time: Optional[float] = None
    total_requests: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class RateController:
    """
    Spaces requests per destination and adapts the spacing to feedback.

    Every destination starts at ``base_delay`` between requests. Rate-limit
    and server-error responses grow the delay geometrically, network errors
    and timeouts add a fixed increment, and a success resets it. Each
    destination has its own lock, so destinations never wait on each other.
    """

    def __init__(self, config: Optional[DispatcherConfig] = None):
        """
        Initialize rate controller.

        Args:
            config: Supplies base_delay, max_delay, backoff_factor,
                server_error_factor and network_error_increment
        """
        config = config or DispatcherConfig()
        self.base_delay = config.base_delay
        self.max_delay = config.max_delay
        self.backoff_factor = config.backoff_factor
        self.server_error_factor = config.server_error_factor
        self.network_error_increment = config.network_error_increment

        self._domains: Dict[str, DomainState] = {}
        self._registry_lock = threading.Lock()

        self._total_requests = ThreadSafeCounter()
        self._rate_limit_errors = ThreadSafeCounter()
        self._server_errors = ThreadSafeCounter()

        logger.info(
            f"Rate controller initialized: base_delay={self.base_delay}s, "
            f"max_delay={self.max_delay}s, backoff_factor={self.backoff_factor}"
        )

    def _get_state(self, destination: str) -> DomainState:
        with self._registry_lock:
            state = self._domains.get(destination)
            if state is None:
                state = DomainState(current_delay=self.base_delay)
                self._domains[destination] = state
            return state

    def acquire(self, destination: str, cancel_token: Optional[CancellationToken] = None) -> bool:
        """
        Block until the destination accepts another request, then claim it.

        Args:
            destination: Destination key
            cancel_token: Aborts the wait when cancelled

        Returns:
            True once the request slot is claimed, False if cancelled first
        """
        state = self._get_state(destination)

        while True:
            if cancel_token is not None and cancel_token.is_cancelled():
                return False

            with state.lock:
                now = time.monotonic()
                if state.last_request_time is None:
                    wait = 0.0
                else:
                    wait = state.last_request_time + state.current_delay - now

                if wait <= 0:
                    state.last_request_time = now
                    state.total_requests += 1
                    self._total_requests.increment()
                    return True

            # Sleep outside the lock; the delay may change meanwhile, so re-check
            if cancel_token is not None:
                if cancel_token.wait(wait):
                    return False
            else:
                time.sleep(wait)

    def record_success(self, destination: str) -> None:
        """Reset the destination to ``base_delay``."""
        state = self._get_state(destination)
        with state.lock:
            if state.consecutive_failures or state.current_delay != self.base_delay:
                logger.debug(f"Rate limit reset for {destination} after success")
            state.current_delay = self.base_delay
            state.consecutive_failures = 0

    def record_failure(self, destination: str, kind: OutcomeKind,
                       retry_after: Optional[float] = None) -> float:
        """
        Adjust the destination delay after a failed attempt.

        Args:
            destination: Destination key
            kind: Failure classification
            retry_after: Server supplied minimum wait in seconds, if any

        Returns:
            The destination's delay after the adjustment
        """
        state = self._get_state(destination)

        with state.lock:
            if kind in (OutcomeKind.RATE_LIMITED, OutcomeKind.SERVER_ERROR):
                if kind is OutcomeKind.RATE_LIMITED:
                    factor = self.backoff_factor
                    self._rate_limit_errors.increment()
                else:
                    factor = self.server_error_factor
                    self._server_errors.increment()

                state.consecutive_failures += 1
                computed = self.base_delay * factor ** (state.consecutive_failures - 1)
                new_delay = max(computed, state.current_delay, retry_after or 0.0)
                state.current_delay = min(new_delay, self.max_delay)

                logger.warning(
                    f"{kind.value} from {destination}, backing off to {state.current_delay:.2f}s "
                    f"(consecutive failures: {state.consecutive_failures})"
                )
            elif kind in (OutcomeKind.NETWORK_ERROR, OutcomeKind.TIMEOUT):
                state.current_delay = min(state.current_delay + self.network_error_increment,
                                          self.max_delay)

            return state.current_delay

    def get_delay(self, destination: str) -> float:
        state = self._get_state(destination)
        with state.lock:
            return state.current_delay

    def next_allowed_time(self, destination: str) -> float:
        """Monotonic time at which the destination accepts the next request."""
        state = self._get_state(destination)
        with state.lock:
            if state.last_request_time is None:
                return time.monotonic()
            return state.last_request_time + state.current_delay

    def get_domain_status(self, destination: str) -> Dict[str, Any]:
        """
        Get status for a specific destination.

        Args:
            destination: Destination key

        Returns:
            Dictionary with destination status
        """
        state = self._get_state(destination)
        with state.lock:
            return {
                "destination": destination,
                "current_delay": state.current_delay,
                "consecutive_failures": state.consecutive_failures,
                "total_requests": state.total_requests,
                "in_backoff": state.consecutive_failures > 0,
            }

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get rate controller statistics.

        Returns:
            Dictionary with rate controller statistics
        """
        with self._registry_lock:
            destinations = list(self._domains)

        return {
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "total_requests": self._total_requests.get_value(),
            "rate_limit_errors": self._rate_limit_errors.get_value(),
            "server_errors": self._server_errors.get_value(),
            "destinations": {name: self.get_domain_status(name) for name in destinations},
        }

    def __repr__(self) -> str:
        return f"RateController(base_delay={self.base_delay}, max_delay={self.max_delay})"
