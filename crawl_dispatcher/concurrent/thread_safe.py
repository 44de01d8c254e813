"""
Thread-safe primitives shared by the dispatch loop and the workers.
"""

import threading
from typing import Optional


class ThreadSafeCounter:
    """Thread-safe counter with atomic operations."""

    def __init__(self, initial_value: int = 0):
        """
        Initialize counter with initial value.

        Args:
            initial_value: Starting value for the counter
        """
        self._value = initial_value
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> int:
        """
        Atomically increment counter and return new value.

        Args:
            amount: Amount to increment by (default: 1)

        Returns:
            New counter value after increment
        """
        with self._lock:
            self._value += amount
            return self._value

    def decrement(self, amount: int = 1) -> int:
        """
        Atomically decrement counter and return new value.

        Args:
            amount: Amount to decrement by (default: 1)

        Returns:
            New counter value after decrement
        """
        with self._lock:
            self._value -= amount
            return self._value

    def get_value(self) -> int:
        with self._lock:
            return self._value

    def __repr__(self) -> str:
        return f"ThreadSafeCounter(value={self.get_value()})"


class CancellationToken:
    """
    One-shot cancellation flag shared by a run and everything it spawned.

    Waiting on the token doubles as an interruptible sleep: ``wait(delay)``
    returns early, with ``True``, as soon as the token is cancelled.
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._lock = threading.Lock()

    def cancel(self, reason: str = "run cancelled") -> bool:
        """
        Cancel the token.

        Returns:
            True if this call cancelled it, False if it was already cancelled
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to ``timeout`` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled()})"
