"""
Pytest configuration and fixtures for crawl dispatcher tests.
"""

import logging
import os
import threading
import time
from typing import Callable, Dict, List, Optional

import pytest
from hypothesis import settings, Verbosity

from crawl_dispatcher.config import DispatcherConfig
from crawl_dispatcher.fetchers.base import BaseFetcher, FetchOutcome

# Configure Hypothesis for faster test runs
settings.register_profile("fast", max_examples=10, deadline=None, verbosity=Verbosity.quiet)
settings.register_profile("thorough", max_examples=100, deadline=None, verbosity=Verbosity.normal)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "fast"))


class RecordingFetcher(BaseFetcher):
    """
    In-memory fetcher for tests.

    ``responder(target, attempt)`` decides the outcome of each call; the
    fetcher records call times, per-target attempt counts and the peak
    number of overlapping calls.
    """

    def __init__(self, responder: Optional[Callable[[str, int], FetchOutcome]] = None,
                 delay: float = 0.0):
        self.responder = responder or (lambda target, attempt: FetchOutcome.ok(payload=target, status_code=200))
        self.delay = delay
        self.calls: List[tuple] = []
        self.attempts: Dict[str, int] = {}
        self.sessions_created = 0
        self.sessions_closed = 0
        self.closed_while_busy = 0
        self._busy_sessions = set()
        self._active = 0
        self.peak_active = 0
        self._lock = threading.Lock()

    def create_session(self):
        with self._lock:
            self.sessions_created += 1
            return {"id": self.sessions_created}

    def close_session(self, session):
        with self._lock:
            self.sessions_closed += 1
            if session is not None and session["id"] in self._busy_sessions:
                self.closed_while_busy += 1

    def fetch(self, target, session=None, timeout=None):
        with self._lock:
            attempt = self.attempts.get(target, 0) + 1
            self.attempts[target] = attempt
            self.calls.append((target, time.monotonic()))
            self._active += 1
            self.peak_active = max(self.peak_active, self._active)
            if session is not None:
                self._busy_sessions.add(session["id"])
        try:
            if self.delay:
                time.sleep(self.delay)
            return self.responder(target, attempt)
        finally:
            with self._lock:
                self._active -= 1
                if session is not None:
                    self._busy_sessions.discard(session["id"])

    def call_times(self, target: Optional[str] = None) -> List[float]:
        with self._lock:
            return [t for url, t in self.calls if target is None or url == target]


@pytest.fixture
def fast_config():
    """Configuration with tiny delays so dispatcher tests run quickly."""
    return DispatcherConfig(
        max_concurrency=3,
        memory_threshold=0.9,
        check_interval=0.02,
        max_retries=3,
        base_delay=0.0,
        max_delay=0.2,
        backoff_factor=2.0,
        dispatch_mode="semaphore",
    )


@pytest.fixture
def recording_fetcher():
    return RecordingFetcher()


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "property: property-based test")

    logging.getLogger("crawl_dispatcher").setLevel(logging.WARNING)
    logging.getLogger("hypothesis").setLevel(logging.WARNING)


def pytest_collection_modifyitems(config, items):
    """Mark property-based tests."""
    for item in items:
        if "property" in item.name.lower() or getattr(getattr(item, "obj", None), "is_hypothesis_test", False):
            item.add_marker(pytest.mark.property)
