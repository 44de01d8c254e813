"""
Tests for logging setup, log cleanup and thread-safe primitives.
"""

import logging
import logging.handlers
import os
import threading
import time

import pytest

from crawl_dispatcher.concurrent.thread_safe import CancellationToken, ThreadSafeCounter
from crawl_dispatcher.utils.errors import CrawlDispatcherError, RateLimitedError
from crawl_dispatcher.utils.logging import cleanup_old_logs, get_logger, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestLogging:
    """Logger configuration helpers."""

    def test_setup_logging_with_file(self, tmp_path, restore_root_logger):
        log_file = tmp_path / "logs" / "dispatcher.log"

        setup_logging("DEBUG", str(log_file), retention_days=3)
        get_logger("crawl_dispatcher.test").warning("written to file")
        for handler in restore_root_logger.handlers:
            handler.flush()

        assert restore_root_logger.level == logging.DEBUG
        assert log_file.exists()
        assert "written to file" in log_file.read_text(encoding="utf-8")
        rotating = [h for h in restore_root_logger.handlers
                    if isinstance(h, logging.handlers.TimedRotatingFileHandler)]
        assert rotating[0].backupCount == 3

    def test_setup_logging_console_only(self, restore_root_logger):
        setup_logging("warning")

        assert restore_root_logger.level == logging.WARNING
        assert len(restore_root_logger.handlers) == 1

    def test_cleanup_old_logs(self, tmp_path):
        old_file = tmp_path / "dispatcher.log.2020-01-01"
        new_file = tmp_path / "dispatcher.log"
        old_file.write_text("old", encoding="utf-8")
        new_file.write_text("new", encoding="utf-8")
        expired = time.time() - 10 * 24 * 3600
        os.utime(old_file, (expired, expired))

        removed = cleanup_old_logs(tmp_path, retention_days=7)

        assert removed == 1
        assert not old_file.exists()
        assert new_file.exists()

    def test_cleanup_missing_directory(self, tmp_path):
        assert cleanup_old_logs(tmp_path / "absent") == 0


class TestThreadSafeCounter:
    """Atomic counter operations."""

    def test_concurrent_increments(self):
        counter = ThreadSafeCounter()

        def worker():
            for _ in range(1000):
                counter.increment()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert counter.get_value() == 8000

    def test_decrement(self):
        counter = ThreadSafeCounter(5)

        assert counter.decrement(2) == 3
        assert repr(counter) == "ThreadSafeCounter(value=3)"


class TestCancellationToken:
    """One-shot cancellation."""

    def test_first_cancel_wins(self):
        token = CancellationToken()

        assert token.cancel("first") is True
        assert token.cancel("second") is False
        assert token.is_cancelled()
        assert token.reason == "first"

    def test_wait_returns_early_when_cancelled(self):
        token = CancellationToken()
        threading.Timer(0.02, token.cancel).start()

        start = time.monotonic()
        assert token.wait(5.0) is True
        assert time.monotonic() - start < 1.0

    def test_wait_times_out(self):
        assert CancellationToken().wait(0.01) is False


class TestErrors:
    """Exception details."""

    def test_details_default_to_empty(self):
        error = CrawlDispatcherError("boom")

        assert error.details == {}
        assert str(error) == "boom"

    def test_rate_limited_carries_retry_after(self):
        error = RateLimitedError("slow down", retry_after=2.5)

        assert error.retry_after == 2.5
        assert isinstance(error, CrawlDispatcherError)
