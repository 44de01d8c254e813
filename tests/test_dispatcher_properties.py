"""
End-to-end tests for batch, streaming and multi-group dispatch.
"""

import threading
import time

import pytest
from hypothesis import given, strategies as st

from conftest import RecordingFetcher
from crawl_dispatcher import CrawlDispatcher
from crawl_dispatcher.concurrent.models import TaskState
from crawl_dispatcher.concurrent.rate_controller import RateController
from crawl_dispatcher.concurrent.resource_monitor import MemoryMonitor
from crawl_dispatcher.concurrent.scheduler import TaskSource
from crawl_dispatcher.config import DispatcherConfig
from crawl_dispatcher.fetchers.base import FetchOutcome, OutcomeKind
from crawl_dispatcher.fetchers.http_fetcher import HttpFetcher
from crawl_dispatcher.utils.errors import (
    ConfigurationError,
    DispatchError,
    MaxRetriesExceededError,
    RateLimitedError,
)


TOLERANCE = 0.01


def urls(count, host="example.com"):
    return [f"https://{host}/page/{i}" for i in range(count)]


def server_error():
    return FetchOutcome.failure(OutcomeKind.SERVER_ERROR, "HTTP 503", status_code=503)


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestBatchRun:
    """Blocking runs over a list of targets."""

    def test_concurrency_bounded_by_max(self, fast_config):
        fetcher = RecordingFetcher(delay=0.05)
        dispatcher = CrawlDispatcher(fetcher, fast_config)

        results = dispatcher.run(urls(10))

        assert len(results) == 10
        assert all(r.success for r in results)
        assert fetcher.peak_active == 3
        snap = dispatcher.progress.snapshot()
        assert snap.peak_running == 3
        assert snap.succeeded == 10
        assert snap.retries == 0

    def test_results_in_input_order(self, fast_config):
        def responder(target, attempt):
            # Later targets finish first
            index = int(target.rsplit("/", 1)[1])
            time.sleep(0.01 * (5 - index))
            return FetchOutcome.ok(payload=index)

        results = CrawlDispatcher(RecordingFetcher(responder), fast_config).run(urls(5))

        assert [r.payload for r in results] == [0, 1, 2, 3, 4]
        assert [r.index for r in results] == [0, 1, 2, 3, 4]

    @given(
        failures=st.lists(st.integers(min_value=0, max_value=5), min_size=1, max_size=12),
        max_retries=st.integers(min_value=0, max_value=3),
    )
    def test_every_task_terminates_within_retry_budget(self, failures, max_retries):
        """Each target gets exactly one result and never more than max_retries + 1 attempts."""
        targets = [f"https://h{i % 3}.example.com/{i}" for i in range(len(failures))]
        planned = dict(zip(targets, failures))

        def responder(target, attempt):
            if attempt <= planned[target]:
                return server_error()
            return FetchOutcome.ok()

        fetcher = RecordingFetcher(responder)
        config = DispatcherConfig(max_concurrency=4, check_interval=0.02, max_retries=max_retries,
                                  base_delay=0.0, max_delay=0.0, dispatch_mode="semaphore")

        results = CrawlDispatcher(fetcher, config).run(targets)

        assert len(results) == len(targets)
        succeeded = sum(1 for r in results if r.success)
        failed = sum(1 for r in results if r.state is TaskState.FAILED_TERMINAL)
        assert succeeded + failed == len(targets)
        for result in results:
            expected_success = planned[result.target] <= max_retries
            assert result.success is expected_success
            assert result.attempts == min(planned[result.target], max_retries) + 1
            assert fetcher.attempts[result.target] == result.attempts
            assert result.attempts <= max_retries + 1

    def test_persistent_network_error_exhausts_retries(self, fast_config):
        fetcher = RecordingFetcher(lambda target, attempt: FetchOutcome.failure(
            OutcomeKind.NETWORK_ERROR, "connection refused"))

        [result] = CrawlDispatcher(fetcher, fast_config).run(["https://down.example.com/"])

        assert fetcher.attempts["https://down.example.com/"] == 4
        assert result.state is TaskState.FAILED_TERMINAL
        assert result.error_kind is OutcomeKind.NETWORK_ERROR
        assert len(result.error_history) == 4
        with pytest.raises(MaxRetriesExceededError) as exc_info:
            result.raise_for_failure()
        assert exc_info.value.attempts == 4

    def test_rate_limited_destination_backs_off(self, fast_config):
        target = "https://busy.example.com/api"

        def responder(url, attempt):
            if attempt <= 2:
                return FetchOutcome.failure(OutcomeKind.RATE_LIMITED, "HTTP 429", status_code=429)
            return FetchOutcome.ok()

        fetcher = RecordingFetcher(responder)
        controller = RateController(fast_config.override(base_delay=0.1, max_delay=5.0))
        dispatcher = CrawlDispatcher(fetcher, fast_config, rate_controller=controller)

        [result] = dispatcher.run([target])

        times = fetcher.call_times(target)
        assert result.success
        assert len(times) == 3
        assert times[1] - times[0] >= 0.1 - TOLERANCE
        assert times[2] - times[1] >= 0.2 - TOLERANCE
        assert controller.get_delay("busy.example.com") == 0.1

    def test_memory_pressure_pauses_admission(self, fast_config):
        switch_at = time.monotonic() + 0.15

        def sampler():
            return 0.95 if time.monotonic() < switch_at else 0.3

        fetcher = RecordingFetcher()
        monitor = MemoryMonitor(check_interval=0.01, sampler=sampler)
        config = fast_config.override(dispatch_mode="memory_adaptive", memory_threshold=0.9)
        dispatcher = CrawlDispatcher(fetcher, config, memory_monitor=monitor)

        results = dispatcher.run(urls(4))

        assert all(r.success for r in results)
        assert min(fetcher.call_times()) >= switch_at
        assert dispatcher.progress.snapshot().memory_pressure_events >= 1

    def test_fetcher_exceptions_are_classified(self, fast_config):
        def responder(target, attempt):
            if attempt == 1:
                raise RateLimitedError("slow down", retry_after=0.0)
            if attempt == 2:
                raise ValueError("parser exploded")
            return FetchOutcome.ok()

        fetcher = RecordingFetcher(responder)

        [result] = CrawlDispatcher(fetcher, fast_config).run(["https://example.com/x"])

        assert result.success
        assert result.attempts == 3
        assert [r.kind for r in result.error_history] == [OutcomeKind.RATE_LIMITED,
                                                           OutcomeKind.NETWORK_ERROR]

    def test_invalid_fetcher_result_is_network_error(self, fast_config):
        fetcher = RecordingFetcher(lambda target, attempt: "<html>")

        [result] = CrawlDispatcher(fetcher, fast_config.override(max_retries=0)).run(["https://example.com/"])

        assert result.error_kind is OutcomeKind.NETWORK_ERROR

    def test_task_timeout(self, fast_config):
        fetcher = RecordingFetcher(delay=0.5)
        config = fast_config.override(task_timeout=0.05, max_retries=1)

        start = time.monotonic()
        [result] = CrawlDispatcher(fetcher, config).run(["https://slow.example.com/"])

        assert time.monotonic() - start < 0.45
        assert result.error_kind is OutcomeKind.TIMEOUT
        assert result.attempts == 2
        # Timed-out sessions are discarded rather than reused
        assert fetcher.sessions_created == 2
        # and closed only once the abandoned fetch has returned
        assert fetcher.sessions_closed == 0
        assert wait_until(lambda: fetcher.sessions_closed == 2)
        assert fetcher.closed_while_busy == 0

    def test_retry_requeued_while_loop_checks_for_completion(self, fast_config, monkeypatch):
        original_is_empty = TaskSource.is_empty

        def slow_is_empty(source):
            empty = original_is_empty(source)
            if empty:
                # Give the failing worker time to requeue and release its slot
                time.sleep(0.05)
            return empty

        monkeypatch.setattr(TaskSource, "is_empty", slow_is_empty)

        def responder(target, attempt):
            if attempt == 1:
                return FetchOutcome.failure(OutcomeKind.NETWORK_ERROR, "connection reset")
            return FetchOutcome.ok()

        fetcher = RecordingFetcher(responder)

        [result] = CrawlDispatcher(fetcher, fast_config).run(["https://flaky.example.com/"])

        assert result.success
        assert result.attempts == 2

    def test_callable_fetcher(self, fast_config):
        results = CrawlDispatcher(lambda target: FetchOutcome.ok(payload=target.upper()),
                                  fast_config).run(["https://example.com/a"])

        assert results[0].payload == "HTTPS://EXAMPLE.COM/A"

    def test_sessions_reused_and_closed(self, fast_config):
        fetcher = RecordingFetcher(delay=0.01)

        CrawlDispatcher(fetcher, fast_config).run(urls(9))

        assert fetcher.sessions_created <= 3
        assert fetcher.sessions_closed == fetcher.sessions_created


class TestRunValidation:
    """Input and configuration errors."""

    def test_empty_targets(self, fast_config, recording_fetcher):
        assert CrawlDispatcher(recording_fetcher, fast_config).run([]) == []
        assert recording_fetcher.calls == []

    def test_single_string_rejected(self, fast_config, recording_fetcher):
        with pytest.raises(DispatchError):
            CrawlDispatcher(recording_fetcher, fast_config).run("https://example.com/")

    def test_invalid_target_rejected_before_fetching(self, fast_config, recording_fetcher):
        with pytest.raises(DispatchError):
            CrawlDispatcher(recording_fetcher, fast_config).run(["https://example.com/", ""])

        assert recording_fetcher.calls == []

    @pytest.mark.parametrize("overrides", [{"max_concurrency": 0}, {"workers": 2}])
    def test_invalid_config_rejected(self, fast_config, recording_fetcher, overrides):
        with pytest.raises(ConfigurationError):
            CrawlDispatcher(recording_fetcher, fast_config).run(urls(1), config=overrides)

    def test_invalid_fetcher_rejected(self):
        with pytest.raises(ConfigurationError):
            CrawlDispatcher(fetcher=42)

    def test_default_fetcher_keeps_request_timeout(self):
        dispatcher = CrawlDispatcher(config=DispatcherConfig())

        assert isinstance(dispatcher.fetcher, HttpFetcher)
        assert dispatcher.fetcher.default_timeout == 30.0

    def test_default_fetcher_uses_task_timeout(self):
        dispatcher = CrawlDispatcher(config=DispatcherConfig(task_timeout=5.0))

        assert dispatcher.fetcher.default_timeout == 5.0

    def test_status_when_idle(self, fast_config, recording_fetcher):
        dispatcher = CrawlDispatcher(recording_fetcher, fast_config)

        status = dispatcher.get_status()

        assert status["status"] == "idle"
        assert status["runs"] == []
        assert dispatcher.is_running() is False
        assert dispatcher.cancel() == 0


class TestCancellation:
    """Stopping runs early."""

    def test_cancel_mid_run_reports_every_task(self, fast_config):
        fetcher = RecordingFetcher(delay=0.05)
        dispatcher = CrawlDispatcher(fetcher, fast_config.override(max_concurrency=2))
        timer = threading.Timer(0.12, dispatcher.cancel)
        timer.start()
        try:
            results = dispatcher.run(urls(20))
        finally:
            timer.cancel()

        assert len(results) == 20
        cancelled = [r for r in results if r.outcome_kind is OutcomeKind.CANCELLED]
        assert cancelled
        assert all(r.state is TaskState.FAILED_TERMINAL for r in cancelled)
        assert len(fetcher.calls) < 20
        assert sum(1 for r in results if r.success) == len(fetcher.calls)

    def test_grace_period_abandons_in_flight_tasks(self, fast_config):
        fetcher = RecordingFetcher(delay=1.0)
        config = fast_config.override(max_concurrency=2, shutdown_grace_period=0.1)
        dispatcher = CrawlDispatcher(fetcher, config)
        timer = threading.Timer(0.05, dispatcher.cancel)
        timer.start()

        start = time.monotonic()
        try:
            results = dispatcher.run(urls(5))
        finally:
            timer.cancel()

        assert time.monotonic() - start < 0.8
        assert len(results) == 5
        assert all(r.outcome_kind is OutcomeKind.CANCELLED for r in results)
        assert sum(1 for r in results if r.attempts == 1) == 2


class TestStreaming:
    """Lazy, completion-ordered results."""

    def test_results_in_completion_order(self, fast_config):
        delays = {"https://example.com/slow": 0.2,
                  "https://example.com/medium": 0.1,
                  "https://example.com/fast": 0.01}

        def responder(target, attempt):
            time.sleep(delays[target])
            return FetchOutcome.ok(payload=target)

        dispatcher = CrawlDispatcher(RecordingFetcher(responder), fast_config)

        stream = dispatcher.run_streaming(list(delays))
        order = [result.target for result in stream]

        assert order == ["https://example.com/fast", "https://example.com/medium",
                         "https://example.com/slow"]
        assert stream.delivered == 3
        assert list(stream) == []

    def test_streaming_validates_eagerly(self, fast_config, recording_fetcher):
        with pytest.raises(DispatchError):
            CrawlDispatcher(recording_fetcher, fast_config).run_streaming([None])

    def test_closing_stream_cancels_run(self, fast_config):
        fetcher = RecordingFetcher(delay=0.05)
        dispatcher = CrawlDispatcher(fetcher, fast_config.override(max_concurrency=2))

        with dispatcher.run_streaming(urls(20)) as stream:
            first = next(stream)

        assert first.success
        assert wait_until(lambda: not dispatcher.is_running())
        assert len(fetcher.calls) < 20


class TestRunMany:
    """Concurrent dispatch groups."""

    def test_groups_share_destination_limiter(self, fast_config):
        fetcher = RecordingFetcher()
        controller = RateController(fast_config.override(base_delay=0.05, max_delay=1.0))
        dispatcher = CrawlDispatcher(fetcher, fast_config, rate_controller=controller)
        groups = {name: [f"https://shared.example.com/{name}/{i}" for i in range(3)]
                  for name in ("alpha", "beta", "gamma")}

        results = dispatcher.run_many(groups)

        assert set(results) == set(groups)
        for name, group_results in results.items():
            assert [r.target for r in group_results] == groups[name]
            assert all(r.success for r in group_results)

        times = sorted(fetcher.call_times())
        assert len(times) == 9
        for earlier, later in zip(times, times[1:]):
            assert later - earlier >= 0.05 - TOLERANCE
        assert dispatcher.progress.snapshot().succeeded == 9

    def test_throttled_group_does_not_slow_others(self, fast_config):
        throttled_host = "throttled.example.com"

        def responder(target, attempt):
            if throttled_host in target:
                return FetchOutcome.failure(OutcomeKind.RATE_LIMITED, "HTTP 429", status_code=429)
            return FetchOutcome.ok()

        fetcher = RecordingFetcher(responder)
        config = fast_config.override(base_delay=0.05, max_delay=0.1, max_retries=2)
        dispatcher = CrawlDispatcher(fetcher, config)
        groups = {
            "throttled": [f"https://{throttled_host}/{i}" for i in range(5)],
            "alpha": [f"https://alpha.example.com/{i}" for i in range(5)],
            "beta": [f"https://beta.example.com/{i}" for i in range(5)],
        }

        results = dispatcher.run_many(groups)

        for name in ("alpha", "beta"):
            assert all(r.success for r in results[name])
            assert all(r.attempts == 1 for r in results[name])
        assert all(r.error_kind is OutcomeKind.RATE_LIMITED for r in results["throttled"])
        assert all(r.attempts == 3 for r in results["throttled"])

        unaffected_done = max(t for url, t in fetcher.calls if throttled_host not in url)
        throttled_done = max(t for url, t in fetcher.calls if throttled_host in url)
        assert unaffected_done < throttled_done - 0.5

    def test_independent_limiters(self, fast_config):
        fetcher = RecordingFetcher()
        config = fast_config.override(base_delay=0.3, max_delay=1.0)
        dispatcher = CrawlDispatcher(fetcher, config)
        groups = {name: ["https://shared.example.com/"] for name in ("a", "b", "c")}

        start = time.monotonic()
        results = dispatcher.run_many(groups, share_rate_limiter=False)

        assert all(r.success for group in results.values() for r in group)
        assert time.monotonic() - start < 0.3

    def test_empty_groups(self, fast_config, recording_fetcher):
        assert CrawlDispatcher(recording_fetcher, fast_config).run_many({}) == {}
