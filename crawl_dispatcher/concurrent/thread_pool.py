"""
Worker pool and session management for the dispatch engine.
"""

import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, Optional

from crawl_dispatcher.config import DispatcherConfig
from crawl_dispatcher.fetchers.base import BaseFetcher, FetchOutcome, OutcomeKind, classify_exception
from crawl_dispatcher.utils.errors import DispatchError, FetchTimeoutError
from crawl_dispatcher.utils.logging import get_logger
from .collector import ResultCollector
from .models import CrawlTask
from .rate_controller import RateController
from .thread_safe import CancellationToken, ThreadSafeCounter


logger = get_logger(__name__)


@dataclass
class WorkerSession:
    """Execution context owned by exactly one in-flight task."""
    session_id: str
    context: Any = None
    tasks_served: int = 0
    invalidated: bool = False
    detached: bool = False
    created_at: datetime = field(default_factory=datetime.now)

    def detach(self) -> None:
        """
        Mark the context unusable and hand its closing to someone else.

        Used when an abandoned call may still be using the context; the
        pool then neither reuses nor closes it on release.
        """
        self.invalidated = True
        self.detached = True


class SessionPool:
    """
    Pool of reusable worker sessions.

    Sessions are created lazily through the fetcher and never handed to
    two tasks at once.
    """

    def __init__(self, fetcher: BaseFetcher):
        self.fetcher = fetcher
        self._idle: deque = deque()
        self._lock = threading.Lock()
        self._closed = False
        self._in_use = 0

        self._sessions_created = ThreadSafeCounter()
        self._sessions_invalidated = ThreadSafeCounter()

    def _create(self) -> WorkerSession:
        number = self._sessions_created.increment()
        session = WorkerSession(session_id=f"session-{number}", context=self.fetcher.create_session())
        logger.debug(f"Created worker session {session.session_id}")
        return session

    @contextmanager
    def acquire(self) -> Iterator[WorkerSession]:
        """
        Borrow a session for the duration of one task.

        Raises:
            DispatchError: If the pool has been closed
        """
        with self._lock:
            if self._closed:
                raise DispatchError("Session pool is closed")
            session = self._idle.popleft() if self._idle else None
            self._in_use += 1

        try:
            if session is None:
                session = self._create()
            yield session
        finally:
            with self._lock:
                self._in_use -= 1
                reusable = session is not None and not session.invalidated and not self._closed
                if reusable:
                    self._idle.append(session)
            if session is not None and not reusable:
                if session.invalidated:
                    self._sessions_invalidated.increment()
                if not session.detached:
                    self.fetcher.close_session(session.context)

    def close_all(self) -> None:
        """Close idle sessions; sessions still in use are closed on release."""
        with self._lock:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()

        for session in idle:
            self.fetcher.close_session(session.context)

        logger.debug(f"Session pool closed ({len(idle)} idle sessions released)")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "idle": len(self._idle),
                "in_use": self._in_use,
                "created": self._sessions_created.get_value(),
                "invalidated": self._sessions_invalidated.get_value(),
            }


def call_with_timeout(fn: Callable[[], Any], timeout: Optional[float],
                      on_abandoned_done: Optional[Callable[[], None]] = None) -> Any:
    """
    Run ``fn`` and wait for it at most ``timeout`` seconds.

    The call runs on a daemon thread so an expired call can be abandoned;
    it keeps running in the background and its result is dropped.

    Args:
        fn: Call to run
        timeout: Seconds to wait, or None to run ``fn`` inline
        on_abandoned_done: Called once an abandoned call has finished

    Raises:
        FetchTimeoutError: If ``fn`` has not returned in time
    """
    if timeout is None:
        return fn()

    future: Future = Future()

    def runner():
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except BaseException as e:
            future.set_exception(e)

    thread = threading.Thread(target=runner, name="CrawlFetch", daemon=True)
    thread.start()

    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        if on_abandoned_done is not None:
            future.add_done_callback(lambda _: on_abandoned_done())
        raise FetchTimeoutError(f"Fetch did not complete within {timeout}s",
                                {"timeout": timeout})


class WorkerPool:
    """
    Runs admitted tasks on a thread pool.

    Each task borrows a session, waits for its destination's rate limit,
    fetches, and hands the outcome to the result collector. ``on_finished``
    is called on every exit path once the collector has seen the outcome.
    """

    def __init__(self, fetcher: BaseFetcher, config: DispatcherConfig,
                 rate_controller: RateController, collector: ResultCollector,
                 cancel_token: CancellationToken,
                 on_finished: Callable[[CrawlTask], None]):
        """
        Initialize worker pool.

        Args:
            fetcher: Fetch collaborator
            config: Run configuration (max_concurrency, task_timeout)
            rate_controller: Per-destination rate limiter
            collector: Receives every attempt outcome
            cancel_token: Run-level cancellation
            on_finished: Slot release and loop wakeup callback
        """
        self.fetcher = fetcher
        self.config = config
        self.rate_controller = rate_controller
        self.collector = collector
        self.cancel_token = cancel_token
        self.on_finished = on_finished

        self.session_pool = SessionPool(fetcher)
        self._executor = ThreadPoolExecutor(max_workers=config.max_concurrency,
                                            thread_name_prefix="CrawlWorker")
        self._attempts = ThreadSafeCounter()
        self._timeouts = ThreadSafeCounter()
        self._shutdown = False

        logger.debug(f"WorkerPool initialized with {config.max_concurrency} workers")

    def submit(self, task: CrawlTask) -> Future:
        """Schedule one admitted task."""
        if self._shutdown:
            raise DispatchError("Worker pool is shut down", {"task_id": task.task_id})
        return self._executor.submit(self._run_task, task)

    def _run_task(self, task: CrawlTask) -> None:
        try:
            outcome = self._execute(task)
            self.collector.handle(task, outcome)
        except Exception as e:
            logger.error(f"Worker failed while handling task {task.task_id}: {e}", exc_info=True)
            raise
        finally:
            self.on_finished(task)

    def _execute(self, task: CrawlTask) -> FetchOutcome:
        """Run one attempt and return its classified outcome."""
        try:
            with self.session_pool.acquire() as session:
                task.session_id = session.session_id

                if not self.rate_controller.acquire(task.destination, self.cancel_token):
                    return FetchOutcome.cancelled("cancelled while waiting for rate limit")

                self._attempts.increment()
                logger.debug(f"Fetching {task.target} (task {task.task_id}, attempt {task.total_attempts}, "
                             f"{session.session_id})")

                try:
                    outcome = call_with_timeout(
                        lambda: self.fetcher.fetch(task.target, session=session.context,
                                                   timeout=self.config.task_timeout),
                        self.config.task_timeout,
                        on_abandoned_done=lambda: self.fetcher.close_session(session.context),
                    )
                except FetchTimeoutError as e:
                    self._timeouts.increment()
                    # The abandoned call still holds the context; it is closed when that call returns
                    session.detach()
                    return classify_exception(e)

                session.tasks_served += 1
        except DispatchError:
            raise
        except Exception as e:
            return classify_exception(e)

        if not isinstance(outcome, FetchOutcome):
            logger.error(f"Fetcher returned {type(outcome).__name__} instead of FetchOutcome for {task.target}")
            return FetchOutcome.failure(OutcomeKind.NETWORK_ERROR,
                                        f"invalid fetcher result: {type(outcome).__name__}")
        return outcome

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop accepting tasks and release sessions.

        Args:
            wait: Block until running tasks have finished
        """
        self._shutdown = True
        self._executor.shutdown(wait=wait)
        self.session_pool.close_all()

    def get_pool_stats(self) -> Dict[str, Any]:
        """
        Get worker pool statistics.

        Returns:
            Dictionary with pool statistics
        """
        return {
            "max_workers": self.config.max_concurrency,
            "attempts": self._attempts.get_value(),
            "timeouts": self._timeouts.get_value(),
            "sessions": self.session_pool.get_stats(),
        }
