"""
Result collection and retry queueing.
"""

import threading
from typing import Callable, Dict, List, Optional

from crawl_dispatcher.config import DispatcherConfig
from crawl_dispatcher.fetchers.base import FetchOutcome, OutcomeKind
from crawl_dispatcher.utils.logging import get_logger
from .models import CrawlTask, TaskResult, TaskState
from .rate_controller import RateController
from .scheduler import TaskSource


logger = get_logger(__name__)


class ResultCollector:
    """
    Classifies attempt outcomes and decides retry or termination.

    Retries are put back into the task source from the worker thread,
    before that worker gives its engine slot back. The dispatch loop reads
    the active count before checking the source, so a retry in transit is
    always seen either as a running task or as a queued one.
    """

    def __init__(self, config: DispatcherConfig, source: TaskSource,
                 rate_controller: RateController, progress=None,
                 on_result: Optional[Callable[[TaskResult], None]] = None):
        """
        Initialize result collector.

        Args:
            config: Run configuration (max_retries)
            source: Task source receiving retries
            rate_controller: Receives success/failure feedback
            progress: Optional ProgressMonitor notified of transitions
            on_result: Called with every terminal result, outside the lock
        """
        self.config = config
        self.source = source
        self.rate_controller = rate_controller
        self.progress = progress
        self.on_result = on_result

        self._results: Dict[str, TaskResult] = {}
        self._lock = threading.Lock()
        self._retries = 0
        self._discarded = 0

    def _transition(self, task: CrawlTask, new_state: TaskState) -> None:
        previous = task.transition_to(new_state)
        if self.progress is not None:
            self.progress.record_transition(task, previous, new_state)

    def mark_running(self, task: CrawlTask) -> None:
        """Move an admitted task from ``Queued``/``Retrying`` to ``Running``."""
        with self._lock:
            self._transition(task, TaskState.RUNNING)

    def handle(self, task: CrawlTask, outcome: FetchOutcome) -> Optional[TaskResult]:
        """
        Process the outcome of one attempt.

        Args:
            task: Task that ran the attempt, in ``Running`` state
            outcome: Classified attempt outcome

        Returns:
            Terminal result, or None when the task was requeued or the
            outcome arrived after the task had been abandoned
        """
        with self._lock:
            if task.state is not TaskState.RUNNING:
                self._discarded += 1
                logger.debug(f"Discarding late outcome {outcome.kind.value} for task {task.task_id} "
                             f"in state {task.state.value}")
                return None

            task.last_outcome = outcome

            if outcome.success:
                self.rate_controller.record_success(task.destination)
                self._transition(task, TaskState.SUCCEEDED)
                result = self._store(task)
                logger.debug(f"Task {task.task_id} succeeded after {task.total_attempts} attempt(s)")

            elif outcome.kind is OutcomeKind.CANCELLED:
                self._transition(task, TaskState.FAILED_TERMINAL)
                result = self._store(task)
                logger.debug(f"Task {task.task_id} cancelled: {outcome.error_message}")

            else:
                task.record_failure(outcome)
                delay = self.rate_controller.record_failure(
                    task.destination, outcome.kind, outcome.retry_after
                )

                if task.attempt_count < self.config.max_retries:
                    task.attempt_count += 1
                    task.next_allowed_time = self.rate_controller.next_allowed_time(task.destination)
                    self._transition(task, TaskState.RETRYING)
                    self.source.requeue(task)
                    self._retries += 1
                    logger.warning(
                        f"Task {task.task_id} failed with {outcome.kind.value}, "
                        f"retry {task.attempt_count}/{self.config.max_retries} "
                        f"(destination delay {delay:.2f}s)"
                    )
                    return None

                self._transition(task, TaskState.FAILED_TERMINAL)
                result = self._store(task)
                logger.warning(
                    f"Task {task.task_id} failed terminally after {task.total_attempts} attempt(s): "
                    f"{outcome.kind.value} {outcome.error_message or ''}"
                )

        self._notify(result)
        return result

    def cancel_task(self, task: CrawlTask, reason: str = "run cancelled") -> Optional[TaskResult]:
        """
        Terminate a task that has not finished, reporting it as cancelled.

        Works for queued or retrying tasks drained from the source and for
        running tasks abandoned after the shutdown grace period.

        Returns:
            The cancelled result, or None if the task was already terminal
        """
        with self._lock:
            if task.state.terminal:
                return None
            task.last_outcome = FetchOutcome.cancelled(reason)
            self._transition(task, TaskState.FAILED_TERMINAL)
            result = self._store(task)

        self._notify(result)
        return result

    def _store(self, task: CrawlTask) -> TaskResult:
        result = TaskResult.from_task(task)
        self._results[task.task_id] = result
        return result

    def _notify(self, result: TaskResult) -> None:
        if self.on_result is not None:
            self.on_result(result)

    def get_result(self, task_id: str) -> Optional[TaskResult]:
        with self._lock:
            return self._results.get(task_id)

    def results_in_order(self) -> List[TaskResult]:
        """All terminal results sorted by input index."""
        with self._lock:
            return sorted(self._results.values(), key=lambda r: r.index)

    def get_results_count(self) -> int:
        with self._lock:
            return len(self._results)

    def get_summary(self) -> Dict[str, int]:
        """
        Get summary statistics of all results.

        Returns:
            Dictionary with counts of succeeded, failed, cancelled and retried tasks
        """
        with self._lock:
            results = list(self._results.values())
            return {
                "total": len(results),
                "succeeded": sum(1 for r in results if r.success),
                "failed": sum(1 for r in results if not r.success),
                "cancelled": sum(1 for r in results if r.outcome_kind is OutcomeKind.CANCELLED),
                "retries": self._retries,
                "discarded_outcomes": self._discarded,
            }
