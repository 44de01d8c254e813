"""
Task source for the dispatch engine.
Holds pending crawl tasks and hands them out in FIFO order.
"""

import threading
from collections import deque
from typing import Callable, Dict, Any, Iterable, List, Optional

from crawl_dispatcher.utils.logging import get_logger
from crawl_dispatcher.utils.errors import DispatchError
from .models import CrawlTask, TaskState
from .thread_safe import ThreadSafeCounter


logger = get_logger(__name__)


def build_tasks(targets: Iterable[str], key_func: Callable[[str], str],
                id_prefix: str = "task") -> List[CrawlTask]:
    """
    Create one queued task per target, keeping input order.

    Args:
        targets: URLs to fetch
        key_func: Maps a URL onto its destination key
        id_prefix: Prefix for generated task ids

    Returns:
        Tasks indexed by input position

    Raises:
        DispatchError: If a target is not a non-empty string
    """
    tasks = []
    for index, target in enumerate(targets):
        if not isinstance(target, str) or not target.strip():
            raise DispatchError(
                f"Invalid target at position {index}: {target!r}",
                {"index": index}
            )
        tasks.append(CrawlTask(
            task_id=f"{id_prefix}-{index}",
            index=index,
            target=target,
            destination=key_func(target),
        ))
    return tasks


class TaskSource:
    """
    FIFO source of tasks awaiting admission.

    New tasks and retries share one deque; retries are appended at the back
    so they never overtake tasks that were already waiting.
    """

    def __init__(self):
        self._queue: deque = deque()
        self._lock = threading.Lock()
        self._all_tasks: Dict[str, CrawlTask] = {}

        self._tasks_submitted = ThreadSafeCounter()
        self._tasks_requeued = ThreadSafeCounter()
        self._tasks_popped = ThreadSafeCounter()

    def add_tasks(self, tasks: List[CrawlTask]) -> None:
        """
        Add new tasks to the back of the queue.

        Args:
            tasks: Tasks in ``Queued`` state

        Raises:
            DispatchError: On duplicate task ids or non-queued tasks
        """
        with self._lock:
            for task in tasks:
                if task.task_id in self._all_tasks:
                    raise DispatchError(f"Task {task.task_id} already exists",
                                        {"task_id": task.task_id})
                if task.state is not TaskState.QUEUED:
                    raise DispatchError(f"Task {task.task_id} is not queued ({task.state.value})",
                                        {"task_id": task.task_id})
                self._all_tasks[task.task_id] = task
                self._queue.append(task)

        self._tasks_submitted.increment(len(tasks))
        logger.debug(f"Added {len(tasks)} tasks to task source")

    def requeue(self, task: CrawlTask) -> None:
        """
        Put a retrying task back at the end of the queue.

        Raises:
            DispatchError: If the task is unknown or not in ``Retrying`` state
        """
        if task.state is not TaskState.RETRYING:
            raise DispatchError(f"Only retrying tasks can be requeued, {task.task_id} is {task.state.value}",
                                {"task_id": task.task_id})

        with self._lock:
            if task.task_id not in self._all_tasks:
                raise DispatchError(f"Unknown task {task.task_id}", {"task_id": task.task_id})
            self._queue.append(task)

        self._tasks_requeued.increment()
        logger.debug(f"Requeued task {task.task_id} (attempt {task.attempt_count})")

    def pop_next(self) -> Optional[CrawlTask]:
        """Remove and return the oldest waiting task, or None when empty."""
        with self._lock:
            if not self._queue:
                return None
            task = self._queue.popleft()

        self._tasks_popped.increment()
        return task

    def drain(self) -> List[CrawlTask]:
        """Remove and return every waiting task (used on cancellation)."""
        with self._lock:
            drained = list(self._queue)
            self._queue.clear()
        return drained

    def is_empty(self) -> bool:
        with self._lock:
            return not self._queue

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def get_all_tasks(self) -> List[CrawlTask]:
        """Every task ever added, in insertion order."""
        with self._lock:
            return list(self._all_tasks.values())

    def get_queue_status(self) -> Dict[str, Any]:
        """
        Get current queue statistics.

        Returns:
            Dictionary with queue statistics
        """
        return {
            "pending": len(self),
            "submitted": self._tasks_submitted.get_value(),
            "requeued": self._tasks_requeued.get_value(),
            "dispatched": self._tasks_popped.get_value(),
        }
