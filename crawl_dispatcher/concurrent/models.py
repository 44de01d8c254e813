"""
Data models for the crawl dispatch engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from crawl_dispatcher.fetchers.base import FetchOutcome, OutcomeKind
from crawl_dispatcher.utils.errors import DispatchError, MaxRetriesExceededError


class TaskState(Enum):
    """Lifecycle state of a crawl task."""
    QUEUED = "Queued"
    RUNNING = "Running"
    RETRYING = "Retrying"
    SUCCEEDED = "Succeeded"
    FAILED_TERMINAL = "FailedTerminal"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED_TERMINAL)


class DispatchState(Enum):
    """States of the dispatch loop."""
    INITIALIZING = "Initializing"
    MONITORING_MEMORY = "MonitoringMemory"
    CHECKING_MEMORY = "CheckingMemory"
    MEMORY_OK = "MemoryOK"
    MEMORY_HIGH = "MemoryHigh"
    DISPATCHING_TASKS = "DispatchingTasks"
    WAITING_FOR_MEMORY = "WaitingForMemory"
    WAITING_FOR_SLOT = "WaitingForSlot"
    TASK_RUNNING = "TaskRunning"
    TASK_COMPLETED = "TaskCompleted"
    TASK_FAILED = "TaskFailed"
    CANCELLING = "Cancelling"
    FINISHED = "Finished"


_LEGAL_TRANSITIONS = {
    TaskState.QUEUED: {TaskState.RUNNING, TaskState.FAILED_TERMINAL},
    TaskState.RETRYING: {TaskState.RUNNING, TaskState.FAILED_TERMINAL},
    TaskState.RUNNING: {TaskState.SUCCEEDED, TaskState.RETRYING, TaskState.FAILED_TERMINAL},
    TaskState.SUCCEEDED: set(),
    TaskState.FAILED_TERMINAL: set(),
}


@dataclass
class AttemptRecord:
    """One failed attempt in a task's error history."""
    attempt: int
    kind: OutcomeKind
    error_message: Optional[str] = None
    status_code: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class CrawlTask:
    """A single fetch of one target URL."""
    task_id: str
    index: int
    target: str
    destination: str
    attempt_count: int = 0
    state: TaskState = TaskState.QUEUED
    next_allowed_time: Optional[float] = None
    session_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_outcome: Optional[FetchOutcome] = None
    error_history: List[AttemptRecord] = field(default_factory=list)

    def transition_to(self, new_state: TaskState) -> TaskState:
        """
        Move the task to ``new_state``.

        Args:
            new_state: Target state

        Returns:
            The previous state

        Raises:
            DispatchError: If the transition is not allowed
        """
        if new_state not in _LEGAL_TRANSITIONS[self.state]:
            raise DispatchError(
                f"Illegal transition for task {self.task_id}: "
                f"{self.state.value} -> {new_state.value}",
                {"task_id": self.task_id, "from": self.state.value, "to": new_state.value}
            )

        previous = self.state
        self.state = new_state

        if new_state is TaskState.RUNNING and self.started_at is None:
            self.started_at = datetime.now()
        elif new_state.terminal:
            self.completed_at = datetime.now()

        return previous

    def record_failure(self, outcome: FetchOutcome) -> None:
        """Append a failed attempt to the error history."""
        self.error_history.append(AttemptRecord(
            attempt=self.total_attempts,
            kind=outcome.kind,
            error_message=outcome.error_message,
            status_code=outcome.status_code,
        ))

    @property
    def total_attempts(self) -> int:
        """Fetch attempts started so far (first attempt plus re-attempts)."""
        return self.attempt_count + 1

    def get_execution_time(self) -> Optional[float]:
        """Get wall-clock time from first admission to completion in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


@dataclass
class TaskResult:
    """Terminal result for one submitted target."""
    task_id: str
    index: int
    target: str
    destination: str
    success: bool
    state: TaskState
    outcome_kind: OutcomeKind
    attempts: int
    payload: Any = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    execution_time: Optional[float] = None
    error_history: List[AttemptRecord] = field(default_factory=list)

    @property
    def error_kind(self) -> Optional[OutcomeKind]:
        """Last error kind for failed tasks, ``None`` on success."""
        return None if self.success else self.outcome_kind

    @classmethod
    def from_task(cls, task: CrawlTask) -> "TaskResult":
        """Build the result for a task that reached a terminal state."""
        if not task.state.terminal:
            raise DispatchError(
                f"Task {task.task_id} is not terminal ({task.state.value})",
                {"task_id": task.task_id}
            )

        outcome = task.last_outcome or FetchOutcome.cancelled()
        return cls(
            task_id=task.task_id,
            index=task.index,
            target=task.target,
            destination=task.destination,
            success=task.state is TaskState.SUCCEEDED,
            state=task.state,
            outcome_kind=outcome.kind,
            attempts=task.total_attempts if task.started_at else 0,
            payload=outcome.payload,
            status_code=outcome.status_code,
            error_message=outcome.error_message,
            started_at=task.started_at,
            completed_at=task.completed_at,
            execution_time=task.get_execution_time(),
            error_history=list(task.error_history),
        )

    def raise_for_failure(self) -> None:
        """
        Raise if the task did not succeed.

        Raises:
            MaxRetriesExceededError: If the task ended in ``FailedTerminal``
        """
        if self.success:
            return
        raise MaxRetriesExceededError(
            f"Fetching {self.target} failed after {self.attempts} attempt(s): "
            f"{self.outcome_kind.value}",
            last_kind=self.outcome_kind.value,
            attempts=self.attempts,
            details={"task_id": self.task_id, "error_message": self.error_message}
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "index": self.index,
            "target": self.target,
            "destination": self.destination,
            "success": self.success,
            "state": self.state.value,
            "outcome_kind": self.outcome_kind.value,
            "attempts": self.attempts,
            "status_code": self.status_code,
            "error_message": self.error_message,
            "execution_time": self.execution_time,
        }
