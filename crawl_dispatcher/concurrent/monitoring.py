"""
Progress monitoring for dispatch runs.
Aggregates task state transitions into read-only snapshots and renders them.
"""

import sys
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, TextIO

from crawl_dispatcher.utils.logging import get_logger
from .models import CrawlTask, DispatchState, TaskState
from .resource_monitor import MemorySample


logger = get_logger(__name__)


class DisplayMode(Enum):
    """How progress is presented."""
    DETAILED = "detailed"
    AGGREGATED = "aggregated"


@dataclass
class TaskProgress:
    """Per-task row of the detailed view."""
    task_id: str
    target: str
    destination: str
    state: TaskState
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def get_duration(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.completed_at or datetime.now()
        return (end - self.started_at).total_seconds()


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time view of a run's progress."""
    captured_at: datetime
    started_at: Optional[datetime]
    total_tasks: int
    state_counts: Dict[TaskState, int]
    retries: int
    peak_running: int
    memory_usage: Optional[float]
    memory_pressure_events: int
    dispatch_state: DispatchState
    finished_at: Optional[datetime] = None

    @property
    def queued(self) -> int:
        return self.state_counts.get(TaskState.QUEUED, 0)

    @property
    def running(self) -> int:
        return self.state_counts.get(TaskState.RUNNING, 0)

    @property
    def retrying(self) -> int:
        return self.state_counts.get(TaskState.RETRYING, 0)

    @property
    def succeeded(self) -> int:
        return self.state_counts.get(TaskState.SUCCEEDED, 0)

    @property
    def failed(self) -> int:
        return self.state_counts.get(TaskState.FAILED_TERMINAL, 0)

    @property
    def completed(self) -> int:
        return self.succeeded + self.failed

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at or self.captured_at
        return max(0.0, (end - self.started_at).total_seconds())

    @property
    def throughput(self) -> float:
        """Terminal tasks per second."""
        elapsed = self.elapsed_seconds
        return self.completed / elapsed if elapsed > 0 else 0.0

    @property
    def progress_percentage(self) -> float:
        if self.total_tasks == 0:
            return 100.0
        return self.completed / self.total_tasks * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "captured_at": self.captured_at.isoformat(),
            "total_tasks": self.total_tasks,
            "queued": self.queued,
            "running": self.running,
            "retrying": self.retrying,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retries": self.retries,
            "peak_running": self.peak_running,
            "progress_percentage": self.progress_percentage,
            "throughput": self.throughput,
            "elapsed_seconds": self.elapsed_seconds,
            "memory_usage": self.memory_usage,
            "memory_pressure_events": self.memory_pressure_events,
            "dispatch_state": self.dispatch_state.value,
        }


class ProgressMonitor:
    """
    Live statistics for a dispatch run.

    Updated by the dispatch loop and the result collector on every state
    transition. All updates take one short lock and never block admission.
    """

    def __init__(self, display_mode: DisplayMode = DisplayMode.AGGREGATED,
                 max_visible_rows: int = 15, update_interval: float = 5.0,
                 enable_console_output: bool = False, stream: Optional[TextIO] = None):
        """
        Initialize progress monitor.

        Args:
            display_mode: Default view used by ``render``
            max_visible_rows: Row limit of the detailed view
            update_interval: Seconds between console reports
            enable_console_output: Print reports from a background thread while running
            stream: Report destination, stdout by default
        """
        self.display_mode = display_mode
        self.max_visible_rows = max_visible_rows
        self.update_interval = update_interval
        self.enable_console_output = enable_console_output
        self.stream = stream

        self._lock = threading.Lock()
        self._tasks: Dict[str, TaskProgress] = {}
        self._counts: Dict[TaskState, int] = {state: 0 for state in TaskState}
        self._retries = 0
        self._peak_running = 0
        self._memory_sample: Optional[MemorySample] = None
        self._memory_pressure_events = 0
        self._dispatch_state = DispatchState.INITIALIZING
        self._started_at: Optional[datetime] = None
        self._finished_at: Optional[datetime] = None

        self._stop_event = threading.Event()
        self._console_thread: Optional[threading.Thread] = None

    def reset(self) -> None:
        """Forget all tasks and statistics of a previous run."""
        with self._lock:
            self._tasks.clear()
            self._counts = {state: 0 for state in TaskState}
            self._retries = 0
            self._peak_running = 0
            self._memory_sample = None
            self._memory_pressure_events = 0
            self._dispatch_state = DispatchState.INITIALIZING
            self._started_at = None
            self._finished_at = None

    def register_tasks(self, tasks: List[CrawlTask]) -> None:
        """Track new tasks in their current state."""
        with self._lock:
            for task in tasks:
                self._tasks[task.task_id] = TaskProgress(
                    task_id=task.task_id,
                    target=task.target,
                    destination=task.destination,
                    state=task.state,
                )
                self._counts[task.state] += 1

    def record_transition(self, task: CrawlTask, previous: TaskState, new_state: TaskState) -> None:
        """Apply one task state change."""
        with self._lock:
            row = self._tasks.get(task.task_id)
            if row is None:
                return

            self._counts[previous] -= 1
            self._counts[new_state] += 1
            row.state = new_state
            row.attempts = task.total_attempts

            if new_state is TaskState.RUNNING:
                if row.started_at is None:
                    row.started_at = task.started_at or datetime.now()
                self._peak_running = max(self._peak_running, self._counts[TaskState.RUNNING])
            elif new_state is TaskState.RETRYING:
                self._retries += 1
                if task.last_outcome is not None:
                    row.last_error = task.last_outcome.kind.value
            elif new_state.terminal:
                row.completed_at = task.completed_at or datetime.now()
                if new_state is TaskState.FAILED_TERMINAL and task.last_outcome is not None:
                    row.last_error = task.last_outcome.kind.value

    def record_dispatch_state(self, state: DispatchState) -> None:
        with self._lock:
            if state is DispatchState.INITIALIZING:
                self._started_at = datetime.now()
                self._finished_at = None
            elif state is DispatchState.FINISHED:
                self._finished_at = datetime.now()
            self._dispatch_state = state

    def record_memory_sample(self, sample: Optional[MemorySample]) -> None:
        with self._lock:
            self._memory_sample = sample

    def record_memory_pressure(self) -> None:
        """Count one transition into memory pressure."""
        with self._lock:
            self._memory_pressure_events += 1

    def snapshot(self) -> ProgressSnapshot:
        """Return an immutable copy of the current statistics."""
        with self._lock:
            sample = self._memory_sample
            return ProgressSnapshot(
                captured_at=datetime.now(),
                started_at=self._started_at,
                finished_at=self._finished_at,
                total_tasks=len(self._tasks),
                state_counts=dict(self._counts),
                retries=self._retries,
                peak_running=self._peak_running,
                memory_usage=sample.value if sample is not None and sample.ok else None,
                memory_pressure_events=self._memory_pressure_events,
                dispatch_state=self._dispatch_state,
            )

    def task_details(self) -> List[TaskProgress]:
        """Copies of the per-task rows, in registration order."""
        with self._lock:
            return [TaskProgress(**vars(row)) for row in self._tasks.values()]

    def render(self, mode: Optional[DisplayMode] = None) -> str:
        """
        Render progress as a text table.

        Args:
            mode: View to render, defaults to ``display_mode``

        Returns:
            Multi-line status report
        """
        mode = mode or self.display_mode
        snap = self.snapshot()

        memory = f"{snap.memory_usage * 100:.1f}%" if snap.memory_usage is not None else "n/a"
        lines = [
            "=" * 80,
            f"CRAWL DISPATCH STATUS - {snap.captured_at.strftime('%H:%M:%S')} ({snap.dispatch_state.value})",
            "=" * 80,
            f"Progress: {snap.progress_percentage:.1f}% ({snap.completed}/{snap.total_tasks} tasks)",
            f"  Queued: {snap.queued}  Running: {snap.running}  Retrying: {snap.retrying}",
            f"  Succeeded: {snap.succeeded}  Failed: {snap.failed}  Retries: {snap.retries}",
            f"Throughput: {snap.throughput:.2f} tasks/s  Elapsed: {snap.elapsed_seconds:.1f}s  "
            f"Peak running: {snap.peak_running}",
            f"Memory: {memory}  Pressure events: {snap.memory_pressure_events}",
        ]

        if mode is DisplayMode.DETAILED:
            rows = self.task_details()
            # Active tasks first, then by registration order
            rows.sort(key=lambda r: r.state.terminal)
            lines.append("-" * 80)
            lines.append(f"{'TASK':<12} {'STATE':<15} {'ATT':>3} {'TIME':>8}  TARGET")
            for row in rows[:self.max_visible_rows]:
                duration = row.get_duration()
                duration_text = f"{duration:.1f}s" if duration is not None else "-"
                error = f" [{row.last_error}]" if row.last_error else ""
                lines.append(
                    f"{row.task_id:<12} {row.state.value:<15} {row.attempts:>3} {duration_text:>8}  "
                    f"{row.target[:40]}{error}"
                )
            if len(rows) > self.max_visible_rows:
                lines.append(f"... {len(rows) - self.max_visible_rows} more tasks")

        lines.append("=" * 80)
        return "\n".join(lines)

    def start(self) -> None:
        """Start the console reporter thread if console output is enabled."""
        if not self.enable_console_output or self._console_thread is not None:
            return

        self._stop_event.clear()
        self._console_thread = threading.Thread(
            target=self._console_output_loop,
            name="ProgressConsole",
            daemon=True
        )
        self._console_thread.start()
        logger.debug("Progress console reporter started")

    def stop(self) -> None:
        """Stop the console reporter and print a final report."""
        if self._console_thread is None:
            return

        self._stop_event.set()
        self._console_thread.join(timeout=5.0)
        self._console_thread = None
        self._print_status()

    def _console_output_loop(self) -> None:
        while not self._stop_event.wait(self.update_interval):
            self._print_status()

    def _print_status(self) -> None:
        stream = self.stream or sys.stdout
        print(self.render(), file=stream, flush=True)
