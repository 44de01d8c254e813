"""
Main dispatch controller.
Integrates task source, dispatch engine, worker pool, rate controller and
result collector into batch, streaming and multi-group runs.
"""

import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Union

from crawl_dispatcher.config import DispatcherConfig
from crawl_dispatcher.fetchers.base import BaseFetcher, CallableFetcher, default_destination_key
from crawl_dispatcher.fetchers.http_fetcher import HttpFetcher
from crawl_dispatcher.utils.errors import ConfigurationError, DispatchError
from crawl_dispatcher.utils.logging import get_logger
from .collector import ResultCollector
from .dispatcher import DispatchEngine, create_engine
from .models import CrawlTask, DispatchState, TaskResult, TaskState
from .monitoring import ProgressMonitor
from .rate_controller import RateController
from .resource_monitor import MemoryMonitor
from .scheduler import TaskSource, build_tasks
from .thread_pool import WorkerPool
from .thread_safe import CancellationToken


logger = get_logger(__name__)

ConfigLike = Union[None, DispatcherConfig, Mapping[str, Any]]


class DispatchRun:
    """
    One dispatch loop over one set of tasks.

    Owns its engine, task source, collector and worker pool. The loop runs
    on the calling thread and is the only place where tasks are admitted.
    """

    def __init__(self, fetcher: BaseFetcher, config: DispatcherConfig,
                 rate_controller: RateController, progress: ProgressMonitor,
                 cancel_token: CancellationToken,
                 memory_monitor: Optional[MemoryMonitor] = None,
                 on_result: Optional[Callable[[TaskResult], None]] = None,
                 name: str = "run", record_lifecycle: bool = True,
                 run_id: int = 0):
        self.config = config
        self.run_id = run_id
        self.progress = progress
        self.cancel_token = cancel_token
        self.name = name
        self.record_lifecycle = record_lifecycle

        self.engine: DispatchEngine = create_engine(config, memory_monitor)
        self.source = TaskSource()
        self.collector = ResultCollector(config, self.source, rate_controller,
                                         progress=progress, on_result=on_result)
        self._wakeup = threading.Event()
        self.pool = WorkerPool(fetcher, config, rate_controller, self.collector,
                               cancel_token, on_finished=self._on_task_finished)

        self._tasks: List[CrawlTask] = []
        self._futures: List[Future] = []
        self._abandoned = False
        self._was_under_pressure = False
        self.state = DispatchState.INITIALIZING

    def _set_state(self, state: DispatchState) -> None:
        if state is self.state:
            return
        self.state = state
        if self.record_lifecycle or state not in (DispatchState.INITIALIZING, DispatchState.FINISHED):
            self.progress.record_dispatch_state(state)

    def _on_task_finished(self, task: CrawlTask) -> None:
        """Worker exit hook: the outcome is already collected, give the slot back."""
        self.engine.release()
        self._set_state(DispatchState.TASK_COMPLETED if task.state is TaskState.SUCCEEDED
                        else DispatchState.TASK_FAILED)
        self._wakeup.set()

    def execute(self, tasks: List[CrawlTask]) -> List[TaskResult]:
        """
        Dispatch ``tasks`` until every one of them is terminal.

        Returns:
            One result per task, in input order

        Raises:
            DispatchError: If a worker failed outside the fetch itself
        """
        self._tasks = list(tasks)
        self.source.add_tasks(self._tasks)
        if self.record_lifecycle:
            self.progress.reset()
            self.progress.record_dispatch_state(DispatchState.INITIALIZING)
        self.progress.register_tasks(self._tasks)

        logger.info(f"[{self.name}] Dispatching {len(self._tasks)} tasks "
                    f"(mode={self.engine.mode}, max_concurrency={self.config.max_concurrency})")

        try:
            self._dispatch_loop()
        finally:
            self.pool.shutdown(wait=not self._abandoned)

        self._raise_worker_failures()

        results = self.collector.results_in_order()
        if len(results) != len(self._tasks):
            raise DispatchError(
                f"[{self.name}] {len(self._tasks) - len(results)} tasks ended without a result",
                {"expected": len(self._tasks), "collected": len(results)}
            )

        self._set_state(DispatchState.FINISHED)
        summary = self.collector.get_summary()
        logger.info(f"[{self.name}] Finished: {summary['succeeded']} succeeded, "
                    f"{summary['failed']} failed, {summary['retries']} retries")
        return results

    def _dispatch_loop(self) -> None:
        self._set_state(DispatchState.MONITORING_MEMORY)

        while True:
            # Cleared before the checks so a completion after them still wakes the wait below
            self._wakeup.clear()

            if self.cancel_token.is_cancelled():
                self._shutdown_on_cancel()
                return

            # Idle is read before emptiness: a worker requeues its retry before releasing its slot
            idle = self.engine.active_count == 0
            if self.source.is_empty():
                if idle:
                    return
                self._wakeup.wait(self.config.check_interval)
                continue

            self._set_state(DispatchState.CHECKING_MEMORY)
            admitted = self.engine.try_admit()
            self._track_memory()

            if admitted:
                task = self.source.pop_next()
                if task is None:
                    self.engine.release()
                    continue
                self._set_state(DispatchState.MEMORY_OK)
                self._set_state(DispatchState.DISPATCHING_TASKS)
                self._start(task)
                self._set_state(DispatchState.TASK_RUNNING)
                continue

            if self.engine.memory_pressure:
                self._set_state(DispatchState.MEMORY_HIGH)
                self._set_state(DispatchState.WAITING_FOR_MEMORY)
            else:
                self._set_state(DispatchState.WAITING_FOR_SLOT)
            self._wakeup.wait(self.config.check_interval)
            self._set_state(DispatchState.MONITORING_MEMORY)

    def _start(self, task: CrawlTask) -> None:
        self.collector.mark_running(task)
        logger.debug(f"[{self.name}] Admitted task {task.task_id} ({task.target}), "
                     f"active={self.engine.active_count}")
        try:
            self._futures.append(self.pool.submit(task))
        except RuntimeError as e:
            self.engine.release()
            raise DispatchError(f"Could not submit task {task.task_id}: {e}",
                                {"task_id": task.task_id})

    def _track_memory(self) -> None:
        monitor = getattr(self.engine, "monitor", None)
        if monitor is not None:
            self.progress.record_memory_sample(monitor.last_sample)

        pressure = self.engine.memory_pressure
        if pressure and not self._was_under_pressure:
            self.progress.record_memory_pressure()
        self._was_under_pressure = pressure

    def _shutdown_on_cancel(self) -> None:
        """Stop admission, cancel queued tasks and wait for in-flight ones."""
        self._set_state(DispatchState.CANCELLING)
        reason = self.cancel_token.reason or "run cancelled"
        self._cancel_queued(reason)

        grace = self.config.shutdown_grace_period
        deadline = None if grace is None else time.monotonic() + grace

        while self.engine.active_count > 0:
            self._wakeup.clear()
            # Retries requeued by finishing workers are cancelled too
            self._cancel_queued(reason)
            if self.engine.active_count == 0:
                break
            if deadline is None:
                self._wakeup.wait(self.config.check_interval)
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._abandon_running()
                break
            self._wakeup.wait(min(self.config.check_interval, remaining))

        self._cancel_queued(reason)

    def _cancel_queued(self, reason: str) -> None:
        drained = self.source.drain()
        for task in drained:
            self.collector.cancel_task(task, reason)
        if drained:
            logger.info(f"[{self.name}] Cancelled {len(drained)} queued tasks")

    def _abandon_running(self) -> None:
        running = [task for task in self._tasks if task.state is TaskState.RUNNING]
        for task in running:
            self.collector.cancel_task(task, "abandoned after shutdown grace period")
        self._abandoned = True
        logger.warning(f"[{self.name}] Shutdown grace period expired, "
                       f"abandoned {len(running)} in-flight tasks")

    def _raise_worker_failures(self) -> None:
        for future in self._futures:
            if not future.done():
                continue
            error = future.exception()
            if error is not None:
                raise DispatchError(f"[{self.name}] Worker failed: {error}") from error

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "engine": self.engine.get_statistics(),
            "source": self.source.get_queue_status(),
            "pool": self.pool.get_pool_stats(),
            "results": self.collector.get_summary(),
        }


_END_OF_STREAM = object()


class _StreamFailure:
    """Carries a producer exception to the consuming thread."""

    def __init__(self, error: BaseException):
        self.error = error


class ResultStream:
    """
    Lazy, completion-ordered iterator over the results of one run.

    The run executes on a producer thread and feeds a queue. The iterator
    is single-pass; closing it before exhaustion cancels the run.
    """

    def __init__(self, run: DispatchRun, tasks: List[CrawlTask],
                 on_done: Optional[Callable[[], None]] = None):
        self._run = run
        self._tasks = tasks
        self._on_done = on_done
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._exhausted = False
        self._delivered = 0
        self._thread = threading.Thread(target=self._produce, name=f"ResultStream-{run.name}",
                                        daemon=True)

    def _start(self) -> "ResultStream":
        self._thread.start()
        return self

    def _produce(self) -> None:
        try:
            self._run.execute(self._tasks)
        except Exception as e:
            self._queue.put(_StreamFailure(e))
        finally:
            if self._on_done is not None:
                self._on_done()
            self._queue.put(_END_OF_STREAM)

    def put(self, result: TaskResult) -> None:
        """Result callback handed to the collector."""
        self._queue.put(result)

    def __iter__(self) -> "ResultStream":
        return self

    def __next__(self) -> TaskResult:
        if self._exhausted:
            raise StopIteration

        item = self._queue.get()
        if item is _END_OF_STREAM:
            self._exhausted = True
            self._thread.join()
            raise StopIteration
        if isinstance(item, _StreamFailure):
            self._exhausted = True
            self._thread.join()
            raise item.error

        self._delivered += 1
        return item

    def cancel(self, reason: str = "stream cancelled") -> None:
        """Cancel the underlying run; remaining results still arrive as cancelled."""
        self._run.cancel_token.cancel(reason)

    def close(self) -> None:
        """Cancel the run and stop iterating."""
        if not self._exhausted:
            self.cancel("stream closed")
            self._exhausted = True

    @property
    def delivered(self) -> int:
        return self._delivered

    def __enter__(self) -> "ResultStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class CrawlDispatcher:
    """
    Entry point for dispatching fetch tasks.

    A rate controller passed at construction is shared by every run of
    this dispatcher, so destination backoff carries over between runs.
    Without one, each run gets a fresh controller built from its own
    configuration.
    """

    def __init__(self, fetcher: Union[BaseFetcher, Callable, None] = None,
                 config: Optional[DispatcherConfig] = None,
                 rate_controller: Optional[RateController] = None,
                 memory_monitor: Optional[MemoryMonitor] = None,
                 progress: Optional[ProgressMonitor] = None,
                 key_func: Callable[[str], str] = default_destination_key):
        """
        Initialize crawl dispatcher.

        Args:
            fetcher: Fetcher instance or ``fn(target) -> FetchOutcome``; HttpFetcher by default
            config: Base configuration for every run
            rate_controller: Rate controller shared across runs
            memory_monitor: Memory sampler for the memory-adaptive engine
            progress: Progress monitor updated by every run
            key_func: Maps a target onto its destination key
        """
        self.config = config or DispatcherConfig()

        if fetcher is None:
            fetcher_options = {"rate_limit_codes": self.config.rate_limit_codes}
            if self.config.task_timeout is not None:
                fetcher_options["default_timeout"] = self.config.task_timeout
            fetcher = HttpFetcher(**fetcher_options)
        elif not isinstance(fetcher, BaseFetcher):
            if not callable(fetcher):
                raise ConfigurationError(f"Fetcher must be a BaseFetcher or callable, got {type(fetcher).__name__}")
            fetcher = CallableFetcher(fetcher)

        self.fetcher = fetcher
        self.rate_controller = rate_controller
        self.memory_monitor = memory_monitor
        self.progress = progress or ProgressMonitor()
        self.key_func = key_func

        self._lock = threading.Lock()
        self._active_runs: Dict[int, DispatchRun] = {}
        self._run_counter = 0
        self._last_started: Optional[datetime] = None

    def _resolve_config(self, config: ConfigLike) -> DispatcherConfig:
        if config is None:
            return self.config
        if isinstance(config, DispatcherConfig):
            return config
        if isinstance(config, Mapping):
            return self.config.override(**config)
        raise ConfigurationError(f"Unsupported configuration type: {type(config).__name__}")

    def _rate_controller_for(self, config: DispatcherConfig) -> RateController:
        return self.rate_controller or RateController(config)

    def _new_run(self, config: DispatcherConfig, rate_controller: RateController,
                 on_result: Optional[Callable[[TaskResult], None]] = None,
                 name: Optional[str] = None, record_lifecycle: bool = True,
                 cancel_token: Optional[CancellationToken] = None) -> DispatchRun:
        with self._lock:
            self._run_counter += 1
            run_id = self._run_counter
            self._last_started = datetime.now()

        run = DispatchRun(
            self.fetcher, config, rate_controller, self.progress,
            cancel_token or CancellationToken(),
            memory_monitor=self.memory_monitor,
            on_result=on_result,
            name=name or f"run-{run_id}",
            record_lifecycle=record_lifecycle,
            run_id=run_id,
        )
        with self._lock:
            self._active_runs[run_id] = run
        return run

    def _finish_run(self, run: DispatchRun) -> None:
        with self._lock:
            self._active_runs.pop(run.run_id, None)

    def _build_tasks(self, targets: Iterable[str], id_prefix: str = "task") -> List[CrawlTask]:
        if isinstance(targets, str):
            raise DispatchError("targets must be an iterable of URLs, not a single string")
        return build_tasks(targets, self.key_func, id_prefix)

    def run(self, targets: Iterable[str], config: ConfigLike = None) -> List[TaskResult]:
        """
        Fetch every target and wait for all results.

        Args:
            targets: URLs to fetch
            config: Run configuration, or field overrides applied to the base configuration

        Returns:
            Exactly one result per target, in input order

        Raises:
            ConfigurationError: If the configuration is invalid
            DispatchError: If the targets are invalid
        """
        run_config = self._resolve_config(config)
        tasks = self._build_tasks(targets)
        if not tasks:
            return []

        run = self._new_run(run_config, self._rate_controller_for(run_config))
        self.progress.start()
        try:
            return run.execute(tasks)
        finally:
            self.progress.stop()
            self._finish_run(run)

    def run_streaming(self, targets: Iterable[str], config: ConfigLike = None) -> ResultStream:
        """
        Start a run and return its results lazily, in completion order.

        Configuration and target validation happen before this returns.
        """
        run_config = self._resolve_config(config)
        tasks = self._build_tasks(targets)

        holder: Dict[str, ResultStream] = {}
        run = self._new_run(run_config, self._rate_controller_for(run_config),
                            on_result=lambda result: holder["stream"].put(result))
        stream = ResultStream(run, tasks, on_done=lambda: self._finish_run(run))
        holder["stream"] = stream
        return stream._start()

    def run_many(self, targets_by_group: Mapping[Hashable, Iterable[str]],
                 config: ConfigLike = None,
                 share_rate_limiter: bool = True) -> Dict[Hashable, List[TaskResult]]:
        """
        Run independent dispatch instances, one per group, concurrently.

        Args:
            targets_by_group: Targets keyed by group name
            config: Configuration applied to every group
            share_rate_limiter: Use one rate controller for all groups

        Returns:
            Results per group, each in input order
        """
        run_config = self._resolve_config(config)
        tasks_by_group = {
            group: self._build_tasks(targets, id_prefix=str(group))
            for group, targets in targets_by_group.items()
        }
        if not tasks_by_group:
            return {}

        shared_limiter = self._rate_controller_for(run_config) if share_rate_limiter else None
        cancel_token = CancellationToken()
        runs = {
            group: self._new_run(run_config,
                                 shared_limiter or RateController(run_config),
                                 name=str(group), record_lifecycle=False,
                                 cancel_token=cancel_token)
            for group in tasks_by_group
        }

        logger.info(f"Starting {len(runs)} dispatch groups "
                    f"({'shared' if share_rate_limiter else 'per-group'} rate limiter)")
        self.progress.reset()
        self.progress.record_dispatch_state(DispatchState.INITIALIZING)
        self.progress.start()
        try:
            with ThreadPoolExecutor(max_workers=len(runs), thread_name_prefix="DispatchGroup") as executor:
                futures = {
                    group: executor.submit(run.execute, tasks_by_group[group])
                    for group, run in runs.items()
                }
                results = {group: future.result() for group, future in futures.items()}
        finally:
            self.progress.record_dispatch_state(DispatchState.FINISHED)
            self.progress.stop()
            for run in runs.values():
                self._finish_run(run)

        return results

    def cancel(self, reason: str = "run cancelled") -> int:
        """
        Cancel every active run of this dispatcher.

        Returns:
            Number of runs that were cancelled by this call
        """
        with self._lock:
            runs = list(self._active_runs.values())

        cancelled = sum(1 for run in runs if run.cancel_token.cancel(reason))
        if cancelled:
            logger.info(f"Cancellation requested for {cancelled} active runs: {reason}")
        return cancelled

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._active_runs)

    def get_status(self) -> Dict[str, Any]:
        """
        Get current dispatch status.

        Returns:
            Dictionary with progress, active runs and rate limiter statistics
        """
        with self._lock:
            runs = list(self._active_runs.values())
            last_started = self._last_started

        return {
            "status": "running" if runs else "idle",
            "last_started": last_started.isoformat() if last_started else None,
            "progress": self.progress.snapshot().to_dict(),
            "runs": [run.get_status() for run in runs],
            "rate_controller": self.rate_controller.get_statistics() if self.rate_controller else None,
        }
