"""
Concurrent dispatch engine for bursty sets of independent fetch tasks.

This module provides:
- FIFO task source with retry re-insertion
- Semaphore and memory-adaptive admission policies
- Per-destination rate limiting with adaptive backoff
- Thread pool workers with isolated sessions and per-task timeouts
- Live progress aggregation

Main Components:
- CrawlDispatcher: run, run_streaming and run_many entry points
- TaskSource: pending task queue
- DispatchEngine: SemaphoreEngine / MemoryAdaptiveEngine
- MemoryMonitor: memory sampling
- RateController: per-destination delay and backoff
- WorkerPool: task execution
- ResultCollector: outcome classification and retry queueing
- ProgressMonitor: detailed and aggregated progress views
"""

from .models import (
    AttemptRecord,
    CrawlTask,
    DispatchState,
    TaskResult,
    TaskState
)

from .thread_safe import CancellationToken, ThreadSafeCounter

from .controller import CrawlDispatcher, DispatchRun, ResultStream
from .collector import ResultCollector
from .dispatcher import DispatchEngine, MemoryAdaptiveEngine, SemaphoreEngine, create_engine
from .monitoring import DisplayMode, ProgressMonitor, ProgressSnapshot, TaskProgress
from .rate_controller import DomainState, RateController
from .resource_monitor import MemoryMonitor, MemorySample
from .scheduler import TaskSource, build_tasks
from .thread_pool import SessionPool, WorkerPool, WorkerSession, call_with_timeout

__all__ = [
    # Core models
    'AttemptRecord',
    'CrawlTask',
    'DispatchState',
    'TaskResult',
    'TaskState',

    # Thread-safe utilities
    'CancellationToken',
    'ThreadSafeCounter',

    # Main components
    'CrawlDispatcher',
    'DispatchRun',
    'ResultStream',
    'ResultCollector',
    'DispatchEngine',
    'MemoryAdaptiveEngine',
    'SemaphoreEngine',
    'create_engine',
    'DomainState',
    'RateController',
    'MemoryMonitor',
    'MemorySample',
    'TaskSource',
    'build_tasks',
    'SessionPool',
    'WorkerPool',
    'WorkerSession',
    'call_with_timeout',

    # Monitoring
    'DisplayMode',
    'ProgressMonitor',
    'ProgressSnapshot',
    'TaskProgress'
]
