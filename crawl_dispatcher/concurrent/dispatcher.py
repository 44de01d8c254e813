"""
Admission policies for the dispatch loop.

Both engines reserve a slot atomically in ``try_admit`` and give it back
in ``release``; the dispatch loop does not know which one it is using.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from crawl_dispatcher.config import DispatcherConfig
from crawl_dispatcher.utils.errors import DispatchError
from crawl_dispatcher.utils.logging import get_logger
from .resource_monitor import MemoryMonitor
from .thread_safe import ThreadSafeCounter


logger = get_logger(__name__)


class DispatchEngine(ABC):
    """Base admission policy with a bounded slot count."""

    mode = "base"

    def __init__(self, max_concurrency: int):
        self.max_concurrency = max_concurrency
        self._semaphore = threading.BoundedSemaphore(max_concurrency)
        self._active = ThreadSafeCounter()
        self._admitted = ThreadSafeCounter()

    @abstractmethod
    def try_admit(self) -> bool:
        """
        Reserve a slot for one new task if policy allows it right now.

        Returns:
            True if a slot was reserved; the caller must ``release`` it later
        """

    def _acquire_slot(self) -> bool:
        if not self._semaphore.acquire(blocking=False):
            return False
        self._active.increment()
        self._admitted.increment()
        return True

    def release(self) -> None:
        """
        Return a slot reserved by ``try_admit``.

        Raises:
            DispatchError: If more slots are released than were reserved
        """
        try:
            self._semaphore.release()
        except ValueError:
            raise DispatchError("Engine slot released more often than admitted")
        self._active.decrement()

    @property
    def active_count(self) -> int:
        return self._active.get_value()

    @property
    def memory_pressure(self) -> bool:
        return False

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "max_concurrency": self.max_concurrency,
            "active": self.active_count,
            "admitted": self._admitted.get_value(),
            "memory_pressure": self.memory_pressure,
        }


class SemaphoreEngine(DispatchEngine):
    """Admits whenever a permit is free."""

    mode = "semaphore"

    def try_admit(self) -> bool:
        return self._acquire_slot()


class MemoryAdaptiveEngine(DispatchEngine):
    """
    Admits only while sampled memory usage is below the threshold.

    With ``memory_wait_timeout`` set, pressure lasting longer than the
    timeout while nothing runs lets one task through at a time, so a run
    whose own baseline keeps memory high still finishes.
    """

    mode = "memory_adaptive"

    def __init__(self, max_concurrency: int, monitor: MemoryMonitor,
                 memory_threshold: float = 0.9,
                 memory_wait_timeout: Optional[float] = None):
        super().__init__(max_concurrency)
        self.monitor = monitor
        self.memory_threshold = memory_threshold
        self.memory_wait_timeout = memory_wait_timeout

        self._lock = threading.Lock()
        self._memory_pressure = False
        self._pressure_since: Optional[float] = None
        self._pressure_events = ThreadSafeCounter()
        self._degraded_admissions = ThreadSafeCounter()

    def try_admit(self) -> bool:
        with self._lock:
            if self.monitor.is_below(self.memory_threshold):
                if self._memory_pressure:
                    logger.info("Memory usage back below threshold, resuming dispatch")
                self._memory_pressure = False
                self._pressure_since = None
                return self._acquire_slot()

            now = time.monotonic()
            if not self._memory_pressure:
                self._memory_pressure = True
                self._pressure_since = now
                self._pressure_events.increment()
                sample = self.monitor.last_sample
                logger.warning(
                    f"Memory usage {sample.value if sample else None} at or above "
                    f"threshold {self.memory_threshold}, pausing dispatch"
                )

            if (self.memory_wait_timeout is not None
                    and now - self._pressure_since >= self.memory_wait_timeout
                    and self.active_count == 0):
                if self._acquire_slot():
                    self._degraded_admissions.increment()
                    logger.warning(
                        f"Memory pressure persisted for {now - self._pressure_since:.1f}s, "
                        f"admitting a single task in degraded mode"
                    )
                    return True

            return False

    @property
    def memory_pressure(self) -> bool:
        return self._memory_pressure

    @property
    def pressure_events(self) -> int:
        return self._pressure_events.get_value()

    def get_statistics(self) -> Dict[str, Any]:
        stats = super().get_statistics()
        stats.update({
            "memory_threshold": self.memory_threshold,
            "pressure_events": self.pressure_events,
            "degraded_admissions": self._degraded_admissions.get_value(),
            "monitor": self.monitor.get_statistics(),
        })
        return stats


def create_engine(config: DispatcherConfig, monitor: Optional[MemoryMonitor] = None) -> DispatchEngine:
    """
    Build the engine selected by ``config.dispatch_mode``.

    Args:
        config: Run configuration
        monitor: Memory monitor for the memory-adaptive engine; created from config if absent

    Returns:
        Dispatch engine instance
    """
    if config.dispatch_mode == "semaphore":
        return SemaphoreEngine(config.max_concurrency)

    if config.dispatch_mode == "memory_adaptive":
        if monitor is None:
            monitor = MemoryMonitor(check_interval=config.check_interval, scope=config.memory_scope)
        return MemoryAdaptiveEngine(
            config.max_concurrency,
            monitor,
            memory_threshold=config.memory_threshold,
            memory_wait_timeout=config.memory_wait_timeout,
        )

    raise DispatchError(f"Unknown dispatch mode: {config.dispatch_mode}")
