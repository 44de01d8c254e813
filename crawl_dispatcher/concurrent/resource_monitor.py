"""
Memory sampling for memory-adaptive admission.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import psutil

from crawl_dispatcher.utils.logging import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class MemorySample:
    """Result of one memory reading."""
    value: Optional[float]
    timestamp: float
    ok: bool = True
    error_message: Optional[str] = None


def system_memory_fraction() -> float:
    """Fraction of system memory in use."""
    return psutil.virtual_memory().percent / 100.0


def process_memory_fraction() -> float:
    """Fraction of system memory used by this process."""
    return psutil.Process().memory_percent() / 100.0


class MemoryMonitor:
    """
    On-demand memory sampler with a minimum interval between readings.

    The last sample is cached and reused until ``check_interval`` seconds
    have passed. A failed reading is kept as a failed sample and makes
    ``is_below`` answer False until a later reading succeeds.
    """

    def __init__(self, check_interval: float = 1.0, scope: str = "system",
                 sampler: Optional[Callable[[], float]] = None):
        """
        Initialize memory monitor.

        Args:
            check_interval: Minimum seconds between two real readings
            scope: "system" for machine-wide usage, "process" for this process
            sampler: Custom callable returning the used fraction in [0, 1]
        """
        if sampler is None:
            sampler = process_memory_fraction if scope == "process" else system_memory_fraction

        self.check_interval = check_interval
        self.scope = scope
        self._sampler = sampler
        self._last_sample: Optional[MemorySample] = None
        self._lock = threading.Lock()
        self._samples_taken = 0
        self._failed_samples = 0

    def sample(self, force: bool = False) -> MemorySample:
        """
        Return the cached sample, taking a new reading when it is stale.

        Args:
            force: Take a new reading regardless of its age

        Returns:
            Most recent memory sample
        """
        with self._lock:
            now = time.monotonic()
            last = self._last_sample
            if not force and last is not None and now - last.timestamp < self.check_interval:
                return last

            try:
                value = float(self._sampler())
                sample = MemorySample(value=value, timestamp=now)
            except Exception as e:
                # Unreadable memory counts as over threshold
                logger.error(f"Error sampling {self.scope} memory: {e}")
                sample = MemorySample(value=None, timestamp=now, ok=False, error_message=str(e))
                self._failed_samples += 1

            self._samples_taken += 1
            self._last_sample = sample
            return sample

    def is_below(self, threshold: float) -> bool:
        """True if the current reading is valid and strictly below ``threshold``."""
        sample = self.sample()
        return sample.ok and sample.value < threshold

    @property
    def last_sample(self) -> Optional[MemorySample]:
        with self._lock:
            return self._last_sample

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            last = self._last_sample
            return {
                "scope": self.scope,
                "samples_taken": self._samples_taken,
                "failed_samples": self._failed_samples,
                "last_value": last.value if last else None,
                "last_ok": last.ok if last else None,
            }
