"""
Crawl dispatcher: memory-aware, rate-limited dispatch of many fetch tasks.
"""

from .config import ConfigManager, DispatcherConfig, SystemConfig, load_config
from .concurrent import (
    CancellationToken,
    CrawlDispatcher,
    DisplayMode,
    MemoryMonitor,
    ProgressMonitor,
    ProgressSnapshot,
    RateController,
    ResultStream,
    TaskResult,
    TaskState,
)
from .fetchers import BaseFetcher, CallableFetcher, FetchOutcome, HttpFetcher, OutcomeKind
from .utils.errors import (
    ConfigurationError,
    CrawlDispatcherError,
    DispatchError,
    FetchError,
    FetchTimeoutError,
    MaxRetriesExceededError,
    NetworkError,
    RateLimitedError,
    ServerError,
)
from .utils.logging import get_logger, setup_logging

__version__ = "0.1.0"

__all__ = [
    'ConfigManager',
    'DispatcherConfig',
    'SystemConfig',
    'load_config',
    'CancellationToken',
    'CrawlDispatcher',
    'DisplayMode',
    'MemoryMonitor',
    'ProgressMonitor',
    'ProgressSnapshot',
    'RateController',
    'ResultStream',
    'TaskResult',
    'TaskState',
    'BaseFetcher',
    'CallableFetcher',
    'FetchOutcome',
    'HttpFetcher',
    'OutcomeKind',
    'ConfigurationError',
    'CrawlDispatcherError',
    'DispatchError',
    'FetchError',
    'FetchTimeoutError',
    'MaxRetriesExceededError',
    'NetworkError',
    'RateLimitedError',
    'ServerError',
    'get_logger',
    'setup_logging',
]
