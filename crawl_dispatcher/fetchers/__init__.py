"""
Fetch collaborators consumed by the dispatcher.
"""

from .base import (
    BaseFetcher,
    CallableFetcher,
    FetchOutcome,
    OutcomeKind,
    classify_exception,
    classify_status,
    default_destination_key,
)
from .http_fetcher import HttpFetcher, UserAgentRotator

__all__ = [
    'BaseFetcher',
    'CallableFetcher',
    'FetchOutcome',
    'OutcomeKind',
    'classify_exception',
    'classify_status',
    'default_destination_key',
    'HttpFetcher',
    'UserAgentRotator',
]
