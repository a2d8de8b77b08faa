"""
Execution engine: dependency graph analysis, cancellation tokens, the TTL
result cache and the bounded-concurrency DAG scheduler.
"""

from pyconductor.executor.cache import CACHE_MISS, ResultCache
from pyconductor.executor.cancellation import CancellationToken
from pyconductor.executor.dag import DagScheduler, SchedulerConfig
from pyconductor.executor.graph import DagSummary, DependencyGraph

__all__ = [
    "CACHE_MISS",
    "ResultCache",
    "CancellationToken",
    "DagScheduler",
    "SchedulerConfig",
    "DagSummary",
    "DependencyGraph",
]
