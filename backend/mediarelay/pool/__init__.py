"""
Concurrency-bounded transform job pool.

Tracks running transform units, detects completion and hangs, and
applies each job's terminal effect exactly once.
"""

from .errors import JobAlreadyActiveError, JobSpawnError, PoolClosedError, PoolError
from .models import Job, JobFailure, JobFailureKind
from .monitor import JobPoolMonitor, clamp_concurrency, default_max_concurrent

__all__ = [
    "Job",
    "JobAlreadyActiveError",
    "JobFailure",
    "JobFailureKind",
    "JobPoolMonitor",
    "JobSpawnError",
    "PoolClosedError",
    "PoolError",
    "clamp_concurrency",
    "default_max_concurrent",
]
