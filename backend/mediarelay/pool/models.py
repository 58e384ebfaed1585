"""
Job records tracked by the pool monitor.

A Job lives from submission until its terminal effect (continuation on
success, failure marking on timeout/error) has been applied. Both flags
are flipped with compare-and-set under the job's own lock, so exactly one
monitor pass wins even when several passes observe the same job.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from ..execution.base import TransformHandle, TransformUnit
from ..execution.results import TransformResult


class JobFailureKind(str, Enum):
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass(frozen=True)
class JobFailure:
    """A job that ended without a usable transform result."""

    kind: JobFailureKind
    message: str
    elapsed_seconds: float


FinishedCallback = Callable[[str, TransformResult], None]
FailedCallback = Callable[[str, JobFailure], None]


@dataclass
class Job:
    """One tracked transform unit for exactly one media item."""

    item_id: str
    unit: TransformUnit
    handle: TransformHandle
    started_at: float
    on_finished: FinishedCallback
    on_failed: FailedCallback
    consumed: bool = False
    applied: bool = False
    removed: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def timeout_seconds(self) -> float:
        return self.unit.timeout_seconds

    def elapsed(self, now: float) -> float:
        return now - self.started_at

    def try_consume(self) -> bool:
        """
        Claim the right to apply this job's terminal effect.

        Returns:
            True for exactly one caller over the job's lifetime
        """
        with self._lock:
            if self.consumed:
                return False
            self.consumed = True
            return True

    def mark_applied(self) -> None:
        with self._lock:
            self.applied = True

    def try_remove(self) -> bool:
        """
        Claim removal from tracking. Only applied jobs can be removed.

        Returns:
            True for exactly one caller, once the terminal effect is applied
        """
        with self._lock:
            if not self.applied or self.removed:
                return False
            self.removed = True
            return True

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid
