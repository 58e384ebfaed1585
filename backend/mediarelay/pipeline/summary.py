"""
Run counters and the run-end summary.

RunCounters is written from the orchestrator thread and from pool
continuations on the monitor thread, so every increment takes a lock.
"""

import threading
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class RunPhase(str, Enum):
    """Which parts of the pipeline a run executes."""

    DISCOVER = "discover"
    PROCESS = "process"
    ALL = "all"

    @property
    def discovers(self) -> bool:
        return self in (RunPhase.DISCOVER, RunPhase.ALL)

    @property
    def processes(self) -> bool:
        return self in (RunPhase.PROCESS, RunPhase.ALL)


class RunCounters:
    """Process-lifetime aggregate counts with atomic increments."""

    FIELDS = ("discovered", "submitted", "processed", "failed", "skipped", "recovered")

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {name: 0 for name in self.FIELDS}

    def increment(self, name: str, amount: int = 1) -> int:
        if name not in self._counts:
            raise KeyError(f"Unknown counter: {name}")
        with self._lock:
            self._counts[name] += amount
            return self._counts[name]

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)


class RunSummary(BaseModel):
    """
    Outcome of one pipeline run.

    processed counts items that reached COMPLETED in this run; failed
    counts items moved to FAILED in this run.
    """

    model_config = ConfigDict(extra="forbid")

    phase: RunPhase
    dry_run: bool = False
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    discovered: int = 0
    submitted: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    recovered: int = 0

    aborted: bool = False
    abort_reason: Optional[str] = None

    @classmethod
    def from_counters(
        cls,
        counters: RunCounters,
        phase: RunPhase,
        dry_run: bool,
        started_at: datetime,
        abort_reason: Optional[str] = None,
    ) -> "RunSummary":
        return cls(
            phase=phase,
            dry_run=dry_run,
            started_at=started_at,
            completed_at=datetime.now(),
            aborted=abort_reason is not None,
            abort_reason=abort_reason,
            **counters.snapshot(),
        )

    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def summary(self) -> str:
        """Human-readable one-line summary."""
        prefix = "DRY RUN " if self.dry_run else ""
        if self.aborted:
            return f"{prefix}ABORTED ({self.phase.value}): {self.abort_reason}"

        duration = self.duration_seconds()
        duration_str = f" in {duration:.1f}s" if duration is not None else ""
        return (
            f"{prefix}{self.phase.value.upper()}{duration_str}: "
            f"{self.discovered} discovered, {self.processed} processed, "
            f"{self.failed} failed, {self.skipped} skipped, {self.recovered} recovered"
        )
