"""
Transform result models.

Structured representation of transform, integrity and duration outcomes.
Results are machine-readable and human-readable.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TransformResult(BaseModel):
    """
    Result of a single transform run.

    This model is the single source of truth for transform outcome.
    The pool monitor hands it to the orchestrator unchanged.
    """

    model_config = ConfigDict(extra="forbid")

    success: bool
    """True if the engine exited cleanly and produced output."""

    input_path: str
    """Local file that was transformed."""

    output_path: Optional[str] = None
    """Transformed file (if transform succeeded)."""

    input_size: int = 0
    """Input size in bytes."""

    output_size: int = 0
    """Output size in bytes (0 when no output was produced)."""

    exit_code: Optional[int] = None
    """Process exit code, when the engine is a subprocess."""

    error: Optional[str] = None
    """Human-readable failure reason (required if success is False)."""

    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def ratio(self) -> Optional[float]:
        """Output size relative to input size."""
        if not self.success or self.input_size <= 0:
            return None
        return self.output_size / self.input_size

    def duration_seconds(self) -> Optional[float]:
        """Calculate transform duration in seconds."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def summary(self) -> str:
        """Human-readable summary of the transform result."""
        duration = self.duration_seconds()
        duration_str = f" ({duration:.1f}s)" if duration is not None else ""

        if self.success:
            ratio = self.ratio
            ratio_str = f", ratio {ratio:.3f}" if ratio is not None else ""
            return f"SUCCESS{duration_str}: {self.input_path} → {self.output_path}{ratio_str}"
        return f"FAILED{duration_str}: {self.input_path} - {self.error}"


class IntegrityResult(BaseModel):
    """Result of decoding a file end to end."""

    model_config = ConfigDict(extra="forbid")

    valid: bool
    path: str
    error: Optional[str] = None


class DurationComparison(BaseModel):
    """Result of comparing the playback duration of two files."""

    model_config = ConfigDict(extra="forbid")

    within_tolerance: bool
    delta: Optional[float] = None
    duration_a: Optional[float] = None
    duration_b: Optional[float] = None
    tolerance: float = 0.0
    error: Optional[str] = None
