"""
Transform engine abstraction layer.

Design rules:
- start_transform() never blocks: it returns a pollable TransformHandle
- Completion is observed by polling handle.done(), not by callbacks
- handle.terminate() is unconditional: a hung transform is assumed
  non-cooperative, so no graceful shutdown is attempted
- Engines are stateless between calls; all context travels in TransformUnit
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Tuple

from .results import DurationComparison, IntegrityResult, TransformResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransformParams:
    """
    Encoder parameters for a transform.

    video_codec is a key of the engine's codec map, not a raw encoder name.
    """

    video_codec: str = "hevc"
    crf: int = 28
    preset: str = "medium"
    audio_codec: str = "copy"
    extra_args: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TransformUnit:
    """One unit of transform work submitted to the job pool."""

    input_path: str
    output_path: str
    params: TransformParams = field(default_factory=TransformParams)
    timeout_seconds: float = 4 * 60 * 60


class TransformHandle(ABC):
    """
    Handle to a running transform.

    Owned by the job pool monitor for the lifetime of a job.
    """

    @property
    def pid(self) -> Optional[int]:
        """OS process id, when the transform runs in a subprocess."""
        return None

    @abstractmethod
    def done(self) -> bool:
        """True once the transform finished (naturally or terminated)."""
        pass

    @abstractmethod
    def result(self) -> TransformResult:
        """
        Outcome of a finished transform.

        Only valid once done() is True.
        """
        pass

    @abstractmethod
    def terminate(self) -> None:
        """Forcibly stop the transform. Safe to call on a finished handle."""
        pass


class CallableTransformHandle(TransformHandle):
    """
    Runs an in-process transform function on a daemon thread.

    Python threads cannot be killed, so terminate() sets the cancel event,
    marks the handle finished and abandons the thread. The function's
    eventual result is discarded.
    """

    def __init__(
        self,
        unit: TransformUnit,
        func: Callable[[TransformUnit, threading.Event], TransformResult],
        name: Optional[str] = None,
    ):
        self.unit = unit
        self.cancel_event = threading.Event()
        self._func = func
        self._result: Optional[TransformResult] = None
        self._terminated = False
        self._lock = threading.Lock()
        self._started_at = datetime.now()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=name or f"Transform-{Path(unit.input_path).name}",
        )
        self._thread.start()

    def _run(self) -> None:
        try:
            result = self._func(self.unit, self.cancel_event)
        except Exception as e:
            logger.exception(f"[Transform] In-process transform raised: {e}")
            result = TransformResult(
                success=False,
                input_path=self.unit.input_path,
                error=f"{type(e).__name__}: {e}",
                started_at=self._started_at,
                completed_at=datetime.now(),
            )
        with self._lock:
            if not self._terminated:
                self._result = result

    def done(self) -> bool:
        with self._lock:
            return self._terminated or self._result is not None

    def result(self) -> TransformResult:
        with self._lock:
            if self._terminated:
                return TransformResult(
                    success=False,
                    input_path=self.unit.input_path,
                    error="Transform was terminated",
                    started_at=self._started_at,
                    completed_at=datetime.now(),
                )
            if self._result is None:
                raise RuntimeError("Transform has not finished")
            return self._result

    def terminate(self) -> None:
        with self._lock:
            if self._result is None:
                self._terminated = True
        self.cancel_event.set()


class TransformEngine(ABC):
    """
    Abstract base class for transform engines.

    All engines must implement:
    - start_transform: Launch a transform, return a pollable handle
    - check_integrity: Decode a file end to end
    - compare_duration: Compare playback durations of two files
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable engine name for logs."""
        pass

    @property
    @abstractmethod
    def available(self) -> bool:
        """
        Check if engine is available on this system.

        Returns:
            True if engine can execute, False if not installed/configured.
        """
        pass

    @abstractmethod
    def start_transform(self, unit: TransformUnit) -> TransformHandle:
        """
        Launch a transform without waiting for it.

        Raises:
            OSError: If the execution environment cannot spawn the unit
        """
        pass

    def validate_params(self, params: TransformParams) -> None:
        """
        Check the engine can honour params before any unit is started.

        Raises:
            ValueError: If a parameter is not supported
        """
        pass

    @abstractmethod
    def check_integrity(self, path: str) -> IntegrityResult:
        pass

    @abstractmethod
    def compare_duration(self, path_a: str, path_b: str, tolerance: float) -> DurationComparison:
        pass

    def transform(
        self,
        input_path: str,
        output_path: str,
        params: Optional[TransformParams] = None,
        timeout: float = 4 * 60 * 60,
        poll_interval: float = 0.5,
    ) -> TransformResult:
        """
        Run a transform to completion (blocking).

        Used for one-off transforms outside the job pool. A transform
        running past its timeout is terminated and reported as failed.
        """
        unit = TransformUnit(
            input_path=input_path,
            output_path=output_path,
            params=params or TransformParams(),
            timeout_seconds=timeout,
        )
        handle = self.start_transform(unit)
        deadline = time.monotonic() + timeout

        while not handle.done():
            if time.monotonic() > deadline:
                handle.terminate()
                return TransformResult(
                    success=False,
                    input_path=input_path,
                    error=f"Transform timed out after {timeout:.0f}s",
                    completed_at=datetime.now(),
                )
            time.sleep(poll_interval)

        return handle.result()
