"""
Pytest configuration and shared fakes for the mediarelay test suite.

Fakes replace the external collaborators only: the catalog store, hash
verifier, state machine and pool monitor under test are always real.
"""

import sys
import threading
from concurrent.futures import Executor, Future
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

# Add backend to Python path for test imports
backend_path = Path(__file__).parent.parent
if str(backend_path) not in sys.path:
    sys.path.insert(0, str(backend_path))

from mediarelay.catalog.errors import CatalogError
from mediarelay.catalog.models import MediaItem
from mediarelay.catalog.store import CatalogStore
from mediarelay.config.settings import PipelineSettings
from mediarelay.execution.base import TransformEngine, TransformHandle, TransformUnit
from mediarelay.execution.results import DurationComparison, IntegrityResult, TransformResult
from mediarelay.notify.sinks import NotificationSink
from mediarelay.pool.monitor import JobPoolMonitor
from mediarelay.transfer.local import LocalTransferClient

GB = 1024 ** 3


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests that move large files"
    )
    config.addinivalue_line(
        "markers", "e2e: marks tests as end-to-end (requires FFmpeg)"
    )


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """
    Monotonic clock under test control.

    sleep() advances time by tick (or by the requested seconds when tick
    is None) instead of blocking.
    """

    def __init__(self, start: float = 1000.0, tick: Optional[float] = None):
        self._now = start
        self.tick = tick
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds

    def sleep(self, seconds: float) -> None:
        self.advance(self.tick if self.tick is not None else seconds)


class InlineExecutor(Executor):
    """Runs submitted work at once on the calling thread, keeping pool tests deterministic."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class FakeHandle(TransformHandle):
    """
    Transform handle whose completion the test controls.

    With clock and runs_for set, the handle finishes on its own once the
    clock passes start + runs_for.
    """

    _next_pid = 40000

    def __init__(
        self,
        unit: TransformUnit,
        clock: Optional[FakeClock] = None,
        runs_for: Optional[float] = None,
    ):
        FakeHandle._next_pid += 1
        self._pid = FakeHandle._next_pid
        self.unit = unit
        self.clock = clock
        self.runs_for = runs_for
        self.started = clock() if clock is not None else 0.0
        self.terminated = False
        self.terminated_at: Optional[float] = None
        self.result_reads = 0
        self._result: Optional[TransformResult] = None

    @property
    def pid(self) -> Optional[int]:
        return self._pid

    def finish(self, success: bool = True, output_size: int = 0, error: Optional[str] = None) -> None:
        self._result = TransformResult(
            success=success,
            input_path=self.unit.input_path,
            output_path=self.unit.output_path if success else None,
            input_size=_size_or_zero(self.unit.input_path),
            output_size=output_size,
            exit_code=0 if success else 1,
            error=error,
            completed_at=datetime.now(),
        )

    def done(self) -> bool:
        if self.terminated or self._result is not None:
            return True
        if self.clock is not None and self.runs_for is not None:
            if self.clock() - self.started >= self.runs_for:
                self.finish(success=True, output_size=1)
                return True
        return False

    def result(self) -> TransformResult:
        self.result_reads += 1
        if self.terminated:
            return TransformResult(
                success=False,
                input_path=self.unit.input_path,
                error="Transform was terminated",
                completed_at=datetime.now(),
            )
        assert self._result is not None, "result() read before the handle finished"
        return self._result

    def terminate(self) -> None:
        self.terminated = True
        if self.clock is not None:
            self.terminated_at = self.clock()


def _size_or_zero(path: str) -> int:
    try:
        return Path(path).stat().st_size
    except OSError:
        return 0


class FakeEngine(TransformEngine):
    """
    Transform engine with scripted behavior.

    behavior:
    - "succeed": writes output (half the input size) and finishes at once
    - "fail": finishes at once with an encoder error
    - "manual": stays running until the test calls handle.finish()
    - "hang": runs for runs_for seconds of the fake clock
    """

    def __init__(
        self,
        behavior: str = "succeed",
        clock: Optional[FakeClock] = None,
        runs_for: Optional[float] = None,
        integrity_valid: bool = True,
        duration_delta: float = 0.0,
        available: bool = True,
        spawn_error: Optional[OSError] = None,
    ):
        self.behavior = behavior
        self.clock = clock
        self.runs_for = runs_for
        self.integrity_valid = integrity_valid
        self.duration_delta = duration_delta
        self._available = available
        self.spawn_error = spawn_error
        self.handles: Dict[str, FakeHandle] = {}
        self.started: List[TransformUnit] = []
        self.integrity_checks: List[str] = []
        self.duration_checks: List[Tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def available(self) -> bool:
        return self._available

    def start_transform(self, unit: TransformUnit) -> FakeHandle:
        if self.spawn_error is not None:
            raise self.spawn_error

        handle = FakeHandle(unit, clock=self.clock, runs_for=self.runs_for)
        self.handles[unit.input_path] = handle
        self.started.append(unit)

        if self.behavior == "succeed":
            data = Path(unit.input_path).read_bytes()
            output = data[: max(1, len(data) // 2)]
            Path(unit.output_path).write_bytes(output)
            handle.finish(success=True, output_size=len(output))
        elif self.behavior == "fail":
            handle.finish(success=False, error="ffmpeg exited with code 1: Encoder failed")
        return handle

    def handle_for(self, item_id: str) -> FakeHandle:
        for input_path, handle in self.handles.items():
            if item_id in Path(input_path).parts:
                return handle
        raise KeyError(item_id)

    def check_integrity(self, path: str) -> IntegrityResult:
        self.integrity_checks.append(path)
        if self.integrity_valid:
            return IntegrityResult(valid=True, path=path)
        return IntegrityResult(valid=False, path=path, error="Invalid NAL unit size")

    def compare_duration(self, path_a: str, path_b: str, tolerance: float) -> DurationComparison:
        self.duration_checks.append((path_a, path_b))
        return DurationComparison(
            within_tolerance=self.duration_delta <= tolerance,
            delta=self.duration_delta,
            duration_a=120.0,
            duration_b=120.0 + self.duration_delta,
            tolerance=tolerance,
        )


class RecordingNotifier(NotificationSink):
    def __init__(self):
        self.messages: List[Tuple[str, str]] = []

    def notify(self, subject: str, body: str) -> None:
        self.messages.append((subject, body))


class FailingNotifier(NotificationSink):
    def notify(self, subject: str, body: str) -> None:
        raise ConnectionError("SMTP server unreachable")


class FakeDiskUsage:
    """shutil.disk_usage replacement reporting a fixed amount of free space."""

    def __init__(self, free_bytes: int):
        self.free_bytes = free_bytes
        self.paths: List[str] = []

    def __call__(self, path: str) -> Tuple[int, int, int]:
        self.paths.append(path)
        total = max(self.free_bytes * 2, 1)
        return total, total - self.free_bytes, self.free_bytes


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store(tmp_path):
    """Fresh catalog in a temporary directory."""
    return CatalogStore(str(tmp_path / "catalog.db"))


@pytest.fixture
def remote_root(tmp_path):
    root = tmp_path / "remote"
    root.mkdir()
    return root


@pytest.fixture
def transfer(remote_root):
    return LocalTransferClient(str(remote_root))


@pytest.fixture
def settings(tmp_path, remote_root):
    """Settings pointing every directory into tmp_path."""
    return PipelineSettings(
        catalog_path=str(tmp_path / "catalog.db"),
        work_dir=str(tmp_path / "work"),
        archive_dir=str(tmp_path / "archive"),
        remote_root=str(remote_root),
        max_concurrent=2,
        transform_timeout_seconds=60.0,
        grace_seconds=30.0,
        poll_interval_seconds=0.01,
        min_free_space_bytes=0,
    )


@pytest.fixture
def clock():
    return FakeClock(tick=15.0)


def make_monitor(engine: TransformEngine, settings: PipelineSettings, clock: FakeClock) -> JobPoolMonitor:
    return JobPoolMonitor(
        engine,
        max_concurrent=settings.max_concurrent,
        grace_seconds=settings.grace_seconds,
        poll_interval=settings.poll_interval_seconds,
        clock=clock,
        sleep=clock.sleep,
        executor=InlineExecutor(),
        fatal_errors=(CatalogError,),
    )


def put_remote_file(remote_root: Path, locator: str, data: bytes) -> Path:
    path = remote_root / locator
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def catalog_item(store: CatalogStore, locator: str, size: int = 0, **fields) -> MediaItem:
    item = MediaItem(
        source_locator=locator,
        filename=Path(locator).name,
        original_size=size,
        **fields,
    )
    return store.create(item)
