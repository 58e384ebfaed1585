"""
Concurrency-bounded job pool with hang detection.

Transform units run as independent workers (ffmpeg subprocesses, or
threads for in-process engines). The monitor observes them by polling
because the transform tool exposes no completion event.

Each monitoring pass:
  a. Hang detection: jobs running longer than timeout + grace are killed
     and reported to on_failed as a timeout.
  b. Completion detection: finished jobs are handed to on_finished.

Terminal effects (on_finished and on_failed) run on a continuation
executor, so a long verify or publish for one item never stalls hang
detection for the others. A job keeps its slot until its effect returned.
  c. Compaction: jobs whose terminal effect was applied are dropped.

Design rules:
- Tracked jobs (including applied-but-not-yet-compacted ones) never exceed
  max_concurrent
- At most one tracked job per item
- Terminal effects are claimed with Job.try_consume(), so passes running
  concurrently (monitor thread + a waiting submitter) apply each one once
- Callbacks run outside the registry lock, never on the polling thread
"""

import logging
import os
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, Dict, Optional, Tuple, Type

from ..execution.base import TransformEngine, TransformUnit
from .errors import JobAlreadyActiveError, JobSpawnError, PoolClosedError
from .models import FailedCallback, FinishedCallback, Job, JobFailure, JobFailureKind

logger = logging.getLogger(__name__)


MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 8

DEFAULT_GRACE_SECONDS = 300.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.5


def clamp_concurrency(value: int) -> int:
    """Clamp a requested concurrency bound to [1, 8]."""
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(value)))


def default_max_concurrent() -> int:
    """Available CPUs minus one, clamped to [1, 8]."""
    return clamp_concurrency((os.cpu_count() or 2) - 1)


class JobPoolMonitor:
    """
    Tracks a bounded set of running transform jobs.

    The orchestrator submits work; this monitor owns every Job record
    until its terminal effect has been applied exactly once.
    """

    def __init__(
        self,
        engine: TransformEngine,
        max_concurrent: Optional[int] = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        executor: Optional[Executor] = None,
        fatal_errors: Tuple[Type[Exception], ...] = (),
    ):
        """
        Initialize the pool monitor.

        Args:
            engine: Transform engine used to launch units
            max_concurrent: Concurrency bound (defaults to CPUs - 1), clamped to [1, 8]
            grace_seconds: Extra time past a job's timeout before it is killed
            poll_interval: Seconds between monitoring passes
            clock: Monotonic clock, injectable for tests
            sleep: Sleep function used while waiting for a free slot
            executor: Runs terminal effects; defaults to a thread pool sized
                to max_concurrent so an effect never queues behind another
            fatal_errors: Exception types a continuation may raise that must
                abort the run instead of failing the item (see raise_if_failed)
        """
        self.engine = engine
        self.max_concurrent = clamp_concurrency(
            max_concurrent if max_concurrent is not None else default_max_concurrent()
        )
        self.grace_seconds = grace_seconds
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self.fatal_errors = tuple(fatal_errors)

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.max_concurrent,
            thread_name_prefix="job_continuation",
        )
        self._error: Optional[Exception] = None

        # item_id -> Job
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._closed = False

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def active_count(self) -> int:
        """Number of tracked jobs, including ones awaiting compaction."""
        with self._lock:
            return len(self._jobs)

    def is_tracking(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._jobs

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(
        self,
        item_id: str,
        unit: TransformUnit,
        on_finished: FinishedCallback,
        on_failed: FailedCallback,
    ) -> Job:
        """
        Start a transform for an item once a slot is free.

        While the pool is full this call runs monitoring passes and
        sleeps poll_interval between them. Hang detection guarantees a
        slot eventually frees up.

        Args:
            item_id: Media item the job belongs to
            unit: Transform work
            on_finished: Continuation for a finished transform
            on_failed: Continuation for a timed-out or broken job

        Returns:
            The tracked Job

        Raises:
            JobAlreadyActiveError: If the item already has a tracked job
            JobSpawnError: If the engine could not start the unit
            PoolClosedError: If the monitor was closed
        """
        while True:
            with self._lock:
                if self._closed:
                    raise PoolClosedError("Job pool is closed")
                if item_id in self._jobs:
                    raise JobAlreadyActiveError(item_id)

                if len(self._jobs) < self.max_concurrent:
                    try:
                        handle = self.engine.start_transform(unit)
                    except OSError as e:
                        raise JobSpawnError(item_id, str(e)) from e

                    job = Job(
                        item_id=item_id,
                        unit=unit,
                        handle=handle,
                        started_at=self._clock(),
                        on_finished=on_finished,
                        on_failed=on_failed,
                    )
                    self._jobs[item_id] = job
                    logger.info(
                        f"[Pool] Started job for {item_id} "
                        f"(pid {handle.pid}, {len(self._jobs)}/{self.max_concurrent} active)"
                    )
                    return job

            logger.debug(f"[Pool] At capacity ({self.max_concurrent}), waiting to submit {item_id}")
            self.poll_once()
            self._sleep(self.poll_interval)

    # =========================================================================
    # Monitoring
    # =========================================================================

    def poll_once(self) -> None:
        """
        Run one monitoring pass: hang detection, completion, compaction.

        Hung jobs are killed inside the pass. Terminal effects (the
        item continuations) run on the continuation executor, so a slow
        verify or publish never delays the next pass.
        """
        now = self._clock()
        with self._lock:
            jobs = list(self._jobs.values())

        for job in jobs:
            if job.consumed:
                continue

            elapsed = job.elapsed(now)
            if elapsed > job.timeout_seconds + self.grace_seconds:
                if job.try_consume():
                    self._kill_hung(job, elapsed)
                    self._dispatch(job, self._apply_timeout, job, elapsed)
                continue

            if job.handle.done() and job.try_consume():
                self._dispatch(job, self._apply_completion, job)

        self._compact()

    def _dispatch(self, job: Job, effect: Callable[..., None], *args) -> None:
        """Run a claimed job's terminal effect off the polling thread."""
        try:
            self._executor.submit(self._run_effect, job, effect, *args)
        except RuntimeError as e:
            # Executor shut down by close(); the item is recovered next run
            logger.warning(f"[Pool] Dropping terminal effect for {job.item_id}: {e}")
            job.mark_applied()

    def _run_effect(self, job: Job, effect: Callable[..., None], *args) -> None:
        try:
            effect(*args)
        except Exception as e:
            logger.exception(f"[Pool] Terminal effect for {job.item_id} failed: {e}")
            self._record_error(e)
        finally:
            job.mark_applied()

    def _kill_hung(self, job: Job, elapsed: float) -> None:
        logger.warning(
            f"[Pool] Job for {job.item_id} hung ({elapsed:.0f}s > "
            f"{job.timeout_seconds:.0f}s + {self.grace_seconds:.0f}s grace), killing"
        )
        try:
            job.handle.terminate()
        except Exception as e:
            logger.exception(f"[Pool] Terminating job for {job.item_id} failed: {e}")

    def _apply_timeout(self, job: Job, elapsed: float) -> None:
        failure = JobFailure(
            kind=JobFailureKind.TIMEOUT,
            message=(
                f"Transform timed out after {elapsed:.0f}s "
                f"(timeout {job.timeout_seconds:.0f}s + grace {self.grace_seconds:.0f}s)"
            ),
            elapsed_seconds=elapsed,
        )
        self._invoke_failed(job, failure)

    def _apply_completion(self, job: Job) -> None:
        elapsed = job.elapsed(self._clock())
        try:
            result = job.handle.result()
        except Exception as e:
            logger.exception(f"[Pool] Reading result for {job.item_id} failed: {e}")
            self._invoke_failed(job, JobFailure(
                kind=JobFailureKind.ERROR,
                message=f"Could not read transform result: {e}",
                elapsed_seconds=elapsed,
            ))
            return

        logger.info(f"[Pool] Job for {job.item_id} finished: {result.summary()}")
        try:
            job.on_finished(job.item_id, result)
        except self.fatal_errors:
            raise
        except Exception as e:
            logger.exception(f"[Pool] Continuation for {job.item_id} raised: {e}")
            self._invoke_failed(job, JobFailure(
                kind=JobFailureKind.ERROR,
                message=f"{type(e).__name__}: {e}",
                elapsed_seconds=elapsed,
            ))

    def _invoke_failed(self, job: Job, failure: JobFailure) -> None:
        try:
            job.on_failed(job.item_id, failure)
        except self.fatal_errors:
            raise
        except Exception as e:
            logger.exception(f"[Pool] Failure handler for {job.item_id} raised: {e}")

    def _record_error(self, error: Exception) -> None:
        with self._lock:
            if self._error is None:
                self._error = error

    def raise_if_failed(self) -> None:
        """
        Re-raise the first fatal error a terminal effect raised.

        Raises:
            Exception: The recorded error, if any
        """
        with self._lock:
            error = self._error
        if error is not None:
            raise error

    def _compact(self) -> None:
        with self._lock:
            for item_id, job in list(self._jobs.items()):
                if job.try_remove():
                    del self._jobs[item_id]
                    logger.debug(f"[Pool] Removed job for {item_id} ({len(self._jobs)} active)")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the background monitor thread. Safe to call multiple times."""
        if self._thread is not None and self._thread.is_alive():
            return

        with self._lock:
            self._error = None
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            daemon=True,
            name="JobPoolMonitor",
        )
        self._thread.start()
        logger.info(
            f"[Pool] Monitor started (max {self.max_concurrent} concurrent, "
            f"poll {self.poll_interval}s, grace {self.grace_seconds:.0f}s)"
        )

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.exception(f"[Pool] Monitoring pass failed: {e}")
            self._stop_event.wait(self.poll_interval)

    def stop(self) -> None:
        """Stop the background monitor thread. Tracked jobs keep running."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=max(5.0, self.poll_interval * 4))
            self._thread = None

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every tracked job has been applied and removed.

        Args:
            timeout: Seconds to wait at most; None waits for ever (hang
                detection bounds the wait in practice)

        Returns:
            True if the pool is empty

        Raises:
            Exception: A fatal error raised by a terminal effect
        """
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            self.poll_once()
            self.raise_if_failed()
            if self.active_count == 0:
                return True
            if deadline is not None and self._clock() >= deadline:
                return False
            self._sleep(self.poll_interval)

    def close(self) -> None:
        """
        Refuse new submissions, stop monitoring and kill running jobs.

        Killed jobs get no terminal effect: their items stay in an in-flight
        status and are recovered as interrupted on the next run.
        """
        with self._lock:
            self._closed = True
            jobs = list(self._jobs.values())

        self.stop()
        for job in jobs:
            if job.try_consume():
                logger.warning(f"[Pool] Abandoning job for {job.item_id}")
                try:
                    job.handle.terminate()
                except Exception as e:
                    logger.exception(f"[Pool] Terminating job for {job.item_id} failed: {e}")

        if self._owns_executor:
            self._executor.shutdown(wait=False)
