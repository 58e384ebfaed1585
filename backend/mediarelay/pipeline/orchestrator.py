"""
Pipeline orchestrator.

Drives each eligible media item through:

    retrieve → archive (digest-verified) → submit transform
        ... pool monitor ...
    → verify output → publish → complete

Retrieval and archiving run serially on the calling thread. Transforms run
concurrently in the job pool; everything after the transform runs in the
pool monitor's continuation for that item.

Side-effect ordering:
- The local original is only deleted after completion, and completion is
  only reachable after the archive copy's digest matched the source
- The remote original is only replaced after the transform succeeded and
  (when enabled) passed integrity and duration checks
- Failures keep every local file for inspection; only an unverified
  archive copy is ever deleted on failure

Item-level failures become FAILED transitions and never abort the run.
Fatal errors (preflight, catalog, engine availability) propagate; a
catalog error inside a continuation is re-raised by the pool monitor on
the orchestrator thread.
"""

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ..catalog.errors import CatalogError
from ..catalog.models import IN_FLIGHT_STATUSES, FailureKind, ItemStatus, MediaItem
from ..catalog.state import StatusStateMachine
from ..catalog.store import CatalogStore
from ..config.settings import PipelineSettings
from ..execution.base import TransformEngine, TransformUnit
from ..execution.errors import ExecutionError
from ..execution.results import TransformResult
from ..integrity.hashing import ArchiveError, HashVerifier
from ..notify.sinks import NotificationSink, NullNotificationSink, safe_notify
from ..pool.errors import JobSpawnError
from ..pool.models import JobFailure, JobFailureKind
from ..pool.monitor import JobPoolMonitor
from ..transfer.base import TransferClient
from ..transfer.errors import TransferError
from .discovery import Discovery
from .errors import PipelineError
from .preflight import DiskUsage, Preflight
from .summary import RunCounters, RunPhase, RunSummary

logger = logging.getLogger(__name__)

# Failure kind for an unexpected error while an item is in a given status
STAGE_FAILURE_KINDS = {
    ItemStatus.COMPRESSING: FailureKind.TRANSFORM,
    ItemStatus.VERIFYING: FailureKind.INTEGRITY,
    ItemStatus.UPLOADING: FailureKind.TRANSIENT_IO,
}


def transformed_output_path(work_dir: Path, filename: str) -> Path:
    """Output path for an item's transform, keeping the original container."""
    source = Path(filename)
    return work_dir / f"{source.stem}.transformed{source.suffix}"


class PipelineOrchestrator:
    """
    Runs discovery and processing phases against one catalog.

    Owns the run counters. Shares the catalog with the pool monitor's
    continuations; each item has exactly one writer at any time.
    """

    def __init__(
        self,
        store: CatalogStore,
        transfer: TransferClient,
        engine: TransformEngine,
        settings: PipelineSettings,
        monitor: Optional[JobPoolMonitor] = None,
        verifier: Optional[HashVerifier] = None,
        notifier: Optional[NotificationSink] = None,
        disk_usage: Optional[DiskUsage] = None,
    ):
        self.store = store
        self.transfer = transfer
        self.engine = engine
        self.settings = settings
        self.state = StatusStateMachine(store)
        self.verifier = verifier or HashVerifier()
        self.notifier = notifier or NullNotificationSink()
        self.monitor = monitor or JobPoolMonitor(
            engine,
            max_concurrent=settings.max_concurrent,
            grace_seconds=settings.grace_seconds,
            poll_interval=settings.poll_interval_seconds,
            fatal_errors=(CatalogError,),
        )

        preflight_kwargs = {"disk_usage": disk_usage} if disk_usage is not None else {}
        self.preflight = Preflight(store, engine, settings, **preflight_kwargs)
        self.discovery = Discovery(store, transfer, settings)

        self.counters = RunCounters()
        self.last_summary: Optional[RunSummary] = None

    # =========================================================================
    # Run
    # =========================================================================

    def run(self, phase: RunPhase = RunPhase.ALL, dry_run: bool = False) -> RunSummary:
        """
        Execute one run.

        Args:
            phase: discover, process, or both
            dry_run: Log what would happen; perform no destructive action

        Returns:
            RunSummary with this run's counts

        Raises:
            PipelineError: Preflight or discovery failure (run aborted)
            ExecutionError: Transform engine unavailable (run aborted)
            CatalogError: Catalog failure, including one raised inside a
                transform continuation (run aborted)
        """
        self.counters = RunCounters()
        started_at = datetime.now()
        logger.info(
            f"[Orchestrator] Starting {'dry ' if dry_run else ''}run, phase={phase.value}, "
            f"max_concurrent={self.monitor.max_concurrent}"
        )

        try:
            self.preflight.check_catalog()
            if phase.processes:
                self.preflight.check_processing(dry_run=dry_run)

            new_items = self.discovery.scan() if phase.discovers else []

            if phase.processes:
                interrupted = self.store.query_statuses(IN_FLIGHT_STATUSES)
                planned = self._planned_items(interrupted)
                # Space for items about to be catalogued is checked before any write
                self.preflight.check_space(planned + new_items)

            if phase.discovers:
                discovered = new_items if dry_run else self.discovery.catalog(new_items)
                self.counters.increment("discovered", len(discovered))

            if phase.processes:
                if dry_run:
                    self._report_dry_run(planned, interrupted)
                else:
                    self._run_processing()

        except (PipelineError, ExecutionError, CatalogError) as e:
            logger.error(f"[Orchestrator] Run aborted: {e}")
            summary = RunSummary.from_counters(
                self.counters, phase, dry_run, started_at, abort_reason=str(e)
            )
            self._finish(summary)
            raise

        summary = RunSummary.from_counters(self.counters, phase, dry_run, started_at)
        self._finish(summary)
        return summary

    def _finish(self, summary: RunSummary) -> None:
        self.last_summary = summary
        logger.info(f"[Orchestrator] {summary.summary()}")
        subject = "mediarelay run aborted" if summary.aborted else "mediarelay run finished"
        safe_notify(self.notifier, subject, summary.summary())

    def _planned_items(self, interrupted: List[MediaItem]) -> List[MediaItem]:
        """Eligible items plus interrupted ones that recovery will make eligible."""
        max_retries = self.settings.max_retries
        return self.store.query_eligible(max_retries) + [
            item for item in interrupted if item.retry_count + 1 < max_retries
        ]

    def _report_dry_run(self, planned: List[MediaItem], interrupted: List[MediaItem]) -> None:
        for item in interrupted:
            logger.info(f"[Orchestrator] Would recover interrupted item {item.id} ({item.status.value})")
        for item in planned:
            logger.info(f"[Orchestrator] Would process {item.id} ({item.source_locator})")
            self.counters.increment("skipped")

    def _run_processing(self) -> None:
        self.recover_interrupted()
        eligible = self.store.query_eligible(self.settings.max_retries)
        logger.info(f"[Orchestrator] {len(eligible)} eligible item(s)")

        self.monitor.start()
        try:
            for item in eligible:
                self.process_item(item)
                self.monitor.raise_if_failed()
            self.monitor.drain()
        except BaseException:
            # Running jobs are killed; their items are recovered on the next run
            self.monitor.close()
            raise
        finally:
            self.monitor.stop()

    # =========================================================================
    # Recovery
    # =========================================================================

    def recover_interrupted(self) -> int:
        """
        Fail items a previous run left in flight.

        Returns:
            Number of items recovered
        """
        recovered = 0
        for item in self.store.query_statuses(IN_FLIGHT_STATUSES):
            if self.monitor.is_tracking(item.id):
                continue
            if self.state.fail(
                item.id,
                FailureKind.INTERRUPTED,
                f"Previous run stopped while item was {item.status.value}",
            ):
                recovered += 1
                self.counters.increment("recovered")
        if recovered:
            logger.warning(f"[Orchestrator] Recovered {recovered} interrupted item(s)")
        return recovered

    # =========================================================================
    # Steps 1-3: retrieve, archive, submit
    # =========================================================================

    def process_item(self, item: MediaItem) -> bool:
        """
        Retrieve and archive one item, then submit its transform.

        Returns:
            True if a transform job was submitted
        """
        if self.monitor.is_tracking(item.id):
            logger.warning(f"[Orchestrator] {item.id} already has an active job, skipping")
            return False

        if item.status == ItemStatus.FAILED:
            if not self.state.reset_for_retry(item.id, self.settings.max_retries):
                return False
        if not self.state.start_processing(item):
            return False

        try:
            return self._retrieve_archive_submit(item)
        except OSError as e:
            logger.exception(f"[Orchestrator] I/O error processing {item.id}: {e}")
            self._fail(item.id, FailureKind.TRANSIENT_IO, f"{type(e).__name__}: {e}")
            return False

    def _retrieve_archive_submit(self, item: MediaItem) -> bool:
        work_dir = self.settings.item_work_dir(item.id)
        work_dir.mkdir(parents=True, exist_ok=True)
        local_source = work_dir / item.filename

        # 1. Retrieve
        logger.info(f"[Orchestrator] Retrieving {item.source_locator} for {item.id}")
        try:
            retrieved = self.transfer.retrieve(item.source_locator, str(local_source))
        except TransferError as e:
            logger.error(f"[Orchestrator] Retrieve raised for {item.id}: {e}")
            retrieved = False
        if not retrieved or not local_source.is_file():
            self._fail(item.id, FailureKind.TRANSIENT_IO, f"Retrieval of {item.source_locator} failed")
            return False

        # 2. Archive with verification
        if not self.state.advance(item.id, ItemStatus.ARCHIVING):
            return False

        archive_path = self.settings.item_archive_dir(item.id) / item.filename
        try:
            verification = self.verifier.archive_with_verification(local_source, archive_path)
        except ArchiveError as e:
            self._fail(item.id, FailureKind.TRANSIENT_IO, str(e))
            return False

        if not verification.equal:
            self._fail(
                item.id,
                FailureKind.INTEGRITY,
                f"Archive digest mismatch ({verification.digest_a} != {verification.digest_b}); "
                f"unverified archive copy removed",
            )
            return False

        if not self.state.advance(
            item.id,
            ItemStatus.COMPRESSING,
            {
                "original_size": local_source.stat().st_size,
                "source_digest": verification.digest_a,
                "archive_digest": verification.digest_b,
                "archive_path": str(archive_path),
            },
        ):
            return False

        # 3. Submit transform
        unit = TransformUnit(
            input_path=str(local_source),
            output_path=str(transformed_output_path(work_dir, item.filename)),
            params=self.settings.transform,
            timeout_seconds=self.settings.transform_timeout_seconds,
        )
        try:
            self.monitor.submit(item.id, unit, self._on_transform_finished, self._on_transform_failed)
        except JobSpawnError as e:
            self._fail(item.id, FailureKind.TRANSIENT_IO, str(e))
            return False

        self.counters.increment("submitted")
        return True

    # =========================================================================
    # Steps 4-6: pool continuations
    # =========================================================================

    def _on_transform_finished(self, item_id: str, result: TransformResult) -> None:
        """Continuation for a finished transform: verify, publish, complete."""
        if not result.success:
            self._fail(item_id, FailureKind.TRANSFORM, result.error or "Transform failed")
            return

        item = self.store.get(item_id)
        if item is None:
            logger.error(f"[Orchestrator] Item {item_id} vanished from the catalog")
            return

        output_path = result.output_path
        ratio = result.output_size / item.original_size if item.original_size else result.ratio

        # 4. Verify
        if not self.state.advance(
            item_id,
            ItemStatus.VERIFYING,
            {"transformed_size": result.output_size, "transform_ratio": ratio},
        ):
            return

        if self.settings.verify_output:
            integrity = self.engine.check_integrity(output_path)
            if not integrity.valid:
                self._fail(item_id, FailureKind.INTEGRITY, f"Output failed integrity check: {integrity.error}")
                return

            comparison = self.engine.compare_duration(
                result.input_path,
                output_path,
                self.settings.duration_tolerance_seconds,
            )
            if not comparison.within_tolerance:
                if comparison.error:
                    reason = f"Duration check failed: {comparison.error}"
                else:
                    reason = (
                        f"Duration drift {comparison.delta:.2f}s exceeds tolerance "
                        f"{comparison.tolerance:.2f}s"
                    )
                self._fail(item_id, FailureKind.INTEGRITY, reason)
                return

        # 5. Publish
        if not self.state.advance(item_id, ItemStatus.UPLOADING):
            return

        try:
            published = self.transfer.publish(output_path, item.source_locator)
        except (OSError, TransferError) as e:
            logger.error(f"[Orchestrator] Publish raised for {item_id}: {e}")
            published = False
        if not published:
            self._fail(item_id, FailureKind.TRANSIENT_IO, f"Publish to {item.source_locator} failed")
            return

        if not self.state.advance(
            item_id,
            ItemStatus.COMPLETED,
            {"processing_completed_at": datetime.now()},
        ):
            return

        self.counters.increment("processed")
        self._cleanup_work_dir(item_id)

    def _on_transform_failed(self, item_id: str, failure: JobFailure) -> None:
        """Continuation for a hung or broken job."""
        item = self.store.get(item_id)
        if item is None or item.status in (ItemStatus.COMPLETED, ItemStatus.FAILED):
            logger.error(
                f"[Orchestrator] Job failure for {item_id} after terminal status: {failure.message}"
            )
            return

        if failure.kind == JobFailureKind.TIMEOUT:
            kind = FailureKind.TIMEOUT
        else:
            # A continuation that broke part way is classified by the step it reached
            kind = STAGE_FAILURE_KINDS.get(item.status, FailureKind.TRANSFORM)
        self._fail(item_id, kind, failure.message)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _fail(self, item_id: str, kind: FailureKind, message: str) -> None:
        if self.state.fail(item_id, kind, message):
            self.counters.increment("failed")

    def _cleanup_work_dir(self, item_id: str) -> None:
        work_dir = self.settings.item_work_dir(item_id)
        try:
            shutil.rmtree(work_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[Orchestrator] Could not clean up {work_dir}: {e}")
