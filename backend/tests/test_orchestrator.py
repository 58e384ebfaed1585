"""
Tests for the pipeline orchestrator.

Runs the real catalog, state machine, hash verifier, pool monitor and
local transfer client against temporary directories. Only the transform
engine, disk usage and notifications are faked.
"""

import hashlib
from pathlib import Path

import pytest

from mediarelay.catalog.errors import CatalogError
from mediarelay.catalog.models import FailureKind, ItemStatus
from mediarelay.execution.errors import EngineUnavailableError
from mediarelay.integrity.hashing import HashVerifier, VerificationResult
from mediarelay.pipeline.errors import InsufficientSpaceError
from mediarelay.pipeline.orchestrator import PipelineOrchestrator, transformed_output_path
from mediarelay.pipeline.summary import RunPhase
from mediarelay.transfer.local import LocalTransferClient

from conftest import (
    GB,
    FailingNotifier,
    FakeDiskUsage,
    FakeEngine,
    RecordingNotifier,
    catalog_item,
    make_monitor,
    put_remote_file,
)

SOURCE_BYTES = b"\x00\x00\x01\xb3" + bytes(range(256)) * 8


def _orchestrator(store, transfer, engine, settings, clock, free_bytes=100 * GB, notifier=None, verifier=None):
    return PipelineOrchestrator(
        store=store,
        transfer=transfer,
        engine=engine,
        settings=settings,
        monitor=make_monitor(engine, settings, clock),
        verifier=verifier,
        notifier=notifier if notifier is not None else RecordingNotifier(),
        disk_usage=FakeDiskUsage(free_bytes),
    )


class CorruptingVerifier(HashVerifier):
    """Reports every archive copy as differing from its source."""

    def verify(self, path_a, path_b):
        result = super().verify(path_a, path_b)
        return VerificationResult(equal=False, digest_a=result.digest_a, digest_b="0" * 64)


class PublishFailingTransfer(LocalTransferClient):
    def publish(self, local_path, locator):
        return False


class PublishCrashingTransfer(LocalTransferClient):
    """Raises an error the publish step does not anticipate."""

    def publish(self, local_path, locator):
        raise RuntimeError("connection pool is closed")


class CatalogOutageEngine(FakeEngine):
    """Makes catalog writes fail once output verification starts."""

    def __init__(self, store, **kwargs):
        super().__init__(**kwargs)
        self.store = store

    def check_integrity(self, path):
        def locked(*args, **kwargs):
            raise CatalogError("database is locked")

        self.store.advance = locked
        return super().check_integrity(path)


# =============================================================================
# Happy path
# =============================================================================

class TestSuccessfulRun:

    def test_item_goes_from_discovery_to_completed(self, store, transfer, remote_root, settings, clock):
        """
        GIVEN one new media file on the remote store
        WHEN a full run executes
        THEN the original is archived and verified, the transformed file
             replaces the remote original and local scratch is removed
        """
        put_remote_file(remote_root, "shows/ep1.mkv", SOURCE_BYTES)
        engine = FakeEngine(behavior="succeed")
        notifier = RecordingNotifier()
        orchestrator = _orchestrator(store, transfer, engine, settings, clock, notifier=notifier)

        summary = orchestrator.run(RunPhase.ALL)

        item = store.get_by_locator("shows/ep1.mkv")
        expected_digest = hashlib.sha256(SOURCE_BYTES).hexdigest()
        transformed_size = len(SOURCE_BYTES) // 2

        assert item.status == ItemStatus.COMPLETED
        assert item.retry_count == 0
        assert item.source_digest == expected_digest
        assert item.archive_digest == expected_digest
        assert Path(item.archive_path).read_bytes() == SOURCE_BYTES
        assert item.transformed_size == transformed_size
        assert item.transform_ratio == pytest.approx(transformed_size / len(SOURCE_BYTES))
        assert item.processing_completed_at is not None

        assert (remote_root / "shows/ep1.mkv").read_bytes() == SOURCE_BYTES[:transformed_size]
        assert not settings.item_work_dir(item.id).exists()

        assert summary.discovered == 1
        assert summary.submitted == 1
        assert summary.processed == 1
        assert summary.failed == 0
        assert not summary.aborted
        assert notifier.messages[0][0] == "mediarelay run finished"

    def test_verification_runs_by_default(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        engine = FakeEngine(behavior="succeed")

        _orchestrator(store, transfer, engine, settings, clock).run(RunPhase.ALL)

        assert len(engine.integrity_checks) == 1
        assert len(engine.duration_checks) == 1

    def test_verification_can_be_disabled(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        engine = FakeEngine(behavior="succeed", integrity_valid=False)
        settings = settings.with_overrides(verify_output=False)

        _orchestrator(store, transfer, engine, settings, clock).run(RunPhase.ALL)

        assert engine.integrity_checks == []
        assert store.get_by_locator("a.mkv").status == ItemStatus.COMPLETED

    def test_several_items_share_the_pool(self, store, transfer, remote_root, settings, clock):
        for index in range(4):
            put_remote_file(remote_root, f"season/ep{index}.mkv", SOURCE_BYTES)
        engine = FakeEngine(behavior="succeed")

        summary = _orchestrator(store, transfer, engine, settings, clock).run(RunPhase.ALL)

        counts = store.count_by_status()
        assert counts[ItemStatus.COMPLETED] == 4
        assert summary.processed == 4

    def test_notification_failure_does_not_break_run(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)

        summary = _orchestrator(
            store, transfer, FakeEngine(), settings, clock, notifier=FailingNotifier()
        ).run(RunPhase.ALL)

        assert summary.processed == 1

    @pytest.mark.slow
    def test_100mb_source_archives_and_reaches_compressing(self, store, transfer, remote_root, settings, clock):
        """
        GIVEN a 100 MB source file
        WHEN it is retrieved and archived
        THEN both digests are equal and the item advances to COMPRESSING
        """
        size = 100 * 1024 * 1024
        source = remote_root / "big" / "feature.mov"
        source.parent.mkdir()
        with open(source, "wb") as f:
            f.write(b"header")
            f.truncate(size)
        item = catalog_item(store, "big/feature.mov", size=size)
        engine = FakeEngine(behavior="manual")
        orchestrator = _orchestrator(store, transfer, engine, settings, clock)

        try:
            assert orchestrator.process_item(item)

            stored = store.get(item.id)
            assert stored.status == ItemStatus.COMPRESSING
            assert stored.source_digest == stored.archive_digest
            assert Path(stored.archive_path).stat().st_size == size
            assert orchestrator.monitor.is_tracking(item.id)
        finally:
            orchestrator.monitor.close()


# =============================================================================
# Item-level failures
# =============================================================================

class TestItemFailures:

    def test_retrieve_failure_is_transient(self, store, transfer, settings, clock):
        item = catalog_item(store, "gone/missing.mkv", size=100)
        engine = FakeEngine()

        summary = _orchestrator(store, transfer, engine, settings, clock).run(RunPhase.PROCESS)

        stored = store.get(item.id)
        assert stored.status == ItemStatus.FAILED
        assert stored.error_kind == FailureKind.TRANSIENT_IO
        assert stored.retry_count == 1
        assert engine.started == []
        assert not settings.item_archive_dir(item.id).exists()
        assert summary.failed == 1

    def test_digest_mismatch_deletes_only_the_archive_copy(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", size=len(SOURCE_BYTES))
        engine = FakeEngine()
        orchestrator = _orchestrator(
            store, transfer, engine, settings, clock, verifier=CorruptingVerifier()
        )

        orchestrator.run(RunPhase.PROCESS)

        stored = store.get(item.id)
        assert stored.status == ItemStatus.FAILED
        assert stored.error_kind == FailureKind.INTEGRITY
        assert "digest mismatch" in stored.error_message
        assert not (settings.item_archive_dir(item.id) / "a.mkv").exists()
        assert (settings.item_work_dir(item.id) / "a.mkv").read_bytes() == SOURCE_BYTES
        assert (remote_root / "a.mkv").read_bytes() == SOURCE_BYTES
        assert engine.started == []

    def test_transform_timeout(self, store, transfer, remote_root, settings, clock):
        """
        GIVEN a 1 minute timeout and a transform that would run 10 minutes
        WHEN the run drains the pool
        THEN the job is killed after timeout + grace and the item fails
             with a timeout error, keeping its local files
        """
        put_remote_file(remote_root, "slow.mkv", SOURCE_BYTES)
        item = catalog_item(store, "slow.mkv", size=len(SOURCE_BYTES))
        engine = FakeEngine(behavior="hang", clock=clock, runs_for=600.0)
        settings = settings.with_overrides(transform_timeout_seconds=60.0, grace_seconds=30.0)

        summary = _orchestrator(store, transfer, engine, settings, clock).run(RunPhase.PROCESS)

        stored = store.get(item.id)
        handle = engine.handle_for(item.id)
        assert stored.status == ItemStatus.FAILED
        assert stored.error_kind == FailureKind.TIMEOUT
        assert "timed out" in stored.error_message
        assert handle.terminated
        assert 90.0 < handle.terminated_at - handle.started < 600.0
        assert (settings.item_work_dir(item.id) / "slow.mkv").exists()
        assert Path(stored.archive_path).exists()
        assert summary.failed == 1

    def test_transform_failure(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", size=len(SOURCE_BYTES))

        _orchestrator(store, transfer, FakeEngine(behavior="fail"), settings, clock).run(RunPhase.PROCESS)

        stored = store.get(item.id)
        assert stored.status == ItemStatus.FAILED
        assert stored.error_kind == FailureKind.TRANSFORM
        assert "Encoder failed" in stored.error_message

    def test_integrity_failure_keeps_remote_original(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", size=len(SOURCE_BYTES))
        engine = FakeEngine(behavior="succeed", integrity_valid=False)

        _orchestrator(store, transfer, engine, settings, clock).run(RunPhase.PROCESS)

        stored = store.get(item.id)
        assert stored.status == ItemStatus.FAILED
        assert stored.error_kind == FailureKind.INTEGRITY
        assert stored.transformed_size == len(SOURCE_BYTES) // 2
        assert (remote_root / "a.mkv").read_bytes() == SOURCE_BYTES
        assert transformed_output_path(settings.item_work_dir(item.id), "a.mkv").exists()

    def test_unexpected_publish_error_is_classified_by_step(self, store, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", size=len(SOURCE_BYTES))
        transfer = PublishCrashingTransfer(str(remote_root))

        summary = _orchestrator(store, transfer, FakeEngine(), settings, clock).run(RunPhase.PROCESS)

        stored = store.get(item.id)
        assert stored.status == ItemStatus.FAILED
        assert stored.error_kind == FailureKind.TRANSIENT_IO
        assert "connection pool is closed" in stored.error_message
        assert summary.failed == 1
        assert not summary.aborted

    def test_duration_drift_fails_item(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", size=len(SOURCE_BYTES))
        engine = FakeEngine(behavior="succeed", duration_delta=4.5)

        _orchestrator(store, transfer, engine, settings, clock).run(RunPhase.PROCESS)

        stored = store.get(item.id)
        assert stored.status == ItemStatus.FAILED
        assert "Duration drift 4.50s" in stored.error_message

    def test_publish_failure_is_transient_and_keeps_files(self, store, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", size=len(SOURCE_BYTES))
        transfer = PublishFailingTransfer(str(remote_root))

        _orchestrator(store, transfer, FakeEngine(), settings, clock).run(RunPhase.PROCESS)

        stored = store.get(item.id)
        assert stored.status == ItemStatus.FAILED
        assert stored.error_kind == FailureKind.TRANSIENT_IO
        assert (remote_root / "a.mkv").read_bytes() == SOURCE_BYTES
        assert transformed_output_path(settings.item_work_dir(item.id), "a.mkv").exists()

    def test_spawn_failure_is_transient(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", size=len(SOURCE_BYTES))
        engine = FakeEngine(spawn_error=OSError(12, "Cannot allocate memory"))

        summary = _orchestrator(store, transfer, engine, settings, clock).run(RunPhase.PROCESS)

        stored = store.get(item.id)
        assert stored.status == ItemStatus.FAILED
        assert stored.error_kind == FailureKind.TRANSIENT_IO
        assert not summary.aborted

    def test_failed_item_retries_with_monotonic_retry_count(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", size=len(SOURCE_BYTES))

        _orchestrator(store, transfer, FakeEngine(behavior="fail"), settings, clock).run(RunPhase.PROCESS)
        assert store.get(item.id).retry_count == 1

        _orchestrator(store, transfer, FakeEngine(behavior="succeed"), settings, clock).run(RunPhase.PROCESS)

        stored = store.get(item.id)
        assert stored.status == ItemStatus.COMPLETED
        assert stored.retry_count == 1
        assert stored.error_message is None

    def test_exhausted_item_is_not_processed(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", status=ItemStatus.FAILED, retry_count=3)
        engine = FakeEngine()

        _orchestrator(store, transfer, engine, settings, clock).run(RunPhase.PROCESS)

        assert store.get(item.id).status == ItemStatus.FAILED
        assert engine.started == []


# =============================================================================
# Fatal errors
# =============================================================================

class TestRunAborts:

    def test_insufficient_space_aborts_before_any_retrieval(self, store, transfer, remote_root, settings, clock):
        """
        GIVEN eligible items needing 50 GB and 10 GB free
        WHEN a run starts
        THEN it aborts before retrieving anything and no status changes
        """
        put_remote_file(remote_root, "huge.mkv", SOURCE_BYTES)
        huge = catalog_item(store, "huge.mkv", size=10 * GB)
        interrupted = catalog_item(store, "stuck.mkv", status=ItemStatus.ARCHIVING)
        settings = settings.with_overrides(max_concurrent=1, space_multiplier=4.0)
        engine = FakeEngine()
        notifier = RecordingNotifier()
        orchestrator = _orchestrator(
            store, transfer, engine, settings, clock, free_bytes=10 * GB, notifier=notifier
        )

        with pytest.raises(InsufficientSpaceError) as exc_info:
            orchestrator.run(RunPhase.PROCESS)

        assert exc_info.value.required_bytes == 50 * GB
        assert exc_info.value.available_bytes == 10 * GB
        assert store.get(huge.id).status == ItemStatus.CATALOGED
        assert store.get(interrupted.id).status == ItemStatus.ARCHIVING
        assert not settings.item_work_dir(huge.id).exists()
        assert engine.started == []
        assert orchestrator.last_summary.aborted
        assert notifier.messages[0][0] == "mediarelay run aborted"

    def test_missing_engine_aborts_run(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", size=len(SOURCE_BYTES))

        with pytest.raises(EngineUnavailableError):
            _orchestrator(store, transfer, FakeEngine(available=False), settings, clock).run(RunPhase.PROCESS)

        assert store.get(item.id).status == ItemStatus.CATALOGED

    def test_missing_engine_aborts_full_run_before_discovery_writes(
        self, store, transfer, remote_root, settings, clock
    ):
        """
        GIVEN a new remote file and no transform engine
        WHEN a discover-and-process run starts
        THEN it aborts and the new file is not catalogued
        """
        put_remote_file(remote_root, "new.mkv", SOURCE_BYTES)
        orchestrator = _orchestrator(store, transfer, FakeEngine(available=False), settings, clock)

        with pytest.raises(EngineUnavailableError):
            orchestrator.run(RunPhase.ALL)

        assert store.list_items() == []
        assert orchestrator.last_summary.aborted
        assert orchestrator.last_summary.discovered == 0

    def test_space_check_covers_new_items_before_cataloguing(
        self, store, transfer, remote_root, settings, clock
    ):
        put_remote_file(remote_root, "new.mkv", SOURCE_BYTES)
        orchestrator = _orchestrator(store, transfer, FakeEngine(), settings, clock, free_bytes=0)

        with pytest.raises(InsufficientSpaceError) as exc_info:
            orchestrator.run(RunPhase.ALL)

        assert exc_info.value.required_bytes >= len(SOURCE_BYTES)
        assert store.list_items() == []

    def test_catalog_failure_inside_continuation_aborts_run(
        self, store, transfer, remote_root, settings, clock
    ):
        """
        GIVEN a catalog that becomes unwritable while an item is verified
        WHEN the continuation tries to advance the item
        THEN the run aborts with the catalog error and the item is left
             in flight for recovery instead of being failed
        """
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", size=len(SOURCE_BYTES))
        engine = CatalogOutageEngine(store)
        orchestrator = _orchestrator(store, transfer, engine, settings, clock)

        with pytest.raises(CatalogError):
            orchestrator.run(RunPhase.PROCESS)

        stored = store.get(item.id)
        assert stored.status == ItemStatus.VERIFYING
        assert stored.retry_count == 0
        assert orchestrator.last_summary.aborted
        assert "database is locked" in orchestrator.last_summary.abort_reason


# =============================================================================
# Dry run and recovery
# =============================================================================

class TestDryRun:

    def test_dry_run_changes_nothing(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "known.mkv", SOURCE_BYTES)
        put_remote_file(remote_root, "new.mkv", SOURCE_BYTES)
        known = catalog_item(store, "known.mkv", size=len(SOURCE_BYTES))
        engine = FakeEngine()

        summary = _orchestrator(store, transfer, engine, settings, clock).run(RunPhase.ALL, dry_run=True)

        assert summary.dry_run
        assert summary.discovered == 1
        assert summary.skipped == 1
        assert summary.processed == 0
        assert store.get_by_locator("new.mkv") is None
        assert store.get(known.id).status == ItemStatus.CATALOGED
        assert not Path(settings.work_dir).exists()
        assert not Path(settings.archive_dir).exists()
        assert engine.started == []


class TestRecovery:

    def test_interrupted_item_is_failed_then_reprocessed(self, store, transfer, remote_root, settings, clock):
        """
        GIVEN an item a crashed run left in COMPRESSING
        WHEN the next run starts
        THEN it is marked failed as interrupted and processed again
        """
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", size=len(SOURCE_BYTES), status=ItemStatus.COMPRESSING)

        summary = _orchestrator(store, transfer, FakeEngine(), settings, clock).run(RunPhase.PROCESS)

        stored = store.get(item.id)
        assert summary.recovered == 1
        assert stored.status == ItemStatus.COMPLETED
        assert stored.retry_count == 1

    def test_interrupted_item_out_of_budget_stays_failed(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        item = catalog_item(store, "a.mkv", status=ItemStatus.UPLOADING, retry_count=2)
        engine = FakeEngine()

        _orchestrator(store, transfer, engine, settings, clock).run(RunPhase.PROCESS)

        stored = store.get(item.id)
        assert stored.status == ItemStatus.FAILED
        assert stored.error_kind == FailureKind.INTERRUPTED
        assert stored.retry_count == 3
        assert engine.started == []

    def test_discover_phase_does_not_recover_or_process(self, store, transfer, remote_root, settings, clock):
        put_remote_file(remote_root, "a.mkv", SOURCE_BYTES)
        stuck = catalog_item(store, "stuck.mkv", status=ItemStatus.DOWNLOADING)

        summary = _orchestrator(store, transfer, FakeEngine(), settings, clock).run(RunPhase.DISCOVER)

        assert summary.discovered == 1
        assert store.get_by_locator("a.mkv").status == ItemStatus.CATALOGED
        assert store.get(stuck.id).status == ItemStatus.DOWNLOADING
