"""
mediarelay CLI - thin entrypoint for operator commands.

Commands:
- run: discover and/or process eligible items
- status: item counts per status, optionally with failed item details
- retry: reset one failed item so the next run picks it up
- serve: read-only monitoring API

The CLI is a dispatcher only: no pipeline logic lives here.

Exit Codes:
===========
- 0: Success
- 1: Validation error (settings, unknown item, retry budget exhausted)
- 2: Run completed but some items failed
- 3: Run aborted (preflight, engine unavailable, interrupted)
- 4: System error (catalog unreachable)
"""

import argparse
import logging
import sys
from typing import List, Optional

from .. import __version__
from ..catalog.errors import CatalogError, RetryBudgetExhaustedError
from ..catalog.models import ItemStatus
from ..catalog.state import StatusStateMachine
from ..catalog.store import CatalogStore
from ..config.settings import PipelineSettings, SettingsError, load_settings
from ..execution.errors import ExecutionError
from ..execution.ffmpeg import FFmpegTransformEngine
from ..monitoring.server import DEFAULT_HOST, DEFAULT_PORT, run_monitor_server
from ..notify.sinks import LoggingNotificationSink
from ..pipeline.errors import PipelineError
from ..pipeline.orchestrator import PipelineOrchestrator
from ..pipeline.summary import RunPhase
from ..transfer.base import TransferClient
from ..transfer.errors import TransferConfigurationError
from ..transfer.local import LocalTransferClient
from ..transfer.rclone import RcloneTransferClient
from .errors import ValidationError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_VALIDATION = 1
EXIT_ITEM_FAILURES = 2
EXIT_ABORTED = 3
EXIT_SYSTEM = 4

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_transfer_client(settings: PipelineSettings) -> TransferClient:
    """
    Create the transfer client selected by settings.

    Raises:
        ValidationError: If the selected backend is missing its location
    """
    try:
        if settings.transfer == "rclone":
            if not settings.rclone_remote:
                raise ValidationError("rclone transfer requires 'rclone_remote' (name:path)")
            return RcloneTransferClient(settings.rclone_remote)

        if not settings.remote_root:
            raise ValidationError("local transfer requires 'remote_root'")
        return LocalTransferClient(settings.remote_root)
    except TransferConfigurationError as e:
        raise ValidationError(str(e)) from e


def _load(args: argparse.Namespace) -> PipelineSettings:
    settings = load_settings(args.config)
    return settings.with_overrides(
        max_concurrent=getattr(args, "max_concurrent", None),
    )


def cmd_run(args: argparse.Namespace) -> int:
    """
    Run discovery and/or processing.

    Exit codes:
        0: Run completed with no item failures
        1: Settings invalid
        2: Run completed with item failures
        3: Run aborted
        4: Catalog unreachable
    """
    settings = _load(args)
    transfer = build_transfer_client(settings)
    store = CatalogStore(settings.catalog_path)

    orchestrator = PipelineOrchestrator(
        store=store,
        transfer=transfer,
        engine=FFmpegTransformEngine(),
        settings=settings,
        notifier=LoggingNotificationSink(),
    )

    try:
        summary = orchestrator.run(RunPhase(args.phase), dry_run=args.dry_run)
    except (PipelineError, ExecutionError) as e:
        print(f"✗ Run aborted: {e}", file=sys.stderr)
        return EXIT_ABORTED
    except KeyboardInterrupt:
        print("\nRun interrupted; in-flight items are recovered on the next run.", file=sys.stderr)
        return EXIT_ABORTED

    print(summary.summary())
    if summary.failed:
        return EXIT_ITEM_FAILURES
    return EXIT_OK


def cmd_status(args: argparse.Namespace) -> int:
    """Print item counts per status, and failed items with --failed."""
    settings = _load(args)
    store = CatalogStore(settings.catalog_path)

    counts = store.count_by_status()
    for status in ItemStatus:
        print(f"{status.value:<12} {counts[status]:>6}")
    print(f"{'total':<12} {sum(counts.values()):>6}")

    if args.failed:
        failed = store.list_items(ItemStatus.FAILED, limit=args.limit)
        if failed:
            print("")
        for item in failed:
            budget = "exhausted" if item.retry_count >= settings.max_retries else "eligible"
            print(f"{item.id}  {item.filename}  retries={item.retry_count} ({budget})")
            print(f"    {item.error_message or '(no error recorded)'}")
    return EXIT_OK


def cmd_retry(args: argparse.Namespace) -> int:
    """Reset a failed item to cataloged."""
    settings = _load(args)
    store = CatalogStore(settings.catalog_path)

    item = store.get(args.item_id)
    if item is None:
        raise ValidationError(f"Item not found: {args.item_id}")
    if item.status != ItemStatus.FAILED:
        raise ValidationError(
            f"Item {item.id} cannot be retried. Current status: {item.status.value}. "
            f"Only failed items can be retried."
        )

    try:
        applied = StatusStateMachine(store).reset_for_retry(
            item.id, settings.max_retries, force=args.force
        )
    except RetryBudgetExhaustedError as e:
        raise ValidationError(f"{e} (use --force to override)") from e

    if not applied:
        raise ValidationError(f"Item {item.id} changed while resetting; try again")
    print(f"✓ {item.id} reset to cataloged (retry_count={item.retry_count})")
    return EXIT_OK


def cmd_serve(args: argparse.Namespace) -> int:
    """Serve the read-only monitoring API."""
    settings = _load(args)
    store = CatalogStore(settings.catalog_path)
    try:
        run_monitor_server(store, host=args.host, port=args.port)
    except KeyboardInterrupt:
        pass
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mediarelay",
        description="Retrieve, archive, transform and republish large media files",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a JSON settings file (default: built-in settings)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to execute")

    # Run command
    parser_run = subparsers.add_parser("run", help="Discover and/or process eligible items")
    parser_run.add_argument(
        "--phase",
        choices=[phase.value for phase in RunPhase],
        default=RunPhase.ALL.value,
        help="Which phases to execute (default: all)",
    )
    parser_run.add_argument(
        "--dry-run",
        action="store_true",
        help="Log what would happen without transferring, archiving or writing the catalog",
    )
    parser_run.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        help="Maximum concurrent transforms, clamped to 1-8 (default: CPU count - 1)",
    )
    parser_run.set_defaults(func=cmd_run)

    # Status command
    parser_status = subparsers.add_parser("status", help="Show item counts per status")
    parser_status.add_argument(
        "--failed",
        action="store_true",
        help="List failed items with their stored errors",
    )
    parser_status.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum failed items listed (default: 50)",
    )
    parser_status.set_defaults(func=cmd_status)

    # Retry command
    parser_retry = subparsers.add_parser("retry", help="Reset a failed item for the next run")
    parser_retry.add_argument("item_id", help="Item identifier")
    parser_retry.add_argument(
        "--force",
        action="store_true",
        help="Reset even when the retry budget is exhausted",
    )
    parser_retry.set_defaults(func=cmd_retry)

    # Serve command
    parser_serve = subparsers.add_parser("serve", help="Serve the read-only monitoring API")
    parser_serve.add_argument("--host", default=DEFAULT_HOST, help=f"Bind address (default: {DEFAULT_HOST})")
    parser_serve.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"Port (default: {DEFAULT_PORT})")
    parser_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entrypoint.

    Parses arguments, configures logging and dispatches to a subcommand.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    try:
        return args.func(args)
    except (SettingsError, ValidationError) as e:
        print(f"✗ {e}", file=sys.stderr)
        return EXIT_VALIDATION
    except CatalogError as e:
        print(f"FATAL: Catalog error: {e}", file=sys.stderr)
        return EXIT_SYSTEM


if __name__ == "__main__":
    sys.exit(main())
