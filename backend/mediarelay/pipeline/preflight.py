"""
Preflight checks run before any catalog write, retrieval or status change.

Any failure here is fatal: the run aborts with the catalog untouched.
Order within a run: check_catalog, check_processing, then check_space
over the eligible items plus the ones discovery is about to add.

Free space model:
- work_dir holds, per concurrent job, the retrieved original plus the
  transformed output: space_multiplier * (largest max_concurrent inputs)
- archive_dir accumulates every original processed in this run: sum of inputs
- both keep min_free_space_bytes in reserve; when they share a filesystem
  the requirements are added together
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Callable, Dict, Sequence, Tuple

from ..catalog.errors import CatalogError
from ..catalog.models import MediaItem
from ..catalog.store import CatalogStore
from ..config.settings import PipelineSettings
from ..execution.base import TransformEngine
from ..execution.errors import EngineUnavailableError
from .errors import InsufficientSpaceError, PreflightError

logger = logging.getLogger(__name__)

DiskUsage = Callable[[str], Tuple[int, int, int]]


def _existing_ancestor(path: Path) -> Path:
    """Nearest existing directory at or above path."""
    current = path.resolve()
    while not current.exists() and current != current.parent:
        current = current.parent
    return current


def _device_of(path: Path) -> int:
    return os.stat(_existing_ancestor(path)).st_dev


class Preflight:
    """Catalog, engine and disk space checks for a run."""

    def __init__(
        self,
        store: CatalogStore,
        engine: TransformEngine,
        settings: PipelineSettings,
        disk_usage: DiskUsage = shutil.disk_usage,
    ):
        self.store = store
        self.engine = engine
        self.settings = settings
        self._disk_usage = disk_usage

    def check_catalog(self) -> None:
        try:
            self.store.ping()
        except CatalogError as e:
            raise PreflightError(f"Catalog unreachable: {e}") from e

    def check_engine(self) -> None:
        if not self.engine.available:
            raise EngineUnavailableError(
                f"{self.engine.name} is not installed or not in PATH; no transform can be scheduled"
            )
        try:
            self.engine.validate_params(self.settings.transform)
        except ValueError as e:
            raise PreflightError(f"Transform settings rejected by {self.engine.name}: {e}") from e

    def required_space(self, items: Sequence[MediaItem]) -> Dict[Path, int]:
        """
        Bytes required per filesystem root for processing items.

        Returns:
            Mapping of a directory to check -> bytes required there
        """
        sizes = sorted((item.original_size for item in items), reverse=True)
        batch = sizes[: self.settings.max_concurrent]

        work_dir = Path(self.settings.work_dir)
        archive_dir = Path(self.settings.archive_dir)
        reserve = self.settings.min_free_space_bytes

        work_bytes = int(self.settings.space_multiplier * sum(batch))
        archive_bytes = sum(sizes)

        if _device_of(work_dir) == _device_of(archive_dir):
            return {work_dir: reserve + work_bytes + archive_bytes}
        return {
            work_dir: reserve + work_bytes,
            archive_dir: reserve + archive_bytes,
        }

    def check_space(self, items: Sequence[MediaItem]) -> None:
        """
        Raises:
            InsufficientSpaceError: If any filesystem lacks the required bytes
        """
        for directory, required in self.required_space(items).items():
            target = _existing_ancestor(directory)
            _, _, free = self._disk_usage(str(target))
            logger.info(
                f"[Preflight] {directory}: {required / 1024 ** 3:.1f} GB required, "
                f"{free / 1024 ** 3:.1f} GB free"
            )
            if free < required:
                raise InsufficientSpaceError(str(directory), required, free)

    def check_directories(self) -> None:
        """Create work and archive directories and make sure they are writable."""
        for directory in (Path(self.settings.work_dir), Path(self.settings.archive_dir)):
            try:
                directory.mkdir(parents=True, exist_ok=True)
                probe = directory / ".mediarelay_write_test"
                probe.touch()
                probe.unlink()
            except OSError as e:
                raise PreflightError(f"Directory is not writable: {directory}: {e}") from e

    def check_processing(self, dry_run: bool = False) -> None:
        """
        Engine and directory checks for a processing phase.

        These run before discovery; check_space runs once the new items
        are known, still before anything is written to the catalog.
        """
        self.check_engine()
        if not dry_run:
            self.check_directories()
