"""
PipelineSettings: the single object that configures a run.

Settings are immutable once loaded. CLI flags produce a new instance via
with_overrides(); nothing mutates settings during a run.

Loaded from a JSON file:

    {
        "catalog_path": "/srv/mediarelay/catalog.db",
        "work_dir": "/scratch/mediarelay",
        "archive_dir": "/archive/originals",
        "transfer": "local",
        "remote_root": "/mnt/library",
        "max_concurrent": 3,
        "transform": {"video_codec": "hevc", "crf": 26}
    }
"""

import json
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..execution.base import TransformParams
from ..pool.monitor import (
    DEFAULT_GRACE_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    clamp_concurrency,
    default_max_concurrent,
)


DEFAULT_MEDIA_EXTENSIONS: Tuple[str, ...] = (
    ".mp4", ".mkv", ".mov", ".m4v", ".avi", ".wmv", ".mpg", ".mpeg", ".ts", ".webm",
)

TRANSFER_BACKENDS = ("local", "rclone")


class SettingsError(Exception):
    """Settings file is missing, unreadable or invalid."""
    pass


@dataclass(frozen=True)
class PipelineSettings:
    """
    Complete, immutable pipeline configuration.

    Paths:
    - catalog_path: SQLite catalog file
    - work_dir: scratch space, one subdirectory per item id
    - archive_dir: durable originals, one subdirectory per item id

    Remote store:
    - transfer: "local" (mounted directory) or "rclone"
    - remote_root: directory for the local backend
    - rclone_remote: "name:path" for the rclone backend
    """

    catalog_path: str = "./mediarelay.db"
    work_dir: str = "./work"
    archive_dir: str = "./archive"

    transfer: str = "local"
    remote_root: Optional[str] = None
    rclone_remote: Optional[str] = None

    # Job pool
    max_concurrent: int = field(default_factory=default_max_concurrent)
    transform_timeout_seconds: float = 4 * 60 * 60
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS

    # Retry budget: failed items with retry_count below this are re-processed
    max_retries: int = 3

    # Post-transform verification (integrity decode + duration comparison)
    verify_output: bool = True
    duration_tolerance_seconds: float = 1.0

    # Preflight free space: reserve + multiplier * largest batch of inputs
    min_free_space_bytes: int = 1024 ** 3
    space_multiplier: float = 3.0

    # Discovery filters
    media_extensions: Tuple[str, ...] = DEFAULT_MEDIA_EXTENSIONS
    min_size_bytes: int = 0

    transform: TransformParams = field(default_factory=TransformParams)

    def __post_init__(self):
        if self.transfer not in TRANSFER_BACKENDS:
            raise SettingsError(
                f"Unknown transfer backend '{self.transfer}' "
                f"(expected one of: {', '.join(TRANSFER_BACKENDS)})"
            )
        if self.max_retries < 0:
            raise SettingsError("max_retries must be >= 0")
        if self.transform_timeout_seconds <= 0:
            raise SettingsError("transform_timeout_seconds must be positive")
        if self.grace_seconds < 0:
            raise SettingsError("grace_seconds must be >= 0")
        if self.poll_interval_seconds <= 0:
            raise SettingsError("poll_interval_seconds must be positive")
        if self.duration_tolerance_seconds < 0:
            raise SettingsError("duration_tolerance_seconds must be >= 0")
        if self.space_multiplier < 0:
            raise SettingsError("space_multiplier must be >= 0")

        # Frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, "max_concurrent", clamp_concurrency(self.max_concurrent))
        object.__setattr__(
            self,
            "media_extensions",
            tuple(ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in self.media_extensions),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary for JSON storage."""
        data = asdict(self)
        data["media_extensions"] = list(self.media_extensions)
        data["transform"]["extra_args"] = list(self.transform.extra_args)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineSettings":
        """
        Deserialize from dictionary.

        Unknown keys are rejected so typos in a settings file fail loudly.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise SettingsError(f"Unknown settings: {', '.join(sorted(unknown))}")

        values = dict(data)
        if "transform" in values:
            transform_data = dict(values["transform"] or {})
            transform_known = {f.name for f in fields(TransformParams)}
            unknown_transform = set(transform_data) - transform_known
            if unknown_transform:
                raise SettingsError(
                    f"Unknown transform settings: {', '.join(sorted(unknown_transform))}"
                )
            if "extra_args" in transform_data:
                transform_data["extra_args"] = tuple(transform_data["extra_args"])
            values["transform"] = TransformParams(**transform_data)
        if "media_extensions" in values:
            values["media_extensions"] = tuple(values["media_extensions"])

        try:
            return cls(**values)
        except TypeError as e:
            raise SettingsError(f"Invalid settings: {e}") from e

    def with_overrides(self, **overrides: Any) -> "PipelineSettings":
        """Return a copy with non-None overrides applied."""
        applied = {key: value for key, value in overrides.items() if value is not None}
        if not applied:
            return self
        return replace(self, **applied)

    def item_work_dir(self, item_id: str) -> Path:
        return Path(self.work_dir) / item_id

    def item_archive_dir(self, item_id: str) -> Path:
        return Path(self.archive_dir) / item_id


DEFAULT_PIPELINE_SETTINGS = PipelineSettings()


def load_settings(path: Optional[str]) -> PipelineSettings:
    """
    Load settings from a JSON file.

    Args:
        path: Settings file, or None for defaults

    Raises:
        SettingsError: If the file is missing, not JSON or invalid
    """
    if path is None:
        return PipelineSettings()

    settings_path = Path(path)
    if not settings_path.is_file():
        raise SettingsError(f"Settings file not found: {settings_path}")

    try:
        with open(settings_path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise SettingsError(f"Invalid JSON in {settings_path}: {e}") from e

    if not isinstance(data, dict):
        raise SettingsError(f"Settings file must contain a JSON object: {settings_path}")

    return PipelineSettings.from_dict(data)
