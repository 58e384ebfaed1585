"""Run configuration."""

from .settings import (
    DEFAULT_PIPELINE_SETTINGS,
    PipelineSettings,
    SettingsError,
    load_settings,
)

__all__ = [
    "DEFAULT_PIPELINE_SETTINGS",
    "PipelineSettings",
    "SettingsError",
    "load_settings",
]
