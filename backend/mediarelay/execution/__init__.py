"""
Transform execution.

Engine interface, pollable handles and the FFmpeg implementation.
"""

from .base import (
    CallableTransformHandle,
    TransformEngine,
    TransformHandle,
    TransformParams,
    TransformUnit,
)
from .errors import EngineUnavailableError, ExecutionError, ProbeError
from .ffmpeg import FFmpegTransformEngine
from .results import DurationComparison, IntegrityResult, TransformResult

__all__ = [
    "CallableTransformHandle",
    "DurationComparison",
    "EngineUnavailableError",
    "ExecutionError",
    "FFmpegTransformEngine",
    "IntegrityResult",
    "ProbeError",
    "TransformEngine",
    "TransformHandle",
    "TransformParams",
    "TransformResult",
    "TransformUnit",
]
