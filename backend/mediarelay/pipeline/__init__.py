"""
Pipeline orchestration.

Discovery, preflight checks and the orchestrator that drives eligible
items from retrieval to publication.
"""

from .discovery import Discovery
from .errors import InsufficientSpaceError, PipelineError, PreflightError
from .orchestrator import PipelineOrchestrator
from .preflight import Preflight
from .summary import RunCounters, RunPhase, RunSummary

__all__ = [
    "Discovery",
    "InsufficientSpaceError",
    "PipelineError",
    "PipelineOrchestrator",
    "Preflight",
    "PreflightError",
    "RunCounters",
    "RunPhase",
    "RunSummary",
]
