"""
Pipeline errors.

Item-level failures never surface as exceptions from a run: they become
FAILED transitions. The errors here are fatal and abort the whole run.
"""


class PipelineError(Exception):
    """Base exception for fatal pipeline failures."""
    pass


class PreflightError(PipelineError):
    """
    A precondition for the run does not hold.

    Raised before any retrieval or status change:
    - Catalog unreachable
    - Transform engine not installed
    - Work or archive directory unusable
    """
    pass


class InsufficientSpaceError(PreflightError):
    """Not enough free space to process the eligible items."""

    def __init__(self, path: str, required_bytes: int, available_bytes: int):
        self.path = path
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Insufficient free space on {path}: "
            f"{required_bytes / 1024 ** 3:.1f} GB required, "
            f"{available_bytes / 1024 ** 3:.1f} GB available"
        )
