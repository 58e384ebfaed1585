"""
Execution-specific errors.

Errors raised while starting or talking to the transform engine.
Per-item failures are reported through TransformResult instead.
"""


class ExecutionError(Exception):
    """Base exception for transform engine failures."""

    pass


class EngineUnavailableError(ExecutionError):
    """
    The transform engine cannot run on this system.

    Raised by preflight when the engine binary is missing. Fatal to a
    processing run: no job could ever be scheduled.
    """

    pass


class ProbeError(ExecutionError):
    """
    Media probing failed.

    Raised when ffprobe cannot report a duration:
    - Binary missing
    - Timeout exceeded
    - Unparseable output
    """

    pass
