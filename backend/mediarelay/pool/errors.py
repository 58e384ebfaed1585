"""
Job pool errors.

Submission errors are per-item and transient. They never stop the run.
"""


class PoolError(Exception):
    """Base exception for job pool failures."""
    pass


class JobSpawnError(PoolError):
    """The execution environment could not start a transform unit."""

    def __init__(self, item_id: str, reason: str):
        self.item_id = item_id
        self.reason = reason
        super().__init__(f"Could not start transform for item {item_id}: {reason}")


class JobAlreadyActiveError(PoolError):
    """Raised when submitting a second job for an item that already has one."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item {item_id} already has an active job")


class PoolClosedError(PoolError):
    """Raised when submitting to a monitor that has been shut down."""
    pass
