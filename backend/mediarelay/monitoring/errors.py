"""
Monitoring-specific errors.
"""


class MonitoringError(Exception):
    """Base exception for monitoring operations."""
    pass


class ItemLookupError(MonitoringError):
    """Raised when a requested item ID does not exist."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item not found: {item_id}")
