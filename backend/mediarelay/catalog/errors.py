"""
Catalog-specific error types.

All errors inherit from CatalogError for easy catching.
Transition and invariant errors are programming errors and must propagate.
"""


class CatalogError(Exception):
    """Base exception for all catalog failures."""
    pass


class ItemNotFoundError(CatalogError):
    """Raised when a media item cannot be found in the catalog."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Media item not found: {item_id}")


class DuplicateItemError(CatalogError):
    """Raised when cataloguing a locator that is already catalogued."""

    def __init__(self, source_locator: str):
        self.source_locator = source_locator
        super().__init__(f"Media item already catalogued: {source_locator}")


class InvalidStateTransitionError(CatalogError):
    """Raised when attempting an illegal status transition."""

    def __init__(self, item_id: str, current_state: str, target_state: str):
        self.item_id = item_id
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid status transition for item {item_id}: "
            f"{current_state} -> {target_state}"
        )


class InvariantViolationError(CatalogError):
    """Raised when a field update would break a catalog invariant."""
    pass


class RetryBudgetExhaustedError(CatalogError):
    """Raised when resetting an item whose retry budget is spent."""

    def __init__(self, item_id: str, retry_count: int, max_retries: int):
        self.item_id = item_id
        self.retry_count = retry_count
        self.max_retries = max_retries
        super().__init__(
            f"Item {item_id} has used {retry_count}/{max_retries} retries"
        )
