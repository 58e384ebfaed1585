"""
Catalog of media items.

SQLite-backed item storage plus the status state machine that is the
only writer of item status.
"""

from .errors import (
    CatalogError,
    DuplicateItemError,
    InvalidStateTransitionError,
    InvariantViolationError,
    ItemNotFoundError,
    RetryBudgetExhaustedError,
)
from .models import FailureKind, ItemStatus, MediaItem
from .state import StatusStateMachine, can_transition
from .store import CatalogStore

__all__ = [
    "CatalogError",
    "CatalogStore",
    "DuplicateItemError",
    "FailureKind",
    "InvalidStateTransitionError",
    "InvariantViolationError",
    "ItemNotFoundError",
    "ItemStatus",
    "MediaItem",
    "RetryBudgetExhaustedError",
    "StatusStateMachine",
    "can_transition",
]
