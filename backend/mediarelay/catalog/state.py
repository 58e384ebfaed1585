"""
Status state machine for media items.

Item lifecycle:
    cataloged → downloading → archiving → compressing → verifying → uploading → completed

FAILED is reachable from every non-terminal status. FAILED → CATALOGED is the
retry reset. COMPLETED is terminal. FAILED becomes terminal once the retry
budget is spent (enforced by reset_for_retry, not by the transition table).

INVARIANT: every status change goes through StatusStateMachine.advance().
Transition checks, retry_count monotonicity and the conditional catalog
write live here and nowhere else.
"""

import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Set, Tuple

from .errors import (
    InvalidStateTransitionError,
    InvariantViolationError,
    ItemNotFoundError,
    RetryBudgetExhaustedError,
)
from .models import (
    MUTABLE_FIELDS,
    STATUS_SEQUENCE,
    FailureKind,
    ItemStatus,
    MediaItem,
    format_error,
)
from .store import CatalogStore

logger = logging.getLogger(__name__)


TERMINAL_STATUSES: FrozenSet[ItemStatus] = frozenset({ItemStatus.COMPLETED})


def _build_transitions() -> Set[Tuple[ItemStatus, ItemStatus]]:
    transitions: Set[Tuple[ItemStatus, ItemStatus]] = set()

    # Forward, one step at a time
    for current, following in zip(STATUS_SEQUENCE, STATUS_SEQUENCE[1:]):
        transitions.add((current, following))

    # Any non-terminal status may fail
    for status in STATUS_SEQUENCE:
        if status not in TERMINAL_STATUSES:
            transitions.add((status, ItemStatus.FAILED))

    # Retry reset
    transitions.add((ItemStatus.FAILED, ItemStatus.CATALOGED))
    return transitions


_ITEM_TRANSITIONS: Set[Tuple[ItemStatus, ItemStatus]] = _build_transitions()


def is_terminal(status: ItemStatus) -> bool:
    """Check if a status can never change again."""
    return status in TERMINAL_STATUSES


def can_transition(from_status: ItemStatus, to_status: ItemStatus) -> bool:
    """
    Check if an item status transition is legal.

    Unlike job statuses, staying in the same status is not a transition:
    every advance() must reflect real pipeline movement.
    """
    return (from_status, to_status) in _ITEM_TRANSITIONS


def validate_transition(item_id: str, from_status: ItemStatus, to_status: ItemStatus) -> None:
    """
    Validate an item status transition, raising if illegal.

    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    if not can_transition(from_status, to_status):
        raise InvalidStateTransitionError(item_id, from_status.value, to_status.value)


class StatusStateMachine:
    """
    Single entry point for item status changes.

    Reads the current item, validates the transition and field updates,
    then writes status and fields together through a conditional catalog
    update. A lost race (status changed underneath) returns False.
    """

    def __init__(self, store: CatalogStore):
        self.store = store

    def advance(
        self,
        item_id: str,
        new_status: ItemStatus,
        field_updates: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move an item to a new status, writing field updates atomically.

        Args:
            item_id: Media item identifier
            new_status: Target status
            field_updates: Additional columns to write with the status

        Returns:
            True if the update was applied, False if the item changed
            concurrently and the conditional write did not match

        Raises:
            ItemNotFoundError: If the item does not exist
            InvalidStateTransitionError: If the transition is illegal
            InvariantViolationError: If the field updates are invalid
        """
        fields = dict(field_updates or {})
        item = self.store.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)

        validate_transition(item_id, item.status, new_status)

        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise InvariantViolationError(
                f"Unknown fields for item {item_id}: {', '.join(sorted(unknown))}"
            )

        if "retry_count" in fields and fields["retry_count"] < item.retry_count:
            raise InvariantViolationError(
                f"retry_count for item {item_id} cannot decrease "
                f"({item.retry_count} -> {fields['retry_count']})"
            )

        applied = self.store.advance(item_id, item.status, new_status, fields)
        if applied:
            logger.info(
                f"[State] {item_id}: {item.status.value} -> {new_status.value}"
            )
        else:
            logger.warning(
                f"[State] {item_id}: transition {item.status.value} -> "
                f"{new_status.value} lost to a concurrent update"
            )
        return applied

    def fail(self, item_id: str, kind: FailureKind, message: str) -> bool:
        """
        Move an item to FAILED with an incremented retry_count.

        Args:
            item_id: Media item identifier
            kind: Failure classification
            message: Human-readable reason

        Returns:
            True if the failure was recorded
        """
        item = self.store.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)

        logger.warning(f"[State] {item_id} failed ({kind.value}): {message}")
        return self.advance(
            item_id,
            ItemStatus.FAILED,
            {
                "retry_count": item.retry_count + 1,
                "error_kind": kind,
                "error_message": format_error(kind, message),
            },
        )

    def reset_for_retry(self, item_id: str, max_retries: int, force: bool = False) -> bool:
        """
        Reset a FAILED item back to CATALOGED.

        The error fields are kept until the next attempt starts so an
        operator can still see why the item failed last time.

        Args:
            item_id: Media item identifier
            max_retries: Retry budget; items at or above it are terminal
            force: Operator override that ignores the retry budget

        Raises:
            RetryBudgetExhaustedError: If the budget is spent and force is False
        """
        item = self.store.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)

        if (
            item.status == ItemStatus.FAILED
            and item.retry_count >= max_retries
            and not force
        ):
            raise RetryBudgetExhaustedError(item_id, item.retry_count, max_retries)

        return self.advance(item_id, ItemStatus.CATALOGED)

    def start_processing(self, item: MediaItem) -> bool:
        """Move a CATALOGED item to DOWNLOADING and stamp the start time."""
        return self.advance(
            item.id,
            ItemStatus.DOWNLOADING,
            {
                "processing_started_at": datetime.now(),
                "processing_completed_at": None,
                "error_message": None,
                "error_kind": None,
            },
        )
