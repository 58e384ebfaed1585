"""
MediaItem data model.

A MediaItem is one catalogued source file with its own independent
processing lifecycle. Items are never deleted: completed and failed
items stay in the catalog as audit history.

Status transitions are validated externally (see state.py).
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ItemStatus(str, Enum):
    """
    Media item status.

    Values are persisted verbatim in the catalog.
    """

    CATALOGED = "cataloged"  # Discovered, waiting for processing
    DOWNLOADING = "downloading"  # Retrieving from the remote store
    ARCHIVING = "archiving"  # Copying to the archive and verifying digests
    COMPRESSING = "compressing"  # Transform job submitted or running
    VERIFYING = "verifying"  # Checking the transformed output
    UPLOADING = "uploading"  # Publishing the transformed output
    COMPLETED = "completed"  # Published, local files cleaned up
    FAILED = "failed"  # Failed at some step, see error_kind/error_message


# Forward order of the processing sequence
STATUS_SEQUENCE = (
    ItemStatus.CATALOGED,
    ItemStatus.DOWNLOADING,
    ItemStatus.ARCHIVING,
    ItemStatus.COMPRESSING,
    ItemStatus.VERIFYING,
    ItemStatus.UPLOADING,
    ItemStatus.COMPLETED,
)

# Statuses a crashed run can leave an item in
IN_FLIGHT_STATUSES = frozenset({
    ItemStatus.DOWNLOADING,
    ItemStatus.ARCHIVING,
    ItemStatus.COMPRESSING,
    ItemStatus.VERIFYING,
    ItemStatus.UPLOADING,
})


class FailureKind(str, Enum):
    """
    Failure classification stored alongside the error message.

    TRANSIENT_IO: retrieval/publish/spawn failure, retried on the next run
    INTEGRITY: digest mismatch or failed output validation
    TIMEOUT: transform exceeded its timeout plus grace and was killed
    TRANSFORM: transform engine reported failure
    INTERRUPTED: a previous run stopped while the item was in flight
    """

    TRANSIENT_IO = "transient_io"
    INTEGRITY = "integrity"
    TIMEOUT = "timeout"
    TRANSFORM = "transform"
    INTERRUPTED = "interrupted"


def format_error(kind: FailureKind, message: str) -> str:
    """Render a stored error message with its classification prefix."""
    return f"[{kind.value}] {message}"


class MediaItem(BaseModel):
    """
    A single catalogued media file.

    Owned by the catalog store. Mutated only through
    StatusStateMachine.advance().
    """

    model_config = ConfigDict(extra="forbid")

    # Identity
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_locator: str  # Remote locator, also the publish target
    filename: str
    original_size: int = 0

    # State
    status: ItemStatus = ItemStatus.CATALOGED
    retry_count: int = 0
    error_message: Optional[str] = None
    error_kind: Optional[FailureKind] = None

    # Archive
    archive_path: Optional[str] = None
    source_digest: Optional[str] = None
    archive_digest: Optional[str] = None

    # Transform outcome
    transformed_size: Optional[int] = None
    transform_ratio: Optional[float] = None

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.now)
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_eligible(self, max_retries: int) -> bool:
        """
        Check if this item may be processed in the current run.

        Cataloged items are always eligible; failed items only while
        their retry budget lasts.
        """
        if self.status == ItemStatus.CATALOGED:
            return True
        return self.status == ItemStatus.FAILED and self.retry_count < max_retries


# Columns that advance() may write besides status
MUTABLE_FIELDS = frozenset({
    "retry_count",
    "error_message",
    "error_kind",
    "archive_path",
    "source_digest",
    "archive_digest",
    "transformed_size",
    "transform_ratio",
    "original_size",
    "processing_started_at",
    "processing_completed_at",
})
