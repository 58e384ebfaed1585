"""
Response models for the monitoring API.

All responses are read-only views of catalog state.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from ..catalog.models import FailureKind, ItemStatus


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    model_config = ConfigDict(extra="forbid")

    status: str = "ok"
    catalog: str = "ok"


class StatusSummaryResponse(BaseModel):
    """Item counts per status."""

    model_config = ConfigDict(extra="forbid")

    counts: Dict[str, int]
    total_count: int


class ItemSummary(BaseModel):
    """
    Summary view of an item for list endpoints.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    filename: str
    status: ItemStatus
    retry_count: int
    error_kind: Optional[FailureKind] = None
    updated_at: Optional[datetime] = None


class ItemDetail(BaseModel):
    """
    Detailed view of one item, including stored errors and digests.

    Used by operators to triage failed items.
    """

    model_config = ConfigDict(extra="forbid")

    # Identity
    id: str
    source_locator: str
    filename: str
    original_size: int

    # State
    status: ItemStatus
    retry_count: int
    error_kind: Optional[FailureKind] = None
    error_message: Optional[str] = None

    # Archive
    archive_path: Optional[str] = None
    source_digest: Optional[str] = None
    archive_digest: Optional[str] = None

    # Transform outcome
    transformed_size: Optional[int] = None
    transform_ratio: Optional[float] = None

    # Timestamps
    created_at: datetime
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ItemListResponse(BaseModel):
    """
    List of item summaries, most recently updated first.
    """

    model_config = ConfigDict(extra="forbid")

    items: List[ItemSummary]
    total_count: int
