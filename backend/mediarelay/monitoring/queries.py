"""
Query layer for read-only catalog access.

Wraps CatalogStore reads and converts items into response models.
"""

from typing import Optional

from ..catalog.models import ItemStatus, MediaItem
from ..catalog.store import CatalogStore
from .errors import ItemLookupError
from .models import ItemDetail, ItemListResponse, ItemSummary, StatusSummaryResponse


def _to_summary(item: MediaItem) -> ItemSummary:
    return ItemSummary(
        id=item.id,
        filename=item.filename,
        status=item.status,
        retry_count=item.retry_count,
        error_kind=item.error_kind,
        updated_at=item.updated_at,
    )


def get_status_summary(store: CatalogStore) -> StatusSummaryResponse:
    counts = store.count_by_status()
    return StatusSummaryResponse(
        counts={status.value: count for status, count in counts.items()},
        total_count=sum(counts.values()),
    )


def get_item_list(
    store: CatalogStore,
    status: Optional[ItemStatus] = None,
    limit: int = 100,
) -> ItemListResponse:
    items = store.list_items(status, limit=limit)
    return ItemListResponse(
        items=[_to_summary(item) for item in items],
        total_count=len(items),
    )


def get_item_detail(store: CatalogStore, item_id: str) -> ItemDetail:
    """
    Raises:
        ItemLookupError: If the item does not exist
    """
    item = store.get(item_id)
    if item is None:
        raise ItemLookupError(item_id)
    return ItemDetail(**item.model_dump())
