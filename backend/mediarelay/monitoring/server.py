"""
Monitoring server endpoints.

Read-only HTTP API for catalog visibility. Observation only, no control
operations: retries go through the CLI.
"""

import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request

from ..catalog.errors import CatalogError
from ..catalog.models import ItemStatus
from ..catalog.store import CatalogStore
from .errors import ItemLookupError
from .models import HealthResponse, ItemDetail, ItemListResponse, StatusSummaryResponse
from .queries import get_item_detail, get_item_list, get_status_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/monitor", tags=["monitoring"])


def _store(request: Request) -> CatalogStore:
    return request.app.state.catalog_store


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Health check endpoint.

    Reports the catalog as unreachable instead of failing the request.
    """
    try:
        _store(request).ping()
    except CatalogError as e:
        logger.warning(f"[Monitor] Catalog health check failed: {e}")
        return HealthResponse(status="degraded", catalog="unreachable")
    return HealthResponse()


@router.get("/summary", response_model=StatusSummaryResponse)
async def status_summary(request: Request):
    """Item counts for every status."""
    return get_status_summary(_store(request))


@router.get("/items", response_model=ItemListResponse)
async def list_items(
    request: Request,
    status: Optional[ItemStatus] = None,
    limit: int = Query(default=100, ge=1, le=1000),
):
    """
    List items, most recently updated first.

    Args:
        status: Only items in this status
        limit: Maximum number of items returned
    """
    return get_item_list(_store(request), status=status, limit=limit)


@router.get("/items/{item_id}", response_model=ItemDetail)
async def get_item(item_id: str, request: Request):
    """
    Retrieve one item with its stored error, digests and timestamps.

    Raises:
        404: If the item ID does not exist
    """
    try:
        return get_item_detail(_store(request), item_id)
    except ItemLookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


def create_app(store: CatalogStore) -> FastAPI:
    """Build the monitoring application around an open catalog."""
    from .. import __version__

    app = FastAPI(title="mediarelay monitor", version=__version__)
    app.state.catalog_store = store
    app.include_router(router)
    return app


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8095


def run_monitor_server(store: CatalogStore, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
    """Serve the monitoring API until interrupted."""
    import uvicorn

    app = create_app(store)
    logger.info(f"[Monitor] Serving read-only API on {host}:{port}")
    if host == "0.0.0.0":
        logger.warning("[Monitor] LAN exposure is enabled; no authentication is configured")
    uvicorn.run(app, host=host, port=port)
