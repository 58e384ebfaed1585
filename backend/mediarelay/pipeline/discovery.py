"""
Discovery: catalogue media found on the remote store.

Process:
1. List every object under the remote root
2. Keep media files (by extension) above the minimum size
3. Skip locators already in the catalog
4. Create one CATALOGED item per new locator

scan() and catalog() are separate steps so a run can check free space
for the new items before writing anything.
"""

import logging
from pathlib import PurePosixPath
from typing import List

from ..catalog.errors import DuplicateItemError
from ..catalog.models import MediaItem
from ..catalog.store import CatalogStore
from ..config.settings import PipelineSettings
from ..transfer.base import RemoteObject, TransferClient
from ..transfer.errors import TransferError
from .errors import PipelineError

logger = logging.getLogger(__name__)


class Discovery:
    """Creates catalog entries for new remote media."""

    def __init__(self, store: CatalogStore, transfer: TransferClient, settings: PipelineSettings):
        self.store = store
        self.transfer = transfer
        self.settings = settings

    def is_candidate(self, obj: RemoteObject) -> bool:
        suffix = PurePosixPath(obj.filename).suffix.lower()
        if suffix not in self.settings.media_extensions:
            return False
        return obj.size >= self.settings.min_size_bytes

    def scan(self) -> List[MediaItem]:
        """
        List the remote store and build items for media not yet catalogued.

        Nothing is written; catalog() persists the result.

        Returns:
            New, unsaved items with status CATALOGED

        Raises:
            PipelineError: If the remote store cannot be listed
        """
        try:
            objects = self.transfer.list_objects()
        except (OSError, TransferError) as e:
            raise PipelineError(f"Cannot list remote store {self.transfer.name}: {e}") from e

        candidates = [obj for obj in objects if self.is_candidate(obj)]
        logger.info(
            f"[Discovery] {len(objects)} remote object(s), {len(candidates)} media candidate(s)"
        )

        new_items: List[MediaItem] = []
        for obj in candidates:
            if self.store.get_by_locator(obj.locator) is not None:
                logger.debug(f"[Discovery] Already catalogued: {obj.locator}")
                continue
            logger.info(f"[Discovery] New media {obj.locator} ({obj.size} bytes)")
            new_items.append(MediaItem(
                source_locator=obj.locator,
                filename=obj.filename,
                original_size=obj.size,
            ))
        return new_items

    def catalog(self, items: List[MediaItem]) -> List[MediaItem]:
        """
        Create catalog entries for scanned items.

        Returns:
            Items actually created (locators catalogued meanwhile are skipped)
        """
        created: List[MediaItem] = []
        for item in items:
            try:
                self.store.create(item)
            except DuplicateItemError:
                logger.debug(f"[Discovery] Catalogued concurrently: {item.source_locator}")
                continue

            logger.info(f"[Discovery] Catalogued {item.source_locator} as {item.id}")
            created.append(item)
        return created
