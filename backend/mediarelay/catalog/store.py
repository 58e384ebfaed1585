"""
SQLite catalog store for media items.

Single-file SQLite database. One connection per operation, so the store
can be shared by the orchestrator thread and the pool monitor thread.

Every status write is conditional on the status it was validated against
(compare-and-set), which keeps the single-writer discipline observable:
a write that lost a race reports False instead of silently clobbering.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import CatalogError, DuplicateItemError
from .models import FailureKind, ItemStatus, MediaItem


# Database schema version for migrations
SCHEMA_VERSION = 2

_DATETIME_COLUMNS = (
    "created_at",
    "processing_started_at",
    "processing_completed_at",
    "updated_at",
)


def _to_db(value: Any) -> Any:
    """Convert a python value into its column representation."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class CatalogStore:
    """
    Durable keyed store of MediaItem records.

    Stores:
    - Media items with status, retry bookkeeping and archive digests

    Does NOT store:
    - Job pool state (in-memory only, rebuilt by recovery on restart)
    - Run counters
    """

    def __init__(self, db_path: Optional[str] = None, timeout: float = 30.0):
        """
        Initialize the catalog store.

        Args:
            db_path: Path to SQLite database file (defaults to ./mediarelay.db)
            timeout: Seconds to wait on a locked database before failing
        """
        if db_path is None:
            db_path = str(Path.cwd() / "mediarelay.db")

        self.db_path = db_path
        self.timeout = timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @contextmanager
    def _connect(self):
        """Context manager for database connections."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise CatalogError(f"Cannot open catalog {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except CatalogError:
            conn.rollback()
            raise
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except Exception as e:
            conn.rollback()
            raise CatalogError(f"Database operation failed: {e}") from e
        finally:
            conn.close()

    def _ensure_schema(self):
        """Create schema if it doesn't exist."""
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
            """)

            cursor.execute("SELECT version FROM schema_version ORDER BY version DESC LIMIT 1")
            row = cursor.fetchone()
            current_version = row[0] if row else 0

            if current_version < SCHEMA_VERSION:
                self._migrate_schema(conn, current_version)

    def _migrate_schema(self, conn, from_version: int):
        """Apply schema migrations."""
        cursor = conn.cursor()

        if from_version < 1:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS media_items (
                    id TEXT PRIMARY KEY,
                    source_locator TEXT NOT NULL UNIQUE,
                    filename TEXT NOT NULL,
                    original_size INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    archive_path TEXT,
                    source_digest TEXT,
                    archive_digest TEXT,
                    transformed_size INTEGER,
                    transform_ratio REAL,
                    created_at TEXT NOT NULL,
                    processing_started_at TEXT,
                    processing_completed_at TEXT
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_media_items_status
                ON media_items (status, retry_count)
            """)

            cursor.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (1, datetime.now().isoformat())
            )

        if from_version < 2:
            # Failure classification and write stamp
            cursor.execute("ALTER TABLE media_items ADD COLUMN error_kind TEXT")
            cursor.execute("ALTER TABLE media_items ADD COLUMN updated_at TEXT")

            cursor.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (2, datetime.now().isoformat())
            )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> MediaItem:
        data = dict(row)
        for column in _DATETIME_COLUMNS:
            if data.get(column):
                data[column] = datetime.fromisoformat(data[column])
        data["status"] = ItemStatus(data["status"])
        if data.get("error_kind"):
            data["error_kind"] = FailureKind(data["error_kind"])
        return MediaItem(**data)

    # Health

    def ping(self) -> None:
        """
        Check the catalog is reachable.

        Raises:
            CatalogError: If the database cannot be queried
        """
        with self._connect() as conn:
            conn.execute("SELECT 1 FROM media_items LIMIT 1").fetchall()

    # Item persistence

    def create(self, item: MediaItem) -> MediaItem:
        """
        Insert a newly discovered item.

        Raises:
            DuplicateItemError: If the locator is already catalogued
        """
        data = item.model_dump()
        columns = list(data)
        placeholders = ", ".join("?" for _ in columns)
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO media_items ({', '.join(columns)}) VALUES ({placeholders})",
                    [_to_db(data[column]) for column in columns],
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateItemError(item.source_locator) from e
        return item

    def get(self, item_id: str) -> Optional[MediaItem]:
        """Load a single item by id."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM media_items WHERE id = ?", (item_id,)
            ).fetchone()
        return self._row_to_item(row) if row else None

    def get_by_locator(self, source_locator: str) -> Optional[MediaItem]:
        """Load a single item by its remote locator."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM media_items WHERE source_locator = ?", (source_locator,)
            ).fetchone()
        return self._row_to_item(row) if row else None

    def query(self, status: ItemStatus, max_retry: Optional[int] = None) -> List[MediaItem]:
        """
        Query items by status.

        Args:
            status: Status to match
            max_retry: If given, only items with retry_count below it

        Returns:
            Matching items, oldest first
        """
        sql = "SELECT * FROM media_items WHERE status = ?"
        params: List[Any] = [status.value]
        if max_retry is not None:
            sql += " AND retry_count < ?"
            params.append(max_retry)
        sql += " ORDER BY created_at, id"

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_item(row) for row in rows]

    def query_eligible(self, max_retries: int) -> List[MediaItem]:
        """Cataloged items plus failed items still inside their retry budget."""
        items = self.query(ItemStatus.CATALOGED) + self.query(ItemStatus.FAILED, max_retries)
        items.sort(key=lambda item: (item.created_at, item.id))
        return items

    def query_statuses(self, statuses: Iterable[ItemStatus]) -> List[MediaItem]:
        """Query items in any of the given statuses, oldest first."""
        values = [status.value for status in statuses]
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM media_items WHERE status IN ({placeholders}) "
                f"ORDER BY created_at, id",
                values,
            ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def list_items(self, status: Optional[ItemStatus] = None, limit: int = 100) -> List[MediaItem]:
        """List items, most recently updated first."""
        sql = "SELECT * FROM media_items"
        params: List[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status.value)
        sql += " ORDER BY COALESCE(updated_at, created_at) DESC, id LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_item(row) for row in rows]

    def count_by_status(self) -> Dict[ItemStatus, int]:
        """Count items per status. Statuses with no items report 0."""
        counts = {status: 0 for status in ItemStatus}
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS total FROM media_items GROUP BY status"
            ).fetchall()
        for row in rows:
            counts[ItemStatus(row["status"])] = row["total"]
        return counts

    def advance(
        self,
        item_id: str,
        expected_status: ItemStatus,
        new_status: ItemStatus,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Write a status and field updates in one transaction.

        The write only applies if the stored status still equals
        expected_status. Callers validate transitions first
        (see StatusStateMachine.advance).

        Returns:
            True if exactly one row was updated
        """
        updates = dict(fields or {})
        updates["status"] = new_status
        updates["updated_at"] = datetime.now()

        assignments = ", ".join(f"{column} = ?" for column in updates)
        params = [_to_db(value) for value in updates.values()]
        params.extend([item_id, expected_status.value])

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE media_items SET {assignments} WHERE id = ? AND status = ?",
                params,
            )
            return cursor.rowcount == 1
