"""SQLite ledger of indexed content units."""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import UserInputError
from .models import IndexRecord


logger = logging.getLogger(__name__)

# SQLite default limit on bound parameters is 999 on older builds
_MAX_PARAMS = 900


def _chunked(items: Sequence[str], size: int = _MAX_PARAMS) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class RecordManager:
    """
    Tracks which content unit ids are indexed, for which source, and when.

    The ledger is the source of truth for incremental indexing: existence
    checks decide whether a unit needs embedding, and ``indexed_at`` decides
    which units went stale during a run.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS records (
                id TEXT PRIMARY KEY,
                source_path TEXT NOT NULL,
                indexed_at REAL NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_source ON records(source_path)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_indexed_at ON records(indexed_at)")
        self.conn.commit()

    def exists(self, ids: Sequence[str]) -> List[bool]:
        """Return one boolean per input id, in input order."""
        found = set()
        with self._lock:
            cursor = self.conn.cursor()
            for part in _chunked(list(ids)):
                placeholders = ",".join("?" * len(part))
                rows = cursor.execute(
                    f"SELECT id FROM records WHERE id IN ({placeholders})", tuple(part)
                ).fetchall()
                found.update(row["id"] for row in rows)
        return [record_id in found for record_id in ids]

    def update(self, records: Sequence[IndexRecord]) -> None:
        """Upsert records, refreshing indexed_at for ids already present."""
        if not records:
            return
        with self._lock:
            self.conn.executemany(
                """
                INSERT INTO records (id, source_path, indexed_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    source_path = excluded.source_path,
                    indexed_at = excluded.indexed_at
                """,
                [(r.id, r.source_path, r.indexed_at) for r in records],
            )
            self.conn.commit()

    def get_ids_to_delete(
        self,
        indexed_before: Optional[float] = None,
        sources: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """
        Return ids matching every filter that was given.

        Args:
            indexed_before: Keep ids whose indexed_at is strictly smaller
            sources: Keep ids whose source_path is in this collection. An
                     empty collection is a filter that matches nothing.

        Raises:
            UserInputError: If neither filter is given
        """
        if indexed_before is None and sources is None:
            raise UserInputError("get_ids_to_delete requires indexed_before or sources")

        if sources is not None and len(sources) == 0:
            return []

        sql = "SELECT id, source_path FROM records WHERE 1 = 1"
        params: List[Any] = []
        if indexed_before is not None:
            sql += " AND indexed_at < ?"
            params.append(indexed_before)

        with self._lock:
            rows = self.conn.execute(sql + " ORDER BY indexed_at, id", params).fetchall()

        if sources is None:
            return [row["id"] for row in rows]
        wanted = set(sources)
        return [row["id"] for row in rows if row["source_path"] in wanted]

    def delete_ids(self, ids: Sequence[str]) -> int:
        """Remove ledger entries. Returns count deleted."""
        deleted = 0
        with self._lock:
            cursor = self.conn.cursor()
            for part in _chunked(list(ids)):
                placeholders = ",".join("?" * len(part))
                cursor.execute(f"DELETE FROM records WHERE id IN ({placeholders})", tuple(part))
                deleted += cursor.rowcount
            self.conn.commit()
        return deleted

    def get(self, record_id: str) -> Optional[IndexRecord]:
        """Get a record by id."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM records WHERE id = ?", (record_id,)
            ).fetchone()
        return IndexRecord(row["id"], row["source_path"], row["indexed_at"]) if row else None

    def ids(self) -> List[str]:
        with self._lock:
            rows = self.conn.execute("SELECT id FROM records").fetchall()
        return [row["id"] for row in rows]

    def list_sources(self) -> List[Dict[str, Any]]:
        """List all sources with record counts."""
        with self._lock:
            rows = self.conn.execute("""
                SELECT source_path, COUNT(*) AS records, MAX(indexed_at) AS last_indexed_at
                FROM records
                GROUP BY source_path
                ORDER BY source_path
            """).fetchall()
        return [dict(row) for row in rows]

    def get_data(self) -> List[Dict[str, Any]]:
        """Enumerate the whole ledger for snapshotting."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, source_path, indexed_at FROM records ORDER BY id"
            ).fetchall()
        return [dict(row) for row in rows]

    def restore(self, records: Sequence[Dict[str, Any]]) -> None:
        """Replace the whole ledger with a dump produced by get_data()."""
        logger.debug("Restoring record manager from backup")
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM records")
            cursor.executemany(
                "INSERT INTO records (id, source_path, indexed_at) VALUES (?, ?, ?)",
                [(r["id"], r["source_path"], float(r["indexed_at"])) for r in records],
            )
            self.conn.commit()
        logger.info(f"Restored record manager with {len(records)} records")

    def __len__(self) -> int:
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]

    def close(self) -> None:
        """Close database connection."""
        self.conn.close()
