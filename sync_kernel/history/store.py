"""
Sync History Store: persisted per-sync reports.

Every sync pass produces one SyncResult record.

Behavioral Contract:
- Records are written once and never modified
- At most history_limit records are kept per source; the oldest are dropped first
- Queryable by id, source, error state and recency
"""

import json
import sqlite3
import threading
from typing import List, Optional

from sync_kernel.models.sync import SyncResult, SyncState


class SyncHistoryStore:
    """
    Bounded sync history.
    SQLite; ":memory:" keeps it per-process.
    """

    def __init__(self, db_path: str = ":memory:", history_limit: int = 10):
        self.db_path = db_path
        self.history_limit = history_limit
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the history table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_history (
                id TEXT PRIMARY KEY,
                source_name TEXT NOT NULL,
                revision TEXT NOT NULL,
                sync_trigger TEXT NOT NULL,
                sync_state TEXT NOT NULL,
                cancelled INTEGER NOT NULL DEFAULT 0,
                applied_total INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                finished_at TEXT NOT NULL,
                record_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_history_source ON sync_history(source_name)
        """)
        self._conn.commit()

    def append(self, result: SyncResult) -> SyncResult:
        """Store a sync result and trim the source's history to the limit."""
        record_json = json.dumps(result.model_dump(mode="json"), default=str)
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO sync_history (
                    id, source_name, revision, sync_trigger, sync_state, cancelled,
                    applied_total, error_count, started_at, finished_at, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.id,
                    result.source_name,
                    result.revision,
                    result.trigger.value,
                    result.sync_state.value,
                    int(result.cancelled),
                    result.applied_total,
                    len(result.errors),
                    result.started_at.isoformat(),
                    result.finished_at.isoformat(),
                    record_json,
                ),
            )
            self._conn.execute(
                """
                DELETE FROM sync_history
                WHERE source_name = ? AND rowid NOT IN (
                    SELECT rowid FROM sync_history WHERE source_name = ?
                    ORDER BY rowid DESC LIMIT ?
                )
                """,
                (result.source_name, result.source_name, self.history_limit),
            )
            self._conn.commit()
        return result

    def _deserialize(self, row: sqlite3.Row) -> SyncResult:
        return SyncResult.model_validate_json(row["record_json"])

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def get_by_id(self, sync_id: str) -> Optional[SyncResult]:
        rows = self._query("SELECT record_json FROM sync_history WHERE id = ?", (sync_id,))
        return self._deserialize(rows[0]) if rows else None

    def query_by_source(self, source_name: str, limit: int = 50) -> List[SyncResult]:
        """Most recent records of one source, oldest first."""
        rows = self._query(
            "SELECT record_json FROM sync_history WHERE source_name = ? ORDER BY rowid DESC LIMIT ?",
            (source_name, limit),
        )
        return [self._deserialize(r) for r in reversed(rows)]

    def latest(self, source_name: str) -> Optional[SyncResult]:
        records = self.query_by_source(source_name, limit=1)
        return records[0] if records else None

    def query_errors(self, source_name: Optional[str] = None, limit: Optional[int] = None) -> List[SyncResult]:
        """Syncs that ended in the Error state, oldest first. ``limit`` keeps the most recent."""
        sql = "SELECT record_json FROM sync_history WHERE sync_state = ?"
        params: list = [SyncState.ERROR.value]
        if source_name:
            sql += " AND source_name = ?"
            params.append(source_name)
        sql += " ORDER BY rowid DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self._query(sql, tuple(params))
        return [self._deserialize(r) for r in reversed(rows)]

    def query_recent(self, limit: int = 50) -> List[SyncResult]:
        rows = self._query(
            "SELECT record_json FROM sync_history ORDER BY rowid DESC LIMIT ?", (limit,)
        )
        return [self._deserialize(r) for r in reversed(rows)]

    def delete_source(self, source_name: str) -> int:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM sync_history WHERE source_name = ?", (source_name,)
            )
            self._conn.commit()
            return cursor.rowcount

    def count(self, source_name: Optional[str] = None) -> int:
        if source_name:
            rows = self._query(
                "SELECT COUNT(*) AS cnt FROM sync_history WHERE source_name = ?", (source_name,)
            )
        else:
            rows = self._query("SELECT COUNT(*) AS cnt FROM sync_history")
        return rows[0]["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
