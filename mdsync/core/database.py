"""Database operations for mdsync.

This module provides SQLite-backed implementations of the DocumentStore
and CursorLedger interfaces. One database file holds one tenant's
documents and its change feed.

Atomicity rules:
- compare_and_swap_update is a single UPDATE guarded by the expected
  version; a zero row count means another writer got there first.
- create_at relies on the primary key, so two racing creates cannot both
  succeed.
- append_change uses an AUTOINCREMENT key, so positions are strictly
  increasing and never reused.

The connection is shared between request threads and serialized with a
lock; every write commits before the lock is released, so a cursor
position is never handed out before its document write is visible.

CRITICAL: This module must have NO Flask dependencies.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from .models import ChangeRecord, DocumentRecord, SyncMeta
from .store import CursorLedger, DocumentStore, StorageError
from .timestamp_utils import utc_now_iso

logger = logging.getLogger(__name__)

__all__ = ["Database", "SqliteDocumentStore", "SqliteCursorLedger"]

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    identity TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    title TEXT,
    content TEXT NOT NULL DEFAULT '',
    sync_meta TEXT NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_changes (
    cursor INTEGER PRIMARY KEY AUTOINCREMENT,
    doc_identity TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_changes_identity ON sync_changes(doc_identity);
"""


class Database:
    """Owns the SQLite connection and schema.

    Attributes:
        db_path: Path of the database file, or ":memory:"
    """

    def __init__(self, db_path: Union[Path, str]) -> None:
        """Open (and if needed create) the database.

        Args:
            db_path: Path to the SQLite database file, or ':memory:' for in-memory
        """
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database at {self.db_path}: {e}") from e
        logger.info(f"Opened database at {self.db_path}")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements under the connection lock, committing on success.

        sqlite3 errors are re-raised as StorageError.
        """
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as e:
                logger.error(f"Database error: {e}")
                raise StorageError(str(e)) from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
        logger.info("Closed database connection")

    def document_store(self) -> "SqliteDocumentStore":
        return SqliteDocumentStore(self)

    def cursor_ledger(self) -> "SqliteCursorLedger":
        return SqliteCursorLedger(self)


def _row_to_document(row: sqlite3.Row) -> DocumentRecord:
    return DocumentRecord(
        identity=row["identity"],
        version=row["version"],
        content=row["content"],
        sync_meta=SyncMeta.from_dict(json.loads(row["sync_meta"])),
        title=row["title"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SqliteDocumentStore(DocumentStore):
    """DocumentStore backed by the documents table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def read_by_identity(self, identity: str) -> Optional[DocumentRecord]:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE identity = ?", (identity,)
            ).fetchone()
        return _row_to_document(row) if row else None

    def create_at(
        self,
        identity: str,
        content: str,
        sync_meta: SyncMeta,
        title: Optional[str] = None,
        version: int = 1,
    ) -> Optional[DocumentRecord]:
        now = utc_now_iso()
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO documents
                        (identity, version, title, content, sync_meta, deleted, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        identity,
                        version,
                        title,
                        content,
                        json.dumps(sync_meta.to_dict()),
                        int(sync_meta.deleted),
                        now,
                        now,
                    ),
                )
        except sqlite3.IntegrityError:
            logger.info(f"Create of {identity} lost a race with another writer")
            return None

        return DocumentRecord(
            identity=identity,
            version=version,
            content=content,
            sync_meta=sync_meta,
            title=title,
            created_at=now,
            updated_at=now,
        )

    def compare_and_swap_update(
        self,
        identity: str,
        expected_version: int,
        new_content: str,
        new_sync_meta: SyncMeta,
        new_version: int,
        title: Optional[str] = None,
    ) -> Optional[DocumentRecord]:
        now = utc_now_iso()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE documents
                SET version = ?, content = ?, sync_meta = ?, deleted = ?,
                    title = COALESCE(?, title), updated_at = ?
                WHERE identity = ? AND version = ?
                """,
                (
                    new_version,
                    new_content,
                    json.dumps(new_sync_meta.to_dict()),
                    int(new_sync_meta.deleted),
                    title,
                    now,
                    identity,
                    expected_version,
                ),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM documents WHERE identity = ?", (identity,)
            ).fetchone()
        return _row_to_document(row)

    def list_non_deleted_under_namespace(self, namespace: str) -> List[DocumentRecord]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM documents
                WHERE deleted = 0 AND substr(identity, 1, ?) = ?
                ORDER BY identity
                """,
                (len(namespace), namespace),
            ).fetchall()
        return [_row_to_document(row) for row in rows]

    def count_documents(self, include_deleted: bool = False) -> int:
        """Count stored documents."""
        query = "SELECT COUNT(*) FROM documents"
        if not include_deleted:
            query += " WHERE deleted = 0"
        with self.db.transaction() as conn:
            return conn.execute(query).fetchone()[0]


class SqliteCursorLedger(CursorLedger):
    """CursorLedger backed by the sync_changes table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def append_change(self, identity: str) -> int:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO sync_changes (doc_identity, created_at) VALUES (?, ?)",
                (identity, utc_now_iso()),
            )
            position = cursor.lastrowid
        logger.debug(f"Cursor advanced to {position} for {identity}")
        return position

    def current_cursor(self) -> int:
        with self.db.transaction() as conn:
            row = conn.execute("SELECT MAX(cursor) FROM sync_changes").fetchone()
        return row[0] or 0

    def changes_since(self, cursor: int) -> List[ChangeRecord]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT cursor, doc_identity FROM sync_changes WHERE cursor > ? ORDER BY cursor",
                (cursor,),
            ).fetchall()
        return [
            ChangeRecord(document_identity=row["doc_identity"], cursor_position=row["cursor"])
            for row in rows
        ]


def open_storage(
    db_path: Union[Path, str],
) -> Tuple[Database, SqliteDocumentStore, SqliteCursorLedger]:
    """Open a database and return (db, document_store, cursor_ledger)."""
    db = Database(db_path)
    return db, db.document_store(), db.cursor_ledger()
