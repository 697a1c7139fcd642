"""
SQLite repository — durable keyed documents with per-document versions.

Behavioral Contract:
- insert_if_absent is one INSERT ... ON CONFLICT DO NOTHING statement.
- compare_and_set is one UPDATE ... WHERE version = ? statement.
- Listeners are notified only after the statement has been committed.
- sqlite3 errors are re-raised as StorageUnavailable; callers fail closed.
"""

import json
import sqlite3
import threading
from typing import Callable, List, Optional, TypeVar

from blockfighters.errors import StorageUnavailable
from blockfighters.observability.logging import get_logger
from blockfighters.storage.repository import (
    ChangeListener,
    Document,
    ListenerRegistry,
    Unsubscribe,
)

log = get_logger("sqlite_repository")

T = TypeVar("T")


class SQLiteRepository:
    """
    Document store on a single SQLite connection.
    Prototype: SQLite. Production: any store with conditional writes.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._listeners = ListenerRegistry()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the documents table if it doesn't exist."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    body TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                    PRIMARY KEY (collection, key)
                )
            """)
            self._conn.commit()

    def _run(self, operation: str, fn: Callable[[], T]) -> T:
        """Run fn under the connection lock, mapping driver errors."""
        with self._lock:
            try:
                return fn()
            except sqlite3.Error as e:
                log.error("storage_error", operation=operation, error=str(e))
                try:
                    self._conn.rollback()
                except sqlite3.Error as rollback_error:
                    log.warning("rollback_failed", error=str(rollback_error))
                raise StorageUnavailable(f"{operation} failed: {e}") from e

    def _deserialize(self, row: sqlite3.Row) -> Document:
        return Document(
            key=row["key"],
            body=json.loads(row["body"]),
            version=row["version"],
        )

    def get(self, collection: str, key: str) -> Optional[Document]:
        def fn():
            return self._conn.execute(
                "SELECT key, body, version FROM documents WHERE collection = ? AND key = ?",
                (collection, key),
            ).fetchone()

        row = self._run("get", fn)
        return self._deserialize(row) if row else None

    def list(self, collection: str) -> List[Document]:
        def fn():
            return self._conn.execute(
                "SELECT key, body, version FROM documents WHERE collection = ? ORDER BY rowid",
                (collection,),
            ).fetchall()

        return [self._deserialize(r) for r in self._run("list", fn)]

    def insert_if_absent(self, collection: str, key: str, body: dict) -> bool:
        def fn():
            cur = self._conn.execute(
                """
                INSERT INTO documents (collection, key, body, version)
                VALUES (?, ?, ?, 1)
                ON CONFLICT (collection, key) DO NOTHING
                """,
                (collection, key, json.dumps(body, default=str)),
            )
            self._conn.commit()
            return cur.rowcount == 1

        inserted = self._run("insert_if_absent", fn)
        if inserted:
            self._listeners.notify(collection)
        return inserted

    def compare_and_set(
        self, collection: str, key: str, expected_version: int, body: dict
    ) -> bool:
        def fn():
            cur = self._conn.execute(
                """
                UPDATE documents
                SET body = ?, version = version + 1, updated_at = datetime('now')
                WHERE collection = ? AND key = ? AND version = ?
                """,
                (json.dumps(body, default=str), collection, key, expected_version),
            )
            self._conn.commit()
            return cur.rowcount == 1

        swapped = self._run("compare_and_set", fn)
        if swapped:
            self._listeners.notify(collection)
        return swapped

    def put(self, collection: str, key: str, body: dict) -> Document:
        def fn():
            self._conn.execute(
                """
                INSERT INTO documents (collection, key, body, version)
                VALUES (?, ?, ?, 1)
                ON CONFLICT (collection, key) DO UPDATE SET
                    body = excluded.body,
                    version = documents.version + 1,
                    updated_at = datetime('now')
                """,
                (collection, key, json.dumps(body, default=str)),
            )
            self._conn.commit()
            return self._conn.execute(
                "SELECT key, body, version FROM documents WHERE collection = ? AND key = ?",
                (collection, key),
            ).fetchone()

        row = self._run("put", fn)
        self._listeners.notify(collection)
        return self._deserialize(row)

    def delete(self, collection: str, key: str) -> bool:
        def fn():
            cur = self._conn.execute(
                "DELETE FROM documents WHERE collection = ? AND key = ?",
                (collection, key),
            )
            self._conn.commit()
            return cur.rowcount == 1

        deleted = self._run("delete", fn)
        if deleted:
            self._listeners.notify(collection)
        return deleted

    def subscribe(self, collection: str, listener: ChangeListener) -> Unsubscribe:
        return self._listeners.add(collection, listener)

    def count(self, collection: str) -> int:
        """Number of documents in a collection."""
        def fn():
            return self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM documents WHERE collection = ?",
                (collection,),
            ).fetchone()

        return self._run("count", fn)["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
