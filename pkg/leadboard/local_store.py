"""
Local document backend (SQLite).

Same interface as AppwriteDocuments, so the board can run offline or in tests
without the remote service. Documents are stored as JSON bodies keyed by
(collection, id) and returned with ``$id`` / ``$createdAt`` / ``$updatedAt``
like the remote API.
"""
import sqlite3
import json
import uuid
from pathlib import Path
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone

from .errors import StoreUnavailable, NotFound, StoreConflict


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection in WAL mode."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _sort_key(attribute: str):
    # None sorts first, like the remote ascending order
    def key(doc):
        value = doc.get(attribute)
        return (value is not None, value if value is not None else 0)
    return key


class SqliteDocuments:
    """SQLite-backed document collections."""

    def __init__(self, db_path: str = None):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "leadboard" / "documents.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    body TEXT NOT NULL,  -- JSON object
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (collection, doc_id)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection)")
            conn.commit()

    def _run(self, fn):
        try:
            with _connect(self.db_path) as conn:
                return fn(conn)
        except sqlite3.IntegrityError as e:
            raise StoreConflict(str(e)) from e
        except sqlite3.Error as e:
            raise StoreUnavailable(str(e)) from e

    def list_documents(
        self, collection: str, sort: Optional[str] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """List documents in insertion order, optionally sorted by an attribute (``-`` = desc)."""
        rows = self._run(lambda conn: conn.execute(
            "SELECT * FROM documents WHERE collection = ? ORDER BY seq ASC",
            (collection,),
        ).fetchall())
        docs = [self._row_to_doc(row) for row in rows]
        if sort:
            attribute = sort.lstrip("-")
            docs.sort(key=_sort_key(attribute), reverse=sort.startswith("-"))
        return docs[:limit] if limit else docs

    def get_document(self, collection: str, doc_id: str) -> Dict[str, Any]:
        row = self._run(lambda conn: conn.execute(
            "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        ).fetchone())
        if not row:
            raise NotFound(f"{collection}/{doc_id}")
        return self._row_to_doc(row)

    def create_document(self, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        doc_id = uuid.uuid4().hex[:20]
        now = _now()

        def insert(conn):
            conn.execute(
                "INSERT INTO documents (collection, doc_id, body, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (collection, doc_id, json.dumps(data), now, now),
            )
            conn.commit()

        self._run(insert)
        return self.get_document(collection, doc_id)

    def update_document(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        def update(conn):
            row = conn.execute(
                "SELECT body FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            ).fetchone()
            if not row:
                return False
            body = json.loads(row["body"])
            body.update(data)
            conn.execute(
                "UPDATE documents SET body = ?, updated_at = ? WHERE collection = ? AND doc_id = ?",
                (json.dumps(body), _now(), collection, doc_id),
            )
            conn.commit()
            return True

        if not self._run(update):
            raise NotFound(f"{collection}/{doc_id}")
        return self.get_document(collection, doc_id)

    def delete_document(self, collection: str, doc_id: str) -> None:
        def delete(conn):
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            conn.commit()
            return cursor.rowcount

        if not self._run(delete):
            raise NotFound(f"{collection}/{doc_id}")

    def _row_to_doc(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a remote-style document."""
        doc = json.loads(row["body"])
        doc["$id"] = row["doc_id"]
        doc["$createdAt"] = row["created_at"]
        doc["$updatedAt"] = row["updated_at"]
        return doc
