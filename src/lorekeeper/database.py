# src/lorekeeper/database.py
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

from .exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS rag_chunks (
    id TEXT PRIMARY KEY,
    type TEXT,
    node_id TEXT,
    visibility TEXT,
    title TEXT,
    text TEXT,
    tags TEXT,
    source_module TEXT,
    source_ref TEXT,
    anchors TEXT,
    updated_at INTEGER
);

CREATE TABLE IF NOT EXISTS rag_vectors (
    id TEXT PRIMARY KEY,
    embedding TEXT NOT NULL,
    payload TEXT,
    updated_at INTEGER
);

CREATE TABLE IF NOT EXISTS rag_lexical (
    id TEXT PRIMARY KEY,
    text TEXT NOT NULL,
    tags TEXT,
    payload TEXT,
    tokens TEXT,
    length INTEGER,
    updated_at INTEGER
);

CREATE TABLE IF NOT EXISTS rag_nodes (
    id TEXT PRIMARY KEY,
    type TEXT,
    title TEXT,
    visibility TEXT,
    meta TEXT,
    chunk_ids TEXT,
    embedding_key TEXT,
    updated_at INTEGER
);

CREATE TABLE IF NOT EXISTS rag_edges (
    from_id TEXT,
    to_id TEXT,
    type TEXT,
    weight REAL,
    visibility TEXT,
    meta TEXT,
    updated_at INTEGER,
    PRIMARY KEY (from_id, to_id, type)
);
CREATE INDEX IF NOT EXISTS idx_rag_edges_from ON rag_edges(from_id);
CREATE INDEX IF NOT EXISTS idx_rag_edges_to ON rag_edges(to_id);

CREATE TABLE IF NOT EXISTS rag_query_logs (
    id TEXT PRIMARY KEY,
    session_id TEXT,
    turn_number INTEGER,
    timestamp INTEGER NOT NULL,
    mode TEXT NOT NULL,
    action_type TEXT NOT NULL,
    query_text TEXT,
    seeds TEXT,
    weights TEXT,
    semantic_hits_count INTEGER,
    lexical_hits_count INTEGER,
    graph_hits_count INTEGER,
    total_candidates INTEGER,
    final_results_count INTEGER,
    top_results TEXT,
    execution_time_ms INTEGER,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_rag_logs_session ON rag_query_logs(session_id);
CREATE INDEX IF NOT EXISTS idx_rag_logs_timestamp ON rag_query_logs(timestamp);
CREATE INDEX IF NOT EXISTS idx_rag_logs_action ON rag_query_logs(action_type);
"""


class SqliteDatabase:
    """
    Shared SQLite connection for the persistent store variants.

    One connection is shared by every persistent store of a session and
    serialized with a re-entrant lock, so the three retrieval signals may read
    from worker threads. ``transaction()`` nests: only the outermost block
    commits or rolls back, which lets a whole build or delta land atomically.
    """

    def __init__(self, db_path: str = ":memory:", enable_wal: bool = True):
        """
        Open the database and create the schema.

        Args:
            db_path: Database file path, or ":memory:"
            enable_wal: Use write-ahead logging for file databases

        Raises:
            StoreUnavailableError: If the database cannot be opened or initialized
        """
        self.db_path = db_path
        self._lock = threading.RLock()
        self._depth = 0

        try:
            self.conn = sqlite3.connect(
                db_path, check_same_thread=False, isolation_level=None
            )
            self.conn.row_factory = sqlite3.Row
            if enable_wal and db_path != ":memory:":
                self.conn.execute("PRAGMA journal_mode=WAL")
                self.conn.execute("PRAGMA synchronous=NORMAL")
            self.conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StoreUnavailableError(
                f"Could not open knowledge store at {db_path}: {str(e)}"
            ) from e

        logger.info(f"SQLite knowledge store initialized: {db_path}")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside a (possibly nested) transaction."""
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self.conn.execute("BEGIN")
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    self.conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outermost:
                    self.conn.execute("COMMIT")

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, params)

    def executemany(self, sql: str, rows: List[Sequence[Any]]) -> None:
        with self.transaction() as conn:
            conn.executemany(sql, rows)

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def close(self) -> None:
        with self._lock:
            self.conn.close()
        logger.info(f"SQLite knowledge store closed: {self.db_path}")

    def __enter__(self) -> "SqliteDatabase":
        return self

    def __exit__(self, *args) -> None:
        self.close()
