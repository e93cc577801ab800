"""SQLite connection, schema and write transactions.

The graph tables, the trace ledger tables, the local command log and the
applied-patch markers all live in one database file. Short-lived CLI
processes share it, so writes take the lock up front with
``BEGIN IMMEDIATE`` and retry briefly when another process holds it.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import StoreError, StoreLockedError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS decision_nodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_id TEXT NOT NULL UNIQUE,
    node_type TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    metadata_json TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    linked_span_id INTEGER,
    linked_change_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_nodes_created ON decision_nodes(created_at);
CREATE INDEX IF NOT EXISTS idx_nodes_type ON decision_nodes(node_type);

CREATE TABLE IF NOT EXISTS decision_edges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_id TEXT NOT NULL UNIQUE,
    from_node_id INTEGER NOT NULL REFERENCES decision_nodes(id),
    to_node_id INTEGER NOT NULL REFERENCES decision_nodes(id),
    from_change_id TEXT NOT NULL,
    to_change_id TEXT NOT NULL,
    edge_type TEXT NOT NULL,
    rationale TEXT,
    created_at TEXT NOT NULL,
    linked_span_id INTEGER,
    linked_change_id TEXT,
    UNIQUE (from_change_id, to_change_id, edge_type)
);

CREATE INDEX IF NOT EXISTS idx_edges_from ON decision_edges(from_node_id);
CREATE INDEX IF NOT EXISTS idx_edges_to ON decision_edges(to_node_id);

CREATE TABLE IF NOT EXISTS decision_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    root_node_id INTEGER REFERENCES decision_nodes(id),
    summary TEXT
);

CREATE TABLE IF NOT EXISTS session_nodes (
    session_id INTEGER NOT NULL REFERENCES decision_sessions(id),
    node_id INTEGER NOT NULL REFERENCES decision_nodes(id),
    added_at TEXT NOT NULL,
    PRIMARY KEY (session_id, node_id)
);

CREATE TABLE IF NOT EXISTS command_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    command TEXT NOT NULL,
    outcome TEXT NOT NULL,
    working_dir TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration_ms INTEGER,
    node_id INTEGER
);

CREATE TABLE IF NOT EXISTS trace_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL UNIQUE,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    working_dir TEXT,
    git_branch TEXT,
    command TEXT,
    summary TEXT,
    total_input_tokens INTEGER NOT NULL DEFAULT 0,
    total_output_tokens INTEGER NOT NULL DEFAULT 0,
    total_cache_read INTEGER NOT NULL DEFAULT 0,
    total_cache_write INTEGER NOT NULL DEFAULT 0,
    linked_node_id INTEGER,
    linked_change_id TEXT
);

CREATE TABLE IF NOT EXISTS trace_spans (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_id TEXT NOT NULL UNIQUE,
    session_id TEXT NOT NULL REFERENCES trace_sessions(session_id),
    sequence_num INTEGER NOT NULL,
    state TEXT NOT NULL DEFAULT 'started',
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration_ms INTEGER,
    model TEXT,
    request_id TEXT,
    stop_reason TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    cache_read INTEGER,
    cache_write INTEGER,
    user_preview TEXT,
    thinking_preview TEXT,
    response_preview TEXT,
    tool_names TEXT,
    linked_node_id INTEGER,
    linked_change_id TEXT,
    UNIQUE (session_id, sequence_num)
);

CREATE INDEX IF NOT EXISTS idx_spans_session ON trace_spans(session_id);

CREATE TABLE IF NOT EXISTS trace_content (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    span_id INTEGER NOT NULL REFERENCES trace_spans(id),
    content_type TEXT NOT NULL,
    tool_name TEXT,
    tool_use_id TEXT,
    content TEXT NOT NULL,
    sequence_num INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_content_span ON trace_content(span_id);

CREATE TABLE IF NOT EXISTS span_nodes (
    span_id INTEGER NOT NULL REFERENCES trace_spans(id),
    node_id INTEGER NOT NULL REFERENCES decision_nodes(id),
    created_at TEXT NOT NULL,
    PRIMARY KEY (span_id, node_id)
);

CREATE TABLE IF NOT EXISTS applied_patches (
    name TEXT PRIMARY KEY,
    applied_at TEXT NOT NULL,
    report TEXT
);
"""


def is_lock_error(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "database is locked" in msg or "database is busy" in msg


class Database:
    """One SQLite file shared by the graph store and the span ledger."""

    def __init__(
        self,
        db_path: Path,
        lock_attempts: int = 5,
        lock_backoff: float = 0.05,
        busy_timeout_ms: int = 1000,
    ):
        """Open (creating if needed) the database.

        Args:
            db_path: Path to reasongraph.db
            lock_attempts: How many times BEGIN IMMEDIATE is tried under contention
            lock_backoff: Initial sleep between attempts, doubled each retry
            busy_timeout_ms: SQLite's own wait before reporting a lock
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_attempts = max(1, lock_attempts)
        self.lock_backoff = lock_backoff
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None
        self._depth = 0
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            try:
                # Autocommit mode; write transactions are opened explicitly
                self._conn = sqlite3.connect(
                    str(self.db_path),
                    timeout=self.busy_timeout_ms / 1000,
                    isolation_level=None,
                    # The interceptor drives the ledger from worker threads, one call at a time
                    check_same_thread=False,
                )
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")
                self._conn.execute("PRAGMA foreign_keys=ON")
            except sqlite3.DatabaseError as e:
                self._conn = None
                raise StoreError(f"Cannot open database {self.db_path}: {e}") from e
        return self._conn

    def _init_db(self):
        """Initialize database schema."""
        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    created_at TEXT DEFAULT (datetime('now'))
                )
            """)
            version = conn.execute("SELECT version FROM schema_version").fetchone()
            if version is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif version[0] > SCHEMA_VERSION:
                logger.warning(
                    f"Schema version {version[0]} is newer than supported ({SCHEMA_VERSION})"
                )
            # executescript would commit our transaction, so run statements one by one
            for statement in SCHEMA.split(";"):
                if statement.strip():
                    conn.execute(statement)

    def _begin(self, conn: sqlite3.Connection):
        """Take the write lock, retrying with bounded exponential backoff."""
        delay = self.lock_backoff
        for attempt in range(1, self.lock_attempts + 1):
            try:
                conn.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as e:
                if not is_lock_error(e):
                    raise StoreError(f"Cannot start transaction: {e}") from e
                if attempt == self.lock_attempts:
                    raise StoreLockedError(
                        f"Database {self.db_path} is locked (gave up after {attempt} attempts)"
                    ) from e
                logger.debug(f"Database locked, retrying in {delay:.2f}s (attempt {attempt})")
                time.sleep(delay)
                delay = min(delay * 2, 2.0)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside one write transaction.

        Nested use joins the outermost transaction, so a store method that
        opens a transaction can be called from inside a patch apply without
        committing early.
        """
        conn = self._get_conn()
        if self._depth > 0:
            self._depth += 1
            try:
                yield conn
            finally:
                self._depth -= 1
            return

        self._begin(conn)
        self._depth = 1
        try:
            yield conn
        except BaseException:
            self._depth = 0
            conn.execute("ROLLBACK")
            raise
        self._depth = 0
        try:
            conn.execute("COMMIT")
        except sqlite3.DatabaseError as e:
            conn.execute("ROLLBACK")
            raise StoreError(f"Commit failed: {e}") from e

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        """Run a read query and return all rows."""
        try:
            return self._get_conn().execute(sql, params).fetchall()
        except sqlite3.DatabaseError as e:
            if isinstance(e, sqlite3.OperationalError) and is_lock_error(e):
                raise StoreLockedError(str(e)) from e
            raise StoreError(f"Query failed: {e}") from e

    def query_one(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def backup(self, dest: Path) -> Path:
        """Copy the database to ``dest`` with the online backup API."""
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        target = sqlite3.connect(str(dest))
        try:
            self._get_conn().backup(target)
        finally:
            target.close()
        logger.info(f"Backed up {self.db_path} to {dest}")
        return dest

    def close(self):
        """Close database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc):
        self.close()
