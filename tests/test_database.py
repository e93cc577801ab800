"""Tests for the SQLite layer: schema, transactions, lock retry."""

import pytest

from reasongraph.database import SCHEMA_VERSION, Database
from reasongraph.errors import StoreError, StoreLockedError


def test_schema_created(db):
    """Test that every table and the schema version exist."""
    tables = {r["name"] for r in db.query("SELECT name FROM sqlite_master WHERE type = 'table'")}
    for name in (
        "decision_nodes", "decision_edges", "decision_sessions", "session_nodes",
        "command_log", "trace_sessions", "trace_spans", "trace_content", "span_nodes",
        "applied_patches", "schema_version",
    ):
        assert name in tables
    assert db.query_one("SELECT version FROM schema_version")["version"] == SCHEMA_VERSION


def test_reopen_keeps_data(temp_dir):
    """Test reopening a database without re-seeding it."""
    path = temp_dir / "graph.db"
    first = Database(path)
    with first.transaction() as conn:
        conn.execute("INSERT INTO command_log (command, outcome, started_at) VALUES ('x', 'ok', 't')")
    first.close()

    second = Database(path)
    assert len(second.query("SELECT * FROM command_log")) == 1
    assert len(second.query("SELECT * FROM schema_version")) == 1
    second.close()


def test_rollback_on_error(db):
    """Test that an exception rolls the transaction back."""
    with pytest.raises(RuntimeError):
        with db.transaction() as conn:
            conn.execute("INSERT INTO command_log (command, outcome, started_at) VALUES ('x', 'ok', 't')")
            raise RuntimeError("boom")
    assert db.query("SELECT * FROM command_log") == []
    assert not db.in_transaction


def test_nested_transaction_joins_outer(db):
    """Test that an inner transaction commits only with the outer one."""
    with pytest.raises(RuntimeError):
        with db.transaction() as outer:
            with db.transaction() as inner:
                assert inner is outer
                inner.execute(
                    "INSERT INTO command_log (command, outcome, started_at) VALUES ('x', 'ok', 't')"
                )
            # Inner block finished but nothing is committed yet
            raise RuntimeError("abort outer")
    assert db.query("SELECT * FROM command_log") == []


def test_lock_contention_gives_up(temp_dir):
    """Test bounded retries against a held write lock."""
    path = temp_dir / "graph.db"
    holder = Database(path)
    waiter = Database(path, lock_attempts=3, lock_backoff=0.01, busy_timeout_ms=0)
    try:
        with holder.transaction():
            with pytest.raises(StoreLockedError):
                with waiter.transaction():
                    pass
        # Lock released: the waiter can write now
        with waiter.transaction() as conn:
            conn.execute("INSERT INTO command_log (command, outcome, started_at) VALUES ('x', 'ok', 't')")
    finally:
        holder.close()
        waiter.close()


def test_corrupt_file_raises_store_error(temp_dir):
    """Test opening a file that is not SQLite."""
    path = temp_dir / "broken.db"
    path.write_bytes(b"this is not a sqlite database" * 100)
    with pytest.raises(StoreError):
        Database(path)
