"""Shared test fixtures and helpers for reasongraph tests."""

import logging
import tempfile
from pathlib import Path

import pytest

from reasongraph.database import Database
from reasongraph.store import GraphStore
from reasongraph.trace import SpanLedger


# --- Fixtures ---


@pytest.fixture(autouse=True)
def restore_logging():
    """CLI invocations reconfigure the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db(temp_dir):
    """Provide a fresh database in a .reasongraph directory."""
    database = Database(temp_dir / ".reasongraph" / "reasongraph.db")
    yield database
    database.close()


@pytest.fixture
def store(db):
    return GraphStore(db)


@pytest.fixture
def ledger(db):
    return SpanLedger(db)


@pytest.fixture
def other_store(temp_dir):
    """A second, independent store (a peer machine)."""
    database = Database(temp_dir / "peer" / "reasongraph.db")
    yield GraphStore(database)
    database.close()


@pytest.fixture
def small_graph(store):
    """A goal, a decision and an option, with the option chosen.

    Returns (goal, decision, option, edge).
    """
    goal = store.create_node("goal", "Speed up the test suite")
    decision = store.create_node("decision", "Which runner to use")
    option = store.create_node("option", "Run tests in parallel")
    edge = store.create_edge(decision.id, option.id, "chosen", "Fastest option")
    return goal, decision, option, edge
