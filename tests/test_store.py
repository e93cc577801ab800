"""Tests for the graph store."""

from datetime import timedelta

import pytest

from reasongraph.errors import DuplicateEdgeError, InvalidValueError, NodeNotFoundError
from reasongraph.identity import local_to_change, new_change_id, resolve
from reasongraph.models import NodeMetadata, build_metadata, utc_now


def test_new_change_ids_are_unique():
    """Change-ids are random UUIDs."""
    ids = {new_change_id() for _ in range(1000)}
    assert len(ids) == 1000
    assert all(len(i) == 36 for i in ids)


def test_create_node_assigns_both_ids(store):
    """Test that a new node gets a local id and a change-id."""
    node = store.create_node("goal", "Ship the release", "Before Friday")
    assert node.id == 1
    assert len(node.change_id) == 36
    assert node.status == "pending"
    assert node.description == "Before Friday"
    assert resolve(store.db, node.change_id) == node.id
    assert local_to_change(store.db, node.id) == node.change_id


def test_resolve_unknown_is_none(store):
    """Missing change-ids resolve to None, not an error."""
    assert resolve(store.db, new_change_id()) is None
    assert local_to_change(store.db, 999) is None


def test_create_node_rejects_unknown_type(store):
    """Test creating a node with an unknown type."""
    with pytest.raises(InvalidValueError):
        store.create_node("idea", "Not a real type")


def test_create_node_with_metadata(store):
    """Test storing structured metadata on a node."""
    node = store.create_node(
        "action",
        "Add caching",
        metadata=NodeMetadata(confidence=140, files="a.py, b.py", branch="feature/cache"),
    )
    meta = node.metadata
    assert meta.confidence == 100  # clamped
    assert meta.files == ["a.py", "b.py"]
    assert node.branch == "feature/cache"


def test_build_metadata_empty_is_none():
    """Test that empty metadata is stored as NULL."""
    assert build_metadata() is None
    assert '"commit": "abc123"' in build_metadata(commit="abc123")


def test_metadata_keeps_unknown_keys():
    """Test that metadata keys from newer peers survive."""
    meta = NodeMetadata.from_json('{"branch": "main", "reviewer": "sam"}')
    assert meta.branch == "main"
    assert '"reviewer": "sam"' in meta.to_json()


def test_metadata_tolerates_garbage():
    """Test parsing metadata that is not a JSON object."""
    assert NodeMetadata.from_json("not json").is_empty()
    assert NodeMetadata.from_json("[1, 2]").is_empty()


def test_create_edge(store, small_graph):
    """Test creating an edge between existing nodes."""
    goal, decision, option, edge = small_graph
    assert edge.from_node_id == decision.id
    assert edge.to_node_id == option.id
    assert edge.from_change_id == decision.change_id
    assert edge.to_change_id == option.change_id
    assert edge.edge_type == "chosen"
    assert edge.key == (decision.change_id, option.change_id, "chosen")


def test_create_edge_missing_endpoint(store):
    """Test creating an edge to a node that does not exist."""
    node = store.create_node("goal", "Lonely")
    with pytest.raises(NodeNotFoundError):
        store.create_edge(node.id, 42, "leads_to")
    assert store.list_edges() == []


def test_duplicate_edge_is_rejected(store, small_graph):
    """Test the uniqueness of the edge triple."""
    _, decision, option, _ = small_graph
    with pytest.raises(DuplicateEdgeError):
        store.create_edge(decision.id, option.id, "chosen")
    # A different type between the same nodes is fine
    store.create_edge(decision.id, option.id, "leads_to")
    assert len(store.list_edges()) == 2


def test_list_nodes_ordered_by_creation(store):
    """Test node listing order."""
    for title in ("first", "second", "third"):
        store.create_node("observation", title)
    assert [n.title for n in store.list_nodes()] == ["first", "second", "third"]
    assert [n.title for n in store.list_nodes(reverse=True)] == ["third", "second", "first"]


def test_list_nodes_filters(store):
    """Test filtering nodes by type, branch and id."""
    store.create_node("goal", "Main goal", metadata={"branch": "main"})
    store.create_node("action", "Feature work", metadata={"branch": "feature-x"})
    store.create_node("action", "More feature work", metadata={"branch": "feature-x"})

    assert [n.title for n in store.list_nodes(node_type="goal")] == ["Main goal"]
    assert len(store.list_nodes(branch="feature-x")) == 2
    assert store.list_nodes(branch="nope") == []
    assert len(store.list_nodes(ids=[1, 3])) == 2
    assert store.list_nodes(ids=[]) == []


def test_list_nodes_time_window(store):
    """Test filtering nodes by creation time."""
    store.create_node("goal", "Now")
    now = utc_now()
    assert len(store.list_nodes(since=now - timedelta(minutes=1))) == 1
    assert store.list_nodes(since=now + timedelta(minutes=1)) == []
    assert store.list_nodes(until=now - timedelta(minutes=1)) == []


def test_list_edges_touching_nodes(store, small_graph):
    """Test listing edges that touch given nodes."""
    goal, decision, option, _ = small_graph
    store.create_edge(goal.id, decision.id, "leads_to")
    assert len(store.list_edges(node_ids=[decision.id])) == 2
    assert len(store.list_edges(node_ids=[goal.id])) == 1
    assert len(store.list_edges(edge_type="chosen")) == 1


def test_children_and_parents(store, small_graph):
    """Test walking edges in both directions."""
    goal, decision, option, _ = small_graph
    store.create_edge(goal.id, decision.id, "leads_to")
    assert [n.id for n in store.children(goal.id)] == [decision.id]
    assert [n.id for n in store.parents(option.id)] == [decision.id]


def test_update_status(store):
    """Test changing a node's status."""
    node = store.create_node("action", "Write docs")
    updated = store.update_status(node.id, "completed")
    assert updated.status == "completed"
    assert updated.updated_at >= node.updated_at


def test_update_status_missing_node(store):
    """Test updating a node that does not exist."""
    with pytest.raises(NodeNotFoundError):
        store.update_status(7, "active")


def test_update_metadata_merges(store):
    """Test merging new metadata into existing fields."""
    node = store.create_node("action", "Refactor", metadata={"branch": "main", "confidence": 60})
    updated = store.update_metadata(node.id, prompt="please refactor", confidence=None)
    meta = updated.metadata
    assert meta.prompt == "please refactor"
    assert meta.branch == "main"
    assert meta.confidence == 60


def test_mutations_write_command_log(store):
    """Test that each mutation writes one log row."""
    node = store.create_node("goal", "Audit me")
    store.update_status(node.id, "active")
    entries = store.recent_commands()
    assert len(entries) == 2
    assert entries[0].command == "update_status"
    assert entries[1].node_id == node.id
    assert entries[1].outcome.startswith("created goal")


def test_failed_mutation_is_logged(store):
    """Test that a failed mutation is logged as an error."""
    with pytest.raises(NodeNotFoundError):
        store.update_status(99, "active")
    entry = store.recent_commands(1)[0]
    assert entry.outcome.startswith("error:")


def test_command_text_is_recorded(db):
    """Test that the store's command text is stored in the log."""
    from reasongraph.store import GraphStore

    store = GraphStore(db, command="reasongraph add goal")
    store.create_node("goal", "From the CLI")
    assert store.recent_commands(1)[0].command == "reasongraph add goal"


def test_graph_sessions(store):
    """Test starting, filling and ending a graph session."""
    goal = store.create_node("goal", "Session root")
    session = store.start_session("morning", root_node_id=goal.id)
    store.add_node_to_session(session.id, goal.id)
    store.add_node_to_session(session.id, goal.id)  # idempotent
    assert [n.id for n in store.session_nodes(session.id)] == [goal.id]

    ended = store.end_session(session.id, "done")
    assert ended.ended_at is not None
    assert ended.summary == "done"
    assert len(store.list_sessions()) == 1


def test_latest_node(store):
    """Test fetching the most recent node of a type."""
    assert store.latest_node("goal") is None
    store.create_node("goal", "Old goal")
    store.create_node("goal", "New goal")
    assert store.latest_node("goal").title == "New goal"


def test_backup(store, small_graph, temp_dir):
    """Test copying the database with the backup API."""
    from reasongraph.database import Database
    from reasongraph.store import GraphStore

    dest = store.backup(temp_dir / "backups" / "copy.db")
    copy = Database(dest)
    try:
        assert GraphStore(copy).counts()["nodes"] == 3
    finally:
        copy.close()
