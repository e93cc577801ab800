"""Tests for CLI commands."""

import json
import sys

from click.testing import CliRunner

from reasongraph.cli import cli
from reasongraph.database import Database
from reasongraph.propagation import ENV_TRACE_SESSION, ENV_TRACE_SPAN
from reasongraph.store import GraphStore
from reasongraph.trace import SpanLedger


runner = CliRunner()


def invoke(db_path, *args, **kwargs):
    return runner.invoke(cli, ["--db", str(db_path), *args], **kwargs)


def last_json(result):
    """The JSON document printed on the last line of output."""
    return json.loads(result.output.strip().splitlines()[-1])


def open_store(db_path):
    db = Database(db_path)
    return db, GraphStore(db), SpanLedger(db)


def test_init_creates_data_dir(temp_dir):
    """Test init creating the data directory, and re-running it."""
    db_path = temp_dir / ".reasongraph" / "reasongraph.db"
    result = invoke(db_path, "init")
    assert result.exit_code == 0
    assert db_path.exists()
    assert (temp_dir / ".reasongraph" / "config.yaml").exists()
    assert (temp_dir / ".reasongraph" / "patches").is_dir()

    again = invoke(db_path, "init")
    assert again.exit_code == 0
    assert "Already initialized" in again.output


def test_add_and_list(temp_dir):
    """Test adding nodes and listing them as JSON."""
    db_path = temp_dir / ".reasongraph" / "reasongraph.db"
    result = invoke(db_path, "add", "goal", "Ship v2", "-c", "80", "-b", "release")
    assert result.exit_code == 0
    assert "#1" in result.output

    result = invoke(db_path, "add", "action", "Tag it", "--json", "-b", "main")
    assert last_json(result)["node_type"] == "action"

    result = invoke(db_path, "nodes", "--json")
    titles = [n["title"] for n in json.loads(result.output)]
    assert titles == ["Ship v2", "Tag it"]

    result = invoke(db_path, "nodes", "--branch", "release", "--json")
    assert [n["title"] for n in json.loads(result.output)] == ["Ship v2"]


def test_add_rejects_unknown_type(temp_dir):
    """Test add with a node type outside the vocabulary."""
    result = invoke(temp_dir / "g.db", "add", "idea", "Nope")
    assert result.exit_code != 0


def test_link_and_edges(temp_dir):
    """Test linking two nodes and listing the edge."""
    db_path = temp_dir / "g.db"
    invoke(db_path, "add", "decision", "Pick a cache")
    invoke(db_path, "add", "option", "Redis")
    result = invoke(db_path, "link", "1", "2", "-t", "chosen", "-r", "Already deployed")
    assert result.exit_code == 0

    edges = json.loads(invoke(db_path, "edges", "--json").output)
    assert edges == [
        {"id": 1, "from": 1, "to": 2, "edge_type": "chosen", "rationale": "Already deployed"}
    ]


def test_errors_exit_with_status_one(temp_dir):
    """Test that library errors print a message and exit 1."""
    db_path = temp_dir / "g.db"
    invoke(db_path, "add", "goal", "Only node")

    result = invoke(db_path, "link", "1", "9")
    assert result.exit_code == 1
    assert "Error" in result.output

    invoke(db_path, "add", "action", "Second")
    invoke(db_path, "link", "1", "2")
    duplicate = invoke(db_path, "link", "1", "2")
    assert duplicate.exit_code == 1
    assert "already exists" in duplicate.output


def test_status_and_prompt(temp_dir):
    """Test setting a node's status and recording its prompt."""
    db_path = temp_dir / "g.db"
    invoke(db_path, "add", "action", "Write docs")
    assert invoke(db_path, "status", "1", "completed").exit_code == 0
    assert invoke(db_path, "prompt", "1", "please write docs").exit_code == 0

    db, store, _ = open_store(db_path)
    try:
        node = store.get_node(1)
        assert node.status == "completed"
        assert node.metadata.prompt == "please write docs"
    finally:
        db.close()


def test_commands_are_logged(temp_dir):
    """Test that mutating commands land in the command log."""
    db_path = temp_dir / "g.db"
    invoke(db_path, "add", "goal", "Audited")
    result = invoke(db_path, "commands")
    assert result.exit_code == 0
    assert "created" in result.output

    db, store, _ = open_store(db_path)
    try:
        entry = store.recent_commands(1)[0]
        assert entry.command.endswith("add node_type=goal title=Audited status=pending")
        assert entry.outcome == "created goal #1"
    finally:
        db.close()


def test_graph_dump(temp_dir):
    """Test the JSON graph dump."""
    db_path = temp_dir / "g.db"
    invoke(db_path, "add", "goal", "G")
    data = json.loads(invoke(db_path, "graph").output)
    assert len(data["nodes"]) == 1
    assert data["edges"] == []


def test_diff_round_trip(temp_dir):
    """Test export on one store, status and apply on another."""
    source = temp_dir / "a" / "reasongraph.db"
    target = temp_dir / "b" / "reasongraph.db"
    patch_dir = temp_dir / "shared"
    patch_file = patch_dir / "alice.json"

    invoke(source, "add", "goal", "Faster builds")
    invoke(source, "add", "action", "Cache deps")
    invoke(source, "link", "1", "2")
    result = invoke(source, "diff", "export", "-n", "1-2", "-o", str(patch_file), "--author", "alice")
    assert result.exit_code == 0
    assert json.loads(patch_file.read_text())["author"] == "alice"

    result = invoke(target, "diff", "status", "--path", str(patch_dir))
    assert "1 patch(es) not yet applied" in result.output

    result = invoke(target, "diff", "apply", str(patch_file), "--dry-run")
    assert "(dry run)" in result.output
    assert "+2" in result.output

    result = invoke(target, "diff", "apply", str(patch_file))
    assert result.exit_code == 0
    assert "+2" in result.output

    result = invoke(target, "diff", "apply", str(patch_file))
    assert "2 skipped" in result.output

    result = invoke(target, "diff", "status", "--path", str(patch_dir))
    assert "All patches applied" in result.output

    db, store, _ = open_store(target)
    try:
        assert store.counts()["nodes"] == 2
        assert store.counts()["edges"] == 1
    finally:
        db.close()


def test_diff_export_bad_range(temp_dir):
    """Test export with a reversed node range."""
    result = invoke(temp_dir / "g.db", "diff", "export", "-n", "3-1")
    assert result.exit_code == 2


def test_diff_apply_malformed_patch(temp_dir):
    """Test apply with a file that is not JSON."""
    bad = temp_dir / "bad.json"
    bad.write_text("{")
    result = invoke(temp_dir / "g.db", "diff", "apply", str(bad))
    assert result.exit_code == 1


def test_diff_apply_checks_every_file_first(temp_dir):
    """A malformed later file stops the command before the good one is applied."""
    source = temp_dir / "a.db"
    target = temp_dir / "b.db"
    invoke(source, "add", "goal", "Shared goal")
    good = temp_dir / "good.json"
    invoke(source, "diff", "export", "-o", str(good))
    bad = temp_dir / "bad.json"
    bad.write_text("{")

    result = invoke(target, "diff", "apply", str(good), str(bad))
    assert result.exit_code == 1
    assert "bad.json" in result.output

    db, store, _ = open_store(target)
    try:
        assert store.counts()["nodes"] == 0
        assert store.recent_commands() == []
    finally:
        db.close()


def test_diff_validate_reports_missing_endpoint(temp_dir):
    """Test validate listing an edge whose endpoint is missing."""
    source = temp_dir / "a.db"
    invoke(source, "add", "goal", "Root")
    invoke(source, "add", "action", "Leaf")
    invoke(source, "link", "1", "2")
    patch_file = temp_dir / "leaf.json"
    invoke(source, "diff", "export", "-n", "2", "-o", str(patch_file))

    result = invoke(temp_dir / "b.db", "diff", "validate", str(patch_file))
    assert result.exit_code == 0
    assert "1 edge(s)" in result.output


def test_trace_lifecycle_links_nodes(temp_dir):
    """start, start-span, a node created under the span, then record."""
    db_path = temp_dir / "g.db"
    session_id = last_json(invoke(db_path, "trace", "start", "--command", "agent"))["session_id"]
    span_id = last_json(invoke(db_path, "trace", "start-span", "--session", session_id))["span_id"]

    env = {ENV_TRACE_SESSION: session_id, ENV_TRACE_SPAN: str(span_id)}
    result = invoke(db_path, "add", "action", "Edit settings.py", env=env)
    assert result.exit_code == 0
    assert f"linked to span {span_id}" in result.output

    record = {"model": "claude-sonnet-4", "duration_ms": 900, "input_tokens": 12, "output_tokens": 4,
              "response_preview": "Edited."}
    result = invoke(
        db_path, "trace", "record", "--session", session_id, "--span-id", str(span_id), "--stdin",
        input=json.dumps(record),
    )
    assert result.exit_code == 0
    assert last_json(result) == {"span_id": span_id}

    ended = last_json(invoke(db_path, "trace", "end", "--session", session_id, "--summary", "ok"))
    assert ended["input_tokens"] == 12

    result = invoke(db_path, "trace", "show", str(span_id))
    assert "Edit settings.py" in result.output

    db, store, ledger = open_store(db_path)
    try:
        span = ledger.get_span(span_id)
        node = store.get_node(1)
        assert span.linked_node_id == node.id
        assert node.linked_change_id == span.change_id
    finally:
        db.close()


def test_trace_record_without_started_span(temp_dir):
    """Test record creating the span when none was started."""
    db_path = temp_dir / "g.db"
    result = invoke(db_path, "trace", "record", "--session", "external", "--stdin", input="{}")
    assert result.exit_code == 0
    assert last_json(result) == {"span_id": 1}


def test_trace_record_invalid_json(temp_dir):
    """Test record with unparsable stdin."""
    result = invoke(temp_dir / "g.db", "trace", "record", "--session", "s", "--stdin", input="[")
    assert result.exit_code == 1


def test_trace_link_requires_one_target(temp_dir):
    """Test trace link without --session or --span."""
    db_path = temp_dir / "g.db"
    invoke(db_path, "add", "goal", "G")
    assert invoke(db_path, "trace", "link", "1").exit_code == 2


def test_trace_prune_dry_run(temp_dir):
    """Test prune reporting counts without deleting."""
    db_path = temp_dir / "g.db"
    invoke(db_path, "trace", "start")
    result = invoke(db_path, "trace", "prune", "--days", "0", "--dry-run")
    assert result.exit_code == 0
    assert "Would delete" in result.output


def test_proxy_runs_command_in_session(temp_dir):
    """Test proxy passing the session to the child and its exit code back."""
    db_path = temp_dir / "g.db"
    seen = temp_dir / "seen.txt"
    script = (
        "import os, sys; "
        f"open(sys.argv[1], 'w').write(os.environ['{ENV_TRACE_SESSION}']); "
        "sys.exit(3)"
    )
    result = invoke(db_path, "proxy", "--", sys.executable, "-c", script, str(seen))
    assert result.exit_code == 3

    db, _, ledger = open_store(db_path)
    try:
        session = ledger.list_sessions()[0]
        assert seen.read_text() == session.session_id
        assert session.summary == "exit 3"
        assert not session.is_active
    finally:
        db.close()


def test_proxy_missing_command(temp_dir):
    """Test proxy with a binary that does not exist."""
    result = invoke(temp_dir / "g.db", "proxy", "--", "/nonexistent/agent-binary")
    assert result.exit_code == 1
