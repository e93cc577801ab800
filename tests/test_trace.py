"""Tests for the span ledger."""

from datetime import timedelta

import pytest

from reasongraph.errors import SpanNotFoundError
from reasongraph.models import SpanRecord, SpanState, ToolCall, ToolResult, to_iso, utc_now


def record(**overrides) -> SpanRecord:
    fields = dict(
        model="claude-sonnet-4",
        request_id="msg_1",
        stop_reason="end_turn",
        duration_ms=850,
        input_tokens=100,
        output_tokens=20,
        cache_read=5,
        cache_write=1,
        response_preview="Done.",
        response="Done.",
    )
    fields.update(overrides)
    return SpanRecord(**fields)


def test_start_session_generates_id(ledger):
    """Test that a new session gets a ULID."""
    session = ledger.start_session(command="agent run")
    assert len(session.session_id) == 26  # ULID
    assert session.is_active
    assert session.command == "agent run"


def test_start_span_sequences_per_session(ledger):
    """Test per-session span sequence numbers."""
    a1 = ledger.start_span("session-a")
    a2 = ledger.start_span("session-a")
    b1 = ledger.start_span("session-b")
    assert (a1.sequence_num, a2.sequence_num, b1.sequence_num) == (1, 2, 1)
    assert a1.state is SpanState.STARTED
    assert a1.completed_at is None
    assert a1.change_id != a2.change_id


def test_start_span_creates_missing_session(ledger):
    """Test starting a span in a session not yet recorded."""
    ledger.start_span("external-session")
    assert ledger.get_session("external-session").session_id == "external-session"


def test_complete_span(ledger):
    """Test completing a span with its record."""
    span = ledger.start_span("s")
    done = ledger.complete_span(span.id, record())
    assert done.state is SpanState.COMPLETED
    assert done.completed_at is not None
    assert done.model == "claude-sonnet-4"
    assert done.duration_ms == 850
    assert ledger.get_session("s").total_input_tokens == 100


def test_completion_out_of_order_keeps_sequence(ledger):
    """Test completing spans in reverse order."""
    first = ledger.start_span("s")
    second = ledger.start_span("s")
    ledger.complete_span(second.id, record())
    ledger.complete_span(first.id, record())
    assert [s.id for s in ledger.list_spans("s")] == [first.id, second.id]


def test_recomplete_is_last_write_wins(ledger):
    """Test completing a span twice."""
    span = ledger.start_span("s")
    ledger.complete_span(span.id, record(output_tokens=20))
    again = ledger.complete_span(span.id, record(output_tokens=35, stop_reason="max_tokens"))
    assert again.output_tokens == 35
    assert again.stop_reason == "max_tokens"
    # Session totals are not double counted
    assert ledger.get_session("s").total_output_tokens == 35


def test_complete_unknown_span(ledger):
    """Test completing a span that does not exist."""
    with pytest.raises(SpanNotFoundError):
        ledger.complete_span(404, record())


def test_content_rows(ledger):
    """Test the full content rows stored with a span."""
    span = ledger.start_span("s")
    ledger.complete_span(span.id, record(
        thinking="hmm",
        tool_calls=[ToolCall(id="t1", name="Read", input='{"path": "a"}')],
        tool_results=[ToolResult(tool_use_id="t0", content="boom", is_error=True)],
        system_prompt="be brief",
    ))
    kinds = sorted(c.content_type for c in ledger.get_content(span.id))
    assert kinds == ["response", "system", "thinking", "tool_error", "tool_input"]
    tool_input = ledger.get_content(span.id, "tool_input")[0]
    assert tool_input.tool_name == "Read"
    assert tool_input.tool_use_id == "t1"

    # Re-completion replaces content
    ledger.complete_span(span.id, record())
    assert [c.content_type for c in ledger.get_content(span.id)] == ["response"]


def test_end_session(ledger):
    """Test ending a session and its token totals."""
    session = ledger.start_session()
    span = ledger.start_span(session.session_id)
    ledger.complete_span(span.id, record(input_tokens=7, output_tokens=3))
    ended = ledger.end_session(session.session_id, "exit 0")
    assert not ended.is_active
    assert ended.summary == "exit 0"
    assert (ended.total_input_tokens, ended.total_output_tokens) == (7, 3)


def test_link_node_sets_first_link(ledger, store):
    """Test that the first linked node is stored on the span."""
    span = ledger.start_span("s")
    first = store.create_node("action", "First")
    second = store.create_node("action", "Second")
    ledger.link_node(span.id, first.id)
    ledger.link_node(span.id, second.id)

    linked = ledger.get_span(span.id)
    assert linked.linked_node_id == first.id
    assert linked.linked_change_id == first.change_id
    assert [n.id for n in ledger.nodes_for_span(span.id)] == [first.id, second.id]
    assert [s.id for s in ledger.spans_for_node(second.id)] == [span.id]


def test_manual_links(ledger, store):
    """Test linking and unlinking sessions and spans by hand."""
    goal = store.create_node("goal", "Goal")
    session = ledger.start_session()
    span = ledger.start_span(session.session_id)

    assert ledger.link_session_to_node(session.session_id, goal.id).linked_node_id == goal.id
    assert ledger.link_span_to_node(span.id, goal.id).linked_change_id == goal.change_id
    assert [s.session_id for s in ledger.list_sessions(linked_only=True)] == [session.session_id]

    ledger.unlink_session(session.session_id)
    ledger.unlink_span(span.id)
    assert ledger.list_sessions(linked_only=True) == []
    assert ledger.get_span(span.id).linked_node_id is None
    assert ledger.nodes_for_span(span.id) == []


def test_prune(ledger, store, db):
    """Test pruning old sessions, with and without linked ones."""
    old = ledger.start_session()
    span = ledger.start_span(old.session_id)
    ledger.complete_span(span.id, record())
    linked = ledger.start_session()
    ledger.link_session_to_node(linked.session_id, store.create_node("goal", "Keep").id)
    fresh = ledger.start_session()

    long_ago = to_iso(utc_now() - timedelta(days=60))
    with db.transaction() as conn:
        conn.execute(
            "UPDATE trace_sessions SET started_at = ? WHERE session_id IN (?, ?)",
            (long_ago, old.session_id, linked.session_id),
        )

    preview = ledger.prune(30, dry_run=True)
    assert preview == {"sessions": 1, "spans": 1, "content": 1}
    assert len(ledger.list_sessions()) == 3

    assert ledger.prune(30) == preview
    remaining = {s.session_id for s in ledger.list_sessions()}
    assert remaining == {linked.session_id, fresh.session_id}

    assert ledger.prune(30, keep_linked=False)["sessions"] == 1
