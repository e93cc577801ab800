"""Tests for ambient span propagation and node-to-span linking."""

import pytest

from reasongraph.models import SpanRecord
from reasongraph.propagation import (
    ENV_TRACE_SESSION,
    ENV_TRACE_SPAN,
    SpanContext,
    attach_to_span,
)


def done() -> SpanRecord:
    return SpanRecord(model="m", duration_ms=10, input_tokens=1, output_tokens=1)


def test_span_without_work_stays_unlinked(ledger):
    """Test a span with no graph work."""
    span = ledger.start_span("s1")
    completed = ledger.complete_span(span.id, done())
    assert completed.linked_node_id is None
    assert completed.linked_change_id is None


def test_node_created_during_span_is_linked(store, ledger):
    """Test linking a node created while the span is in flight."""
    span = ledger.start_span("s1")
    context = SpanContext(session_id="s1", span_id=span.id)

    node = store.create_node("action", "Edit config")
    linked = attach_to_span(store, ledger, context, node=node)
    assert linked.id == span.id

    ledger.complete_span(span.id, done())
    node = store.get_node(node.id)
    assert node.linked_span_id == span.id
    assert node.linked_change_id == span.change_id
    assert ledger.get_span(span.id).linked_node_id == node.id


def test_edge_is_linked(store, ledger, small_graph):
    """Test linking an edge to the ambient span."""
    goal, decision, _, _ = small_graph
    span = ledger.start_span("s1")
    edge = store.create_edge(goal.id, decision.id, "leads_to")
    attach_to_span(store, ledger, SpanContext("s1", span.id), edge=edge)
    assert store.get_edge(edge.id).linked_change_id == span.change_id


@pytest.mark.parametrize("policy, linked", [("link", True), ("unlinked", False)])
def test_grace_window_after_completion(store, ledger, policy, linked):
    """Test both grace window policies for a just-completed span."""
    span = ledger.start_span("s1")
    ledger.complete_span(span.id, done())
    node = store.create_node("observation", "After the response")

    result = attach_to_span(
        store, ledger, SpanContext("s1", span.id), node=node, grace_window=policy
    )
    assert (result is not None) == linked
    assert (store.get_node(node.id).linked_span_id == span.id) == linked


def test_completed_span_is_stale_once_next_span_starts(store, ledger):
    """A span id inherited from an earlier call no longer links after the next call starts."""
    first = ledger.start_span("s1")
    ledger.complete_span(first.id, done())
    second = ledger.start_span("s1")

    node = store.create_node("observation", "From a long-lived shell")
    assert attach_to_span(store, ledger, SpanContext("s1", first.id), node=node) is None
    assert store.get_node(node.id).linked_span_id is None
    assert ledger.nodes_for_span(first.id) == []

    # The current span still takes the work
    assert attach_to_span(store, ledger, SpanContext("s1", second.id), node=node).id == second.id


def test_in_flight_span_links_while_a_later_one_runs(store, ledger):
    """Overlapping calls: an earlier span that is still in flight keeps accepting links."""
    first = ledger.start_span("s1")
    ledger.start_span("s1")
    node = store.create_node("action", "Parallel work")
    assert attach_to_span(store, ledger, SpanContext("s1", first.id), node=node).id == first.id


def test_unknown_span_is_not_linked(store, ledger):
    """Test an ambient span id the ledger does not know."""
    node = store.create_node("goal", "Orphan")
    assert attach_to_span(store, ledger, SpanContext("s1", 999), node=node) is None
    assert store.get_node(node.id).linked_span_id is None


def test_span_from_other_session_is_not_linked(store, ledger):
    """Test an ambient span that belongs to another session."""
    span = ledger.start_span("other")
    node = store.create_node("goal", "Wrong session")
    assert attach_to_span(store, ledger, SpanContext("s1", span.id), node=node) is None
    assert store.get_node(node.id).linked_span_id is None


def test_no_ambient_span(store, ledger):
    """Test attaching with no span in the context."""
    node = store.create_node("goal", "Untraced")
    assert attach_to_span(store, ledger, SpanContext(), node=node) is None


def test_context_from_environ():
    """Test reading the context from environment variables."""
    context = SpanContext.from_environ({ENV_TRACE_SESSION: "01ABC", ENV_TRACE_SPAN: "12"})
    assert context == SpanContext("01ABC", 12)
    assert context.active


def test_context_ignores_bad_span_id():
    """Test an unparsable span id in the environment."""
    context = SpanContext.from_environ({ENV_TRACE_SESSION: "s", ENV_TRACE_SPAN: "twelve"})
    assert context.span_id is None
    assert not context.active


def test_child_env_overrides_parent():
    """Test building a child environment without touching the parent."""
    base = {"PATH": "/bin", ENV_TRACE_SPAN: "1"}
    env = SpanContext("s", 5).child_env(base)
    assert env[ENV_TRACE_SPAN] == "5"
    assert env[ENV_TRACE_SESSION] == "s"
    assert env["PATH"] == "/bin"
    assert base[ENV_TRACE_SPAN] == "1"  # parent untouched


def test_publish_clears_missing_values():
    """Test that publishing removes variables the context lacks."""
    environ = {ENV_TRACE_SESSION: "old", ENV_TRACE_SPAN: "3"}
    SpanContext("new").publish(environ)
    assert environ == {ENV_TRACE_SESSION: "new"}


def test_with_session_resets_span():
    """Test switching session and span on a frozen context."""
    context = SpanContext("a", 3).with_session("b")
    assert context == SpanContext("b", None)
    assert context.with_span(4).span_id == 4
