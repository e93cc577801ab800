"""Active-span propagation between the interceptor and graph-edit commands.

Within a process the current span travels as an explicit ``SpanContext``.
Across a subprocess boundary there is no way to pass it explicitly, so the
context is written into the child's environment and read back once by the
child at startup. These two environment variables are the only ambient
channel; nothing else reads them.
"""

import logging
import os
import sqlite3
from dataclasses import dataclass, replace
from typing import Mapping, MutableMapping

from .errors import ReasonGraphError
from .models import Edge, GraceWindow, Node, SpanState, TraceSpan
from .store import GraphStore
from .trace import SpanLedger

logger = logging.getLogger(__name__)

ENV_TRACE_SESSION = "REASONGRAPH_TRACE_SESSION"
ENV_TRACE_SPAN = "REASONGRAPH_TRACE_SPAN"
ENV_BIN = "REASONGRAPH_BIN"


@dataclass(frozen=True)
class SpanContext:
    """The trace session and span a piece of work happens under."""

    session_id: str | None = None
    span_id: int | None = None

    @classmethod
    def from_environ(cls, env: Mapping[str, str] | None = None) -> "SpanContext":
        env = os.environ if env is None else env
        session_id = env.get(ENV_TRACE_SESSION) or None
        span_id = None
        raw = env.get(ENV_TRACE_SPAN)
        if raw:
            try:
                span_id = int(raw)
            except ValueError:
                logger.warning(f"Ignoring unparsable {ENV_TRACE_SPAN}={raw!r}")
        return cls(session_id=session_id, span_id=span_id)

    def with_span(self, span_id: int | None) -> "SpanContext":
        return replace(self, span_id=span_id)

    def with_session(self, session_id: str | None) -> "SpanContext":
        return replace(self, session_id=session_id, span_id=None)

    def child_env(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Environment for a subprocess spawned under this context."""
        env = dict(os.environ if base is None else base)
        self.publish(env)
        return env

    def publish(self, environ: MutableMapping[str, str] | None = None) -> None:
        """Write this context into an environment mapping (``os.environ`` by default).

        Used by the long-lived interceptor so that whatever the host tool
        spawns next inherits the current span.
        """
        environ = os.environ if environ is None else environ
        for key, value in (
            (ENV_TRACE_SESSION, self.session_id),
            (ENV_TRACE_SPAN, None if self.span_id is None else str(self.span_id)),
        ):
            if value is None:
                environ.pop(key, None)
            else:
                environ[key] = value

    @property
    def active(self) -> bool:
        return self.span_id is not None


def attach_to_span(
    store: GraphStore,
    ledger: SpanLedger,
    context: SpanContext,
    node: Node | None = None,
    edge: Edge | None = None,
    grace_window: GraceWindow = "link",
) -> TraceSpan | None:
    """Link a freshly created node and/or edge to the ambient span.

    Best effort: returns the span when a link was written, otherwise None.
    Never raises, so the mutation that produced the node stands regardless.
    """
    if context.span_id is None or (node is None and edge is None):
        return None

    try:
        span = ledger.find_span(context.span_id)
        if span is None:
            logger.info(f"Ambient span {context.span_id} is unknown; not linking")
            return None
        if context.session_id and span.session_id != context.session_id:
            logger.info(
                f"Ambient span {span.id} belongs to session {span.session_id}, "
                f"not {context.session_id}; not linking"
            )
            return None
        superseded = span.state is SpanState.COMPLETED and ledger.is_superseded(span)
        if not span.state.accepts_links(grace_window, superseded):
            reason = "stale, a later span has started" if superseded else "already completed"
            logger.info(f"Span {span.id} {reason}; leaving new work unlinked")
            return None

        if node is not None:
            store.set_node_link(node.id, span.id, span.change_id)
            ledger.link_node(span.id, node.id)
            logger.debug(f"Linked node #{node.id} to span {span.id}")
        if edge is not None:
            store.set_edge_link(edge.id, span.id, span.change_id)
            logger.debug(f"Linked edge #{edge.id} to span {span.id}")
        return span
    except (ReasonGraphError, sqlite3.Error) as e:
        logger.warning(f"Could not link to span {context.span_id}: {e}")
        return None
