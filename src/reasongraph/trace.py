"""Span ledger: trace sessions, spans and captured content.

A trace session is one run of an external tool. Each outbound model
request within it is a span. Spans are created in two phases: a cheap
``start_span`` before the request leaves (so subprocesses can see its id)
and a ``complete_span`` once the response stream has been parsed.
"""

import logging
import os
import sqlite3
from datetime import timedelta

from ulid import ULID

from .database import Database
from .errors import NodeNotFoundError, ReasonGraphError, SpanNotFoundError
from .identity import local_to_change, new_change_id
from .models import (
    Node,
    SpanRecord,
    SpanState,
    TraceContent,
    TraceSession,
    TraceSpan,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """Generate a sortable trace session id."""
    return str(ULID())


class SpanLedger:
    """Trace sessions and spans, stored alongside the graph."""

    def __init__(self, db: Database):
        self.db = db

    # ─────────────────────────────────────────────────────────────────────────
    # Sessions
    # ─────────────────────────────────────────────────────────────────────────

    def _insert_session(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        working_dir: str | None = None,
        git_branch: str | None = None,
        command: str | None = None,
    ):
        conn.execute(
            """
            INSERT OR IGNORE INTO trace_sessions
                (session_id, started_at, working_dir, git_branch, command)
            VALUES (?, ?, ?, ?, ?)
            """,
            (session_id, to_iso(utc_now()), working_dir, git_branch, command),
        )

    def start_session(
        self,
        session_id: str | None = None,
        working_dir: str | None = None,
        git_branch: str | None = None,
        command: str | None = None,
    ) -> TraceSession:
        """Create a trace session (a fresh ULID id unless one is supplied)."""
        session_id = session_id or generate_session_id()
        with self.db.transaction() as conn:
            self._insert_session(
                conn, session_id, working_dir or os.getcwd(), git_branch, command
            )
        logger.info(f"Started trace session {session_id}")
        return self.get_session(session_id)

    def ensure_session(self, session_id: str) -> TraceSession:
        """Return the session, creating a bare row if an outer process named it first."""
        with self.db.transaction() as conn:
            self._insert_session(conn, session_id, os.getcwd())
        return self.get_session(session_id)

    def _recompute_totals(self, conn: sqlite3.Connection, session_id: str):
        # Totals are derived from spans so re-completing a span never double counts
        conn.execute(
            """
            UPDATE trace_sessions SET
                total_input_tokens = (SELECT COALESCE(SUM(input_tokens), 0)
                                      FROM trace_spans WHERE session_id = ?),
                total_output_tokens = (SELECT COALESCE(SUM(output_tokens), 0)
                                       FROM trace_spans WHERE session_id = ?),
                total_cache_read = (SELECT COALESCE(SUM(cache_read), 0)
                                    FROM trace_spans WHERE session_id = ?),
                total_cache_write = (SELECT COALESCE(SUM(cache_write), 0)
                                     FROM trace_spans WHERE session_id = ?)
            WHERE session_id = ?
            """,
            (session_id,) * 5,
        )

    def end_session(self, session_id: str, summary: str | None = None) -> TraceSession:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE trace_sessions SET ended_at = ?, summary = COALESCE(?, summary) "
                "WHERE session_id = ?",
                (to_iso(utc_now()), summary, session_id),
            )
            if cur.rowcount == 0:
                raise ReasonGraphError(f"Trace session not found: {session_id}")
            self._recompute_totals(conn, session_id)
        logger.info(f"Ended trace session {session_id}")
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> TraceSession:
        row = self.db.query_one(
            "SELECT * FROM trace_sessions WHERE session_id = ?", (session_id,)
        )
        if row is None:
            raise ReasonGraphError(f"Trace session not found: {session_id}")
        return TraceSession.model_validate(dict(row))

    def list_sessions(self, limit: int = 20, linked_only: bool = False) -> list[TraceSession]:
        """Most recent sessions first."""
        sql = "SELECT * FROM trace_sessions"
        if linked_only:
            sql += " WHERE linked_node_id IS NOT NULL"
        sql += " ORDER BY started_at DESC, id DESC LIMIT ?"
        return [TraceSession.model_validate(dict(r)) for r in self.db.query(sql, (limit,))]

    # ─────────────────────────────────────────────────────────────────────────
    # Spans
    # ─────────────────────────────────────────────────────────────────────────

    def start_span(self, session_id: str) -> TraceSpan:
        """Persist a started span and return it.

        The sequence number is assigned here, inside the write lock, so spans
        within a session are totally ordered by start even when they complete
        out of order.
        """
        with self.db.transaction() as conn:
            self._insert_session(conn, session_id, os.getcwd())
            row = conn.execute(
                "SELECT COALESCE(MAX(sequence_num), 0) AS seq FROM trace_spans WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            cur = conn.execute(
                """
                INSERT INTO trace_spans (change_id, session_id, sequence_num, state, started_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    new_change_id(),
                    session_id,
                    row["seq"] + 1,
                    SpanState.STARTED.value,
                    to_iso(utc_now()),
                ),
            )
            span_id = cur.lastrowid
        logger.debug(f"Started span {span_id} in session {session_id}")
        return self.get_span(span_id)

    def complete_span(self, span_id: int, record: SpanRecord) -> TraceSpan:
        """Fill in a span from a finalized record.

        Completing an already-completed span overwrites it (last write wins);
        a retried request can race a delayed completion.
        """
        span = self.get_span(span_id)
        if span.state is SpanState.COMPLETED:
            logger.info(f"Span {span_id} already completed; overwriting with newer record")

        with self.db.transaction() as conn:
            conn.execute(
                """
                UPDATE trace_spans SET
                    state = ?, completed_at = ?, duration_ms = ?, model = COALESCE(?, model),
                    request_id = ?, stop_reason = ?, input_tokens = ?, output_tokens = ?,
                    cache_read = ?, cache_write = ?, user_preview = ?, thinking_preview = ?,
                    response_preview = ?, tool_names = ?
                WHERE id = ?
                """,
                (
                    SpanState.COMPLETED.value,
                    to_iso(utc_now()),
                    record.duration_ms,
                    record.model,
                    record.request_id,
                    record.stop_reason,
                    record.input_tokens,
                    record.output_tokens,
                    record.cache_read,
                    record.cache_write,
                    record.user_preview,
                    record.thinking_preview,
                    record.response_preview,
                    record.tool_names,
                    span_id,
                ),
            )
            conn.execute("DELETE FROM trace_content WHERE span_id = ?", (span_id,))
            self._store_content(conn, span_id, record)
            self._recompute_totals(conn, span.session_id)

        return self.get_span(span_id)

    def _store_content(self, conn: sqlite3.Connection, span_id: int, record: SpanRecord):
        rows: list[tuple[str, str, str | None, str | None]] = []
        if record.thinking:
            rows.append(("thinking", record.thinking, None, None))
        if record.response:
            rows.append(("response", record.response, None, None))
        for call in record.tool_calls or []:
            if call.input:
                rows.append(("tool_input", call.input, call.name, call.id))
            if call.output:
                rows.append(("tool_output", call.output, call.name, call.id))
        if record.system_prompt:
            rows.append(("system", record.system_prompt, None, None))
        if record.tool_definitions:
            names = ", ".join(d.name for d in record.tool_definitions)
            rows.append(("tool_definitions", names, None, None))
        for result in record.tool_results or []:
            kind = "tool_error" if result.is_error else "tool_output"
            rows.append((kind, result.content, None, result.tool_use_id))

        per_type: dict[str, int] = {}
        for content_type, content, tool_name, tool_use_id in rows:
            seq = per_type.get(content_type, 0)
            per_type[content_type] = seq + 1
            conn.execute(
                """
                INSERT INTO trace_content
                    (span_id, content_type, tool_name, tool_use_id, content, sequence_num)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (span_id, content_type, tool_name, tool_use_id, content, seq),
            )

    def get_span(self, span_id: int) -> TraceSpan:
        row = self.db.query_one("SELECT * FROM trace_spans WHERE id = ?", (span_id,))
        if row is None:
            raise SpanNotFoundError(span_id)
        return TraceSpan.model_validate(dict(row))

    def find_span(self, span_id: int) -> TraceSpan | None:
        try:
            return self.get_span(span_id)
        except SpanNotFoundError:
            return None

    def is_superseded(self, span: TraceSpan) -> bool:
        """Whether a later span has started in the same session."""
        row = self.db.query_one(
            "SELECT 1 FROM trace_spans WHERE session_id = ? AND sequence_num > ? LIMIT 1",
            (span.session_id, span.sequence_num),
        )
        return row is not None

    def list_spans(self, session_id: str) -> list[TraceSpan]:
        """Spans of a session in start order."""
        rows = self.db.query(
            "SELECT * FROM trace_spans WHERE session_id = ? ORDER BY sequence_num",
            (session_id,),
        )
        return [TraceSpan.model_validate(dict(r)) for r in rows]

    def get_content(self, span_id: int, content_type: str | None = None) -> list[TraceContent]:
        sql = "SELECT * FROM trace_content WHERE span_id = ?"
        params: list = [span_id]
        if content_type:
            sql += " AND content_type = ?"
            params.append(content_type)
        sql += " ORDER BY content_type, sequence_num"
        return [TraceContent.model_validate(dict(r)) for r in self.db.query(sql, params)]

    # ─────────────────────────────────────────────────────────────────────────
    # Linking
    # ─────────────────────────────────────────────────────────────────────────

    def _node_change_id(self, node_id: int) -> str:
        change_id = local_to_change(self.db, node_id)
        if change_id is None:
            raise NodeNotFoundError(node_id)
        return change_id

    def link_node(self, span_id: int, node_id: int) -> None:
        """Record that a node was created while a span was ambient.

        The first node linked also becomes the span's own ``linked_node_id``.
        """
        node_change_id = self._node_change_id(node_id)
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO span_nodes (span_id, node_id, created_at) VALUES (?, ?, ?)",
                (span_id, node_id, to_iso(utc_now())),
            )
            conn.execute(
                """
                UPDATE trace_spans SET linked_node_id = ?, linked_change_id = ?
                WHERE id = ? AND linked_node_id IS NULL
                """,
                (node_id, node_change_id, span_id),
            )

    def nodes_for_span(self, span_id: int) -> list[Node]:
        rows = self.db.query(
            """
            SELECT n.* FROM decision_nodes n
            JOIN span_nodes s ON s.node_id = n.id
            WHERE s.span_id = ?
            ORDER BY n.created_at, n.id
            """,
            (span_id,),
        )
        return [Node.model_validate(dict(r)) for r in rows]

    def spans_for_node(self, node_id: int) -> list[TraceSpan]:
        rows = self.db.query(
            """
            SELECT t.* FROM trace_spans t
            JOIN span_nodes s ON s.span_id = t.id
            WHERE s.node_id = ?
            ORDER BY t.started_at, t.id
            """,
            (node_id,),
        )
        return [TraceSpan.model_validate(dict(r)) for r in rows]

    def link_session_to_node(self, session_id: str, node_id: int) -> TraceSession:
        change_id = self._node_change_id(node_id)
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE trace_sessions SET linked_node_id = ?, linked_change_id = ? "
                "WHERE session_id = ?",
                (node_id, change_id, session_id),
            )
            if cur.rowcount == 0:
                raise ReasonGraphError(f"Trace session not found: {session_id}")
        return self.get_session(session_id)

    def link_span_to_node(self, span_id: int, node_id: int) -> TraceSpan:
        """Manually point a span at a node, replacing any automatic link."""
        change_id = self._node_change_id(node_id)
        self.get_span(span_id)
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE trace_spans SET linked_node_id = ?, linked_change_id = ? WHERE id = ?",
                (node_id, change_id, span_id),
            )
            conn.execute(
                "INSERT OR IGNORE INTO span_nodes (span_id, node_id, created_at) VALUES (?, ?, ?)",
                (span_id, node_id, to_iso(utc_now())),
            )
        return self.get_span(span_id)

    def unlink_session(self, session_id: str) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE trace_sessions SET linked_node_id = NULL, linked_change_id = NULL "
                "WHERE session_id = ?",
                (session_id,),
            )

    def unlink_span(self, span_id: int) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE trace_spans SET linked_node_id = NULL, linked_change_id = NULL WHERE id = ?",
                (span_id,),
            )
            conn.execute("DELETE FROM span_nodes WHERE span_id = ?", (span_id,))

    # ─────────────────────────────────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────────────────────────────────

    def prune(self, days: int, keep_linked: bool = True, dry_run: bool = False) -> dict[str, int]:
        """Delete sessions started more than ``days`` ago, with their spans and content.

        Returns:
            Counts of sessions, spans and content rows removed (or that would be)
        """
        cutoff = to_iso(utc_now() - timedelta(days=days))
        sql = "SELECT session_id FROM trace_sessions WHERE started_at < ?"
        if keep_linked:
            sql += " AND linked_node_id IS NULL"

        with self.db.transaction() as conn:
            session_ids = [r["session_id"] for r in conn.execute(sql, (cutoff,)).fetchall()]
            if not session_ids:
                return {"sessions": 0, "spans": 0, "content": 0}
            marks = ",".join("?" * len(session_ids))
            span_ids = [
                r["id"]
                for r in conn.execute(
                    f"SELECT id FROM trace_spans WHERE session_id IN ({marks})", session_ids
                ).fetchall()
            ]
            span_marks = ",".join("?" * len(span_ids)) or "NULL"
            content = conn.execute(
                f"SELECT COUNT(*) FROM trace_content WHERE span_id IN ({span_marks})", span_ids
            ).fetchone()[0]
            counts = {"sessions": len(session_ids), "spans": len(span_ids), "content": content}
            if dry_run:
                return counts

            conn.execute(f"DELETE FROM trace_content WHERE span_id IN ({span_marks})", span_ids)
            conn.execute(f"DELETE FROM span_nodes WHERE span_id IN ({span_marks})", span_ids)
            conn.execute(f"DELETE FROM trace_spans WHERE session_id IN ({marks})", session_ids)
            conn.execute(f"DELETE FROM trace_sessions WHERE session_id IN ({marks})", session_ids)

        logger.info(
            f"Pruned {counts['sessions']} sessions, {counts['spans']} spans, "
            f"{counts['content']} content rows"
        )
        return counts
