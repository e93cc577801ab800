"""Graph store: nodes, edges, graph sessions and the local command log.

Nodes and edges are keyed by local id and carry a change-id for
cross-database addressing. Every mutating call appends one row to the
command log; that log is local-only and never exported.
"""

import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterator

from .database import Database
from .errors import (
    DuplicateEdgeError,
    InvalidValueError,
    NodeNotFoundError,
    ReasonGraphError,
)
from .identity import new_change_id
from .models import (
    EDGE_TYPES,
    NODE_STATUSES,
    NODE_TYPES,
    CommandLogEntry,
    Edge,
    GraphSession,
    Node,
    NodeMetadata,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


def validate_node_type(node_type: str) -> str:
    if node_type not in NODE_TYPES:
        raise InvalidValueError("node type", node_type, NODE_TYPES)
    return node_type


def validate_edge_type(edge_type: str) -> str:
    if edge_type not in EDGE_TYPES:
        raise InvalidValueError("edge type", edge_type, EDGE_TYPES)
    return edge_type


def validate_status(status: str) -> str:
    if status not in NODE_STATUSES:
        raise InvalidValueError("status", status, NODE_STATUSES)
    return status


def branch_clause(column: str) -> str:
    """SQL filter on the branch tag; unparsable metadata counts as no branch."""
    return f"(CASE WHEN json_valid({column}) THEN json_extract({column}, '$.branch') END) = ?"


@dataclass
class _Mutation:
    """Bookkeeping for one audited write."""

    action: str
    started: float = field(default_factory=time.monotonic)
    started_at: datetime = field(default_factory=utc_now)
    node_id: int | None = None
    outcome: str = "ok"


class GraphStore:
    """Reasoning graph persisted in SQLite."""

    def __init__(self, db: Database, command: str | None = None):
        """Initialize graph store.

        Args:
            db: Shared database handle
            command: Command text recorded in the audit log for each mutation
                (the CLI passes its argv; library callers get the method name)
        """
        self.db = db
        self.command = command

    # ─────────────────────────────────────────────────────────────────────────
    # Audit log
    # ─────────────────────────────────────────────────────────────────────────

    def _write_log(self, conn: sqlite3.Connection, m: _Mutation):
        conn.execute(
            """
            INSERT INTO command_log
                (command, outcome, working_dir, started_at, completed_at, duration_ms, node_id)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self.command or m.action,
                m.outcome,
                os.getcwd(),
                to_iso(m.started_at),
                to_iso(utc_now()),
                int((time.monotonic() - m.started) * 1000),
                m.node_id,
            ),
        )

    @contextmanager
    def mutation(self, action: str) -> Iterator[tuple[sqlite3.Connection, _Mutation]]:
        """Run a write and append its audit row in the same transaction.

        A failed write is rolled back; its audit row is then written on its
        own (unless we are inside someone else's transaction, which will
        roll back too).
        """
        m = _Mutation(action)
        nested = self.db.in_transaction
        try:
            with self.db.transaction() as conn:
                yield conn, m
                self._write_log(conn, m)
        except ReasonGraphError as e:
            if not nested:
                m.outcome = f"error: {e}"
                with self.db.transaction() as conn:
                    self._write_log(conn, m)
            raise

    def log_command(self, command: str, outcome: str, node_id: int | None = None) -> None:
        """Append an arbitrary row to the command log."""
        m = _Mutation(command, outcome=outcome, node_id=node_id)
        previous, self.command = self.command, command
        try:
            with self.db.transaction() as conn:
                self._write_log(conn, m)
        finally:
            self.command = previous

    def recent_commands(self, limit: int = 20) -> list[CommandLogEntry]:
        rows = self.db.query(
            "SELECT * FROM command_log ORDER BY id DESC LIMIT ?", (limit,)
        )
        return [CommandLogEntry.model_validate(dict(r)) for r in rows]

    # ─────────────────────────────────────────────────────────────────────────
    # Nodes
    # ─────────────────────────────────────────────────────────────────────────

    def insert_node_row(
        self,
        conn: sqlite3.Connection,
        *,
        change_id: str,
        node_type: str,
        title: str,
        description: str | None,
        status: str,
        metadata_json: str | None,
        created_at: datetime,
    ) -> int:
        """Insert a node inside an open transaction and return its local id."""
        now = to_iso(utc_now())
        cur = conn.execute(
            """
            INSERT INTO decision_nodes
                (change_id, node_type, title, description, status, metadata_json,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                change_id,
                node_type,
                title,
                description,
                status,
                metadata_json,
                to_iso(created_at),
                now,
            ),
        )
        return cur.lastrowid

    def create_node(
        self,
        node_type: str,
        title: str,
        description: str | None = None,
        status: str = "pending",
        metadata: NodeMetadata | dict | str | None = None,
    ) -> Node:
        """Create a node with a fresh local id and a fresh change-id."""
        validate_node_type(node_type)
        validate_status(status)
        if not title or not title.strip():
            raise ReasonGraphError("Node title must not be empty")

        if isinstance(metadata, NodeMetadata):
            metadata_json = metadata.to_json()
        elif isinstance(metadata, dict):
            metadata_json = NodeMetadata.model_validate(metadata).to_json()
        else:
            metadata_json = metadata

        with self.mutation("create_node") as (conn, m):
            m.node_id = self.insert_node_row(
                conn,
                change_id=new_change_id(),
                node_type=node_type,
                title=title.strip(),
                description=description,
                status=status,
                metadata_json=metadata_json,
                created_at=utc_now(),
            )
            m.outcome = f"created {node_type} #{m.node_id}"

        logger.debug(f"Created node #{m.node_id}: {node_type} {title!r}")
        return self.get_node(m.node_id)

    def get_node(self, node_id: int) -> Node:
        row = self.db.query_one("SELECT * FROM decision_nodes WHERE id = ?", (node_id,))
        if row is None:
            raise NodeNotFoundError(node_id)
        return Node.model_validate(dict(row))

    def get_node_by_change_id(self, change_id: str) -> Node | None:
        row = self.db.query_one(
            "SELECT * FROM decision_nodes WHERE change_id = ?", (change_id,)
        )
        return Node.model_validate(dict(row)) if row else None

    def list_nodes(
        self,
        node_type: str | None = None,
        branch: str | None = None,
        status: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        ids: list[int] | None = None,
        reverse: bool = False,
        limit: int | None = None,
    ) -> list[Node]:
        """List nodes, oldest first unless ``reverse`` is set.

        Args:
            node_type: Only nodes of this type
            branch: Only nodes whose metadata branch tag matches
            status: Only nodes with this status
            since: Created at or after this time
            until: Created at or before this time
            ids: Only these local ids
            reverse: Newest first
            limit: Maximum number of rows
        """
        clauses: list[str] = []
        params: list = []
        if node_type:
            clauses.append("node_type = ?")
            params.append(validate_node_type(node_type))
        if status:
            clauses.append("status = ?")
            params.append(validate_status(status))
        if branch:
            clauses.append(branch_clause("metadata_json"))
            params.append(branch)
        if since:
            clauses.append("created_at >= ?")
            params.append(to_iso(since))
        if until:
            clauses.append("created_at <= ?")
            params.append(to_iso(until))
        if ids is not None:
            if not ids:
                return []
            clauses.append(f"id IN ({','.join('?' * len(ids))})")
            params.extend(ids)

        sql = "SELECT * FROM decision_nodes"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        order = "DESC" if reverse else "ASC"
        sql += f" ORDER BY created_at {order}, id {order}"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [Node.model_validate(dict(r)) for r in self.db.query(sql, params)]

    def latest_node(self, node_type: str = "goal") -> Node | None:
        nodes = self.list_nodes(node_type=node_type, reverse=True, limit=1)
        return nodes[0] if nodes else None

    def update_status(self, node_id: int, status: str) -> Node:
        validate_status(status)
        with self.mutation("update_status") as (conn, m):
            m.node_id = node_id
            cur = conn.execute(
                "UPDATE decision_nodes SET status = ?, updated_at = ? WHERE id = ?",
                (status, to_iso(utc_now()), node_id),
            )
            if cur.rowcount == 0:
                raise NodeNotFoundError(node_id)
            m.outcome = f"status #{node_id} -> {status}"
        return self.get_node(node_id)

    def update_metadata(self, node_id: int, **fields) -> Node:
        """Merge fields into a node's metadata document.

        ``commit="HEAD"`` is resolved to the current git commit. Fields set
        to None are left unchanged.
        """
        if fields.get("commit") == "HEAD":
            from .gitinfo import current_commit

            fields["commit"] = current_commit()

        with self.mutation("update_metadata") as (conn, m):
            m.node_id = node_id
            row = conn.execute(
                "SELECT metadata_json FROM decision_nodes WHERE id = ?", (node_id,)
            ).fetchone()
            if row is None:
                raise NodeNotFoundError(node_id)
            data = NodeMetadata.from_json(row["metadata_json"]).model_dump(exclude_none=True)
            data.update({k: v for k, v in fields.items() if v is not None})
            conn.execute(
                "UPDATE decision_nodes SET metadata_json = ?, updated_at = ? WHERE id = ?",
                (NodeMetadata.model_validate(data).to_json(), to_iso(utc_now()), node_id),
            )
            m.outcome = f"metadata #{node_id}: {', '.join(sorted(fields))}"
        return self.get_node(node_id)

    def set_node_link(self, node_id: int, span_id: int, span_change_id: str) -> None:
        """Record which span a node was created under."""
        with self.mutation("link_node_span") as (conn, m):
            m.node_id = node_id
            conn.execute(
                "UPDATE decision_nodes SET linked_span_id = ?, linked_change_id = ? WHERE id = ?",
                (span_id, span_change_id, node_id),
            )
            m.outcome = f"node #{node_id} linked to span {span_id}"

    def set_edge_link(self, edge_id: int, span_id: int, span_change_id: str) -> None:
        with self.mutation("link_edge_span") as (conn, m):
            conn.execute(
                "UPDATE decision_edges SET linked_span_id = ?, linked_change_id = ? WHERE id = ?",
                (span_id, span_change_id, edge_id),
            )
            m.outcome = f"edge #{edge_id} linked to span {span_id}"

    # ─────────────────────────────────────────────────────────────────────────
    # Edges
    # ─────────────────────────────────────────────────────────────────────────

    def find_edge(self, from_change_id: str, to_change_id: str, edge_type: str) -> Edge | None:
        row = self.db.query_one(
            """
            SELECT * FROM decision_edges
            WHERE from_change_id = ? AND to_change_id = ? AND edge_type = ?
            """,
            (from_change_id, to_change_id, edge_type),
        )
        return Edge.model_validate(dict(row)) if row else None

    def insert_edge_row(
        self,
        conn: sqlite3.Connection,
        *,
        from_node_id: int,
        to_node_id: int,
        from_change_id: str,
        to_change_id: str,
        edge_type: str,
        rationale: str | None,
        created_at: datetime | None = None,
    ) -> int:
        """Insert an edge inside an open transaction and return its local id."""
        cur = conn.execute(
            """
            INSERT INTO decision_edges
                (change_id, from_node_id, to_node_id, from_change_id, to_change_id,
                 edge_type, rationale, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                new_change_id(),
                from_node_id,
                to_node_id,
                from_change_id,
                to_change_id,
                edge_type,
                rationale,
                to_iso(created_at or utc_now()),
            ),
        )
        return cur.lastrowid

    def create_edge(
        self,
        from_id: int,
        to_id: int,
        edge_type: str = "leads_to",
        rationale: str | None = None,
    ) -> Edge:
        """Connect two existing nodes.

        Raises:
            NodeNotFoundError: Either endpoint does not exist locally
            DuplicateEdgeError: The (from, to, type) triple already exists
        """
        validate_edge_type(edge_type)
        source = self.get_node(from_id)
        target = self.get_node(to_id)

        with self.mutation("create_edge") as (conn, m):
            m.node_id = from_id
            existing = conn.execute(
                """
                SELECT id FROM decision_edges
                WHERE from_change_id = ? AND to_change_id = ? AND edge_type = ?
                """,
                (source.change_id, target.change_id, edge_type),
            ).fetchone()
            if existing is not None:
                raise DuplicateEdgeError(source.change_id, target.change_id, edge_type)
            edge_id = self.insert_edge_row(
                conn,
                from_node_id=from_id,
                to_node_id=to_id,
                from_change_id=source.change_id,
                to_change_id=target.change_id,
                edge_type=edge_type,
                rationale=rationale,
            )
            m.outcome = f"edge #{edge_id}: {from_id} -[{edge_type}]-> {to_id}"

        return self.get_edge(edge_id)

    def get_edge(self, edge_id: int) -> Edge:
        row = self.db.query_one("SELECT * FROM decision_edges WHERE id = ?", (edge_id,))
        if row is None:
            raise ReasonGraphError(f"Edge not found: {edge_id}")
        return Edge.model_validate(dict(row))

    def list_edges(
        self,
        edge_type: str | None = None,
        branch: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        node_ids: list[int] | None = None,
        reverse: bool = False,
    ) -> list[Edge]:
        """List edges, oldest first unless ``reverse`` is set.

        ``branch`` keeps edges whose source node carries that branch tag.
        ``node_ids`` keeps edges touching any of the given nodes.
        """
        clauses: list[str] = []
        params: list = []
        if edge_type:
            clauses.append("e.edge_type = ?")
            params.append(validate_edge_type(edge_type))
        if branch:
            clauses.append(branch_clause("n.metadata_json"))
            params.append(branch)
        if since:
            clauses.append("e.created_at >= ?")
            params.append(to_iso(since))
        if until:
            clauses.append("e.created_at <= ?")
            params.append(to_iso(until))
        if node_ids is not None:
            if not node_ids:
                return []
            marks = ",".join("?" * len(node_ids))
            clauses.append(f"(e.from_node_id IN ({marks}) OR e.to_node_id IN ({marks}))")
            params.extend(node_ids)
            params.extend(node_ids)

        sql = "SELECT e.* FROM decision_edges e JOIN decision_nodes n ON n.id = e.from_node_id"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        order = "DESC" if reverse else "ASC"
        sql += f" ORDER BY e.created_at {order}, e.id {order}"
        return [Edge.model_validate(dict(r)) for r in self.db.query(sql, params)]

    def children(self, node_id: int) -> list[Node]:
        rows = self.db.query(
            """
            SELECT n.* FROM decision_nodes n
            JOIN decision_edges e ON e.to_node_id = n.id
            WHERE e.from_node_id = ?
            ORDER BY n.created_at, n.id
            """,
            (node_id,),
        )
        return [Node.model_validate(dict(r)) for r in rows]

    def parents(self, node_id: int) -> list[Node]:
        rows = self.db.query(
            """
            SELECT n.* FROM decision_nodes n
            JOIN decision_edges e ON e.from_node_id = n.id
            WHERE e.to_node_id = ?
            ORDER BY n.created_at, n.id
            """,
            (node_id,),
        )
        return [Node.model_validate(dict(r)) for r in rows]

    # ─────────────────────────────────────────────────────────────────────────
    # Graph sessions
    # ─────────────────────────────────────────────────────────────────────────

    def start_session(self, name: str | None = None, root_node_id: int | None = None) -> GraphSession:
        if root_node_id is not None:
            self.get_node(root_node_id)
        with self.mutation("start_session") as (conn, m):
            cur = conn.execute(
                "INSERT INTO decision_sessions (name, started_at, root_node_id) VALUES (?, ?, ?)",
                (name, to_iso(utc_now()), root_node_id),
            )
            session_id = cur.lastrowid
            m.outcome = f"session #{session_id} started"
        return self.get_session(session_id)

    def end_session(self, session_id: int, summary: str | None = None) -> GraphSession:
        with self.mutation("end_session") as (conn, m):
            cur = conn.execute(
                "UPDATE decision_sessions SET ended_at = ?, summary = ? WHERE id = ?",
                (to_iso(utc_now()), summary, session_id),
            )
            if cur.rowcount == 0:
                raise ReasonGraphError(f"Session not found: {session_id}")
            m.outcome = f"session #{session_id} ended"
        return self.get_session(session_id)

    def add_node_to_session(self, session_id: int, node_id: int) -> None:
        self.get_node(node_id)
        self.get_session(session_id)
        with self.mutation("add_node_to_session") as (conn, m):
            m.node_id = node_id
            conn.execute(
                """
                INSERT OR IGNORE INTO session_nodes (session_id, node_id, added_at)
                VALUES (?, ?, ?)
                """,
                (session_id, node_id, to_iso(utc_now())),
            )
            m.outcome = f"node #{node_id} added to session #{session_id}"

    def get_session(self, session_id: int) -> GraphSession:
        row = self.db.query_one("SELECT * FROM decision_sessions WHERE id = ?", (session_id,))
        if row is None:
            raise ReasonGraphError(f"Session not found: {session_id}")
        return GraphSession.model_validate(dict(row))

    def list_sessions(self) -> list[GraphSession]:
        rows = self.db.query("SELECT * FROM decision_sessions ORDER BY started_at, id")
        return [GraphSession.model_validate(dict(r)) for r in rows]

    def session_nodes(self, session_id: int) -> list[Node]:
        rows = self.db.query(
            """
            SELECT n.* FROM decision_nodes n
            JOIN session_nodes s ON s.node_id = n.id
            WHERE s.session_id = ?
            ORDER BY n.created_at, n.id
            """,
            (session_id,),
        )
        return [Node.model_validate(dict(r)) for r in rows]

    # ─────────────────────────────────────────────────────────────────────────
    # Whole-graph helpers
    # ─────────────────────────────────────────────────────────────────────────

    def counts(self) -> dict[str, int]:
        row = self.db.query_one(
            """
            SELECT
                (SELECT COUNT(*) FROM decision_nodes) AS nodes,
                (SELECT COUNT(*) FROM decision_edges) AS edges,
                (SELECT COUNT(*) FROM decision_sessions) AS sessions,
                (SELECT COUNT(*) FROM command_log) AS commands
            """
        )
        return dict(row)

    def graph_snapshot(self) -> dict:
        """Return every node and edge as JSON-friendly dicts."""
        return {
            "nodes": [json.loads(n.model_dump_json()) for n in self.list_nodes()],
            "edges": [json.loads(e.model_dump_json()) for e in self.list_edges()],
        }

    def backup(self, dest: Path) -> Path:
        return self.db.backup(dest)
