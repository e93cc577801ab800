"""Portable patches: export a slice of the graph, merge it elsewhere.

A patch addresses nodes and edges purely by change-id, so it can be
applied to any store. Applying is a set union: nodes already present are
skipped (first write wins), edges are deduplicated on their
(from, to, type) triple, and edges whose endpoints are missing are
reported rather than dropped. The whole apply is one transaction.
"""

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import PatchFormatError, ReasonGraphError, StoreError
from .identity import resolve_many
from .models import EdgeType, NodeStatus, NodeType, to_iso, utc_now
from .store import GraphStore
from .timeutil import parse_timestamp

logger = logging.getLogger(__name__)

PATCH_VERSION = "1.0"


class PatchNode(BaseModel):
    change_id: str
    node_type: NodeType
    title: str
    description: str | None = None
    status: NodeStatus = "pending"
    metadata_json: str | None = None
    created_at: datetime | None = None

    @field_validator("created_at", mode="before")
    @classmethod
    def _normalise(cls, value):
        return parse_timestamp(value) if value else None


class PatchEdge(BaseModel):
    from_change_id: str
    to_change_id: str
    edge_type: EdgeType
    rationale: str | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.from_change_id, self.to_change_id, self.edge_type)

    def describe(self) -> str:
        return f"{self.from_change_id[:8]} -[{self.edge_type}]-> {self.to_change_id[:8]}"


class GraphPatch(BaseModel):
    """A self-contained, change-id addressed bag of nodes and edges."""

    version: str = PATCH_VERSION
    author: str | None = None
    branch: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    base_commit: str | None = None
    nodes: list[PatchNode] = Field(default_factory=list)
    edges: list[PatchEdge] = Field(default_factory=list)

    @classmethod
    def loads(cls, text: str) -> "GraphPatch":
        try:
            return cls.model_validate_json(text)
        except ValidationError as e:
            raise PatchFormatError(f"Invalid patch: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e

    @classmethod
    def load(cls, path: Path) -> "GraphPatch":
        """Read a patch file.

        Raises:
            ReasonGraphError: The file cannot be read
            PatchFormatError: The file is not a valid patch
        """
        try:
            text = Path(path).read_text()
        except OSError as e:
            raise ReasonGraphError(f"Failed to read patch file {path}: {e}") from e
        try:
            return cls.loads(text)
        except PatchFormatError as e:
            raise PatchFormatError(f"{path}: {e}") from e

    def dumps(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2)

    def save(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.dumps() + "\n")
        return path


class ApplyReport(BaseModel):
    """What an apply did (or, for a dry run, would do)."""

    name: str | None = None
    dry_run: bool = False
    nodes_added: int = 0
    nodes_skipped: int = 0
    edges_added: int = 0
    edges_skipped: int = 0
    unresolved: list[PatchEdge] = Field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.nodes_skipped + self.edges_skipped


def parse_node_range(spec: str) -> list[int]:
    """Parse ``"1-3,7"`` into ``[1, 2, 3, 7]``.

    Raises:
        ValueError: On malformed input
    """
    ids: set[int] = set()
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, _, hi = part.partition("-")
            start, end = int(lo), int(hi)
            if start > end:
                raise ValueError(f"Invalid range '{part}': start is after end")
            ids.update(range(start, end + 1))
        else:
            ids.add(int(part))
    if not ids:
        raise ValueError(f"Empty node range: {spec!r}")
    return sorted(ids)


# ─────────────────────────────────────────────────────────────────────────────
# Export
# ─────────────────────────────────────────────────────────────────────────────


def export_patch(
    store: GraphStore,
    node_ids: list[int] | None = None,
    branch: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    author: str | None = None,
    base_commit: str | None = None,
) -> GraphPatch:
    """Export the selected nodes and every edge touching them.

    Selectors combine as filters; with none given the whole graph is
    exported. An edge whose other endpoint is outside the selection is
    still included, since the receiver may already have that node.
    """
    nodes = store.list_nodes(ids=node_ids, branch=branch, since=since, until=until)
    edges = store.list_edges(node_ids=[n.id for n in nodes])

    patch = GraphPatch(author=author, branch=branch, base_commit=base_commit)
    patch.nodes = [
        PatchNode(
            change_id=n.change_id,
            node_type=n.node_type,
            title=n.title,
            description=n.description,
            status=n.status,
            metadata_json=n.metadata_json,
            created_at=n.created_at,
        )
        for n in nodes
    ]
    patch.edges = [
        PatchEdge(
            from_change_id=e.from_change_id,
            to_change_id=e.to_change_id,
            edge_type=e.edge_type,
            rationale=e.rationale,
        )
        for e in edges
    ]
    logger.info(f"Exported {len(patch.nodes)} nodes, {len(patch.edges)} edges")
    return patch


# ─────────────────────────────────────────────────────────────────────────────
# Apply
# ─────────────────────────────────────────────────────────────────────────────


class _Plan:
    """In-memory overlay of what applying a patch would change."""

    def __init__(self, store: GraphStore, patch: GraphPatch):
        self.report = ApplyReport()
        self.new_nodes: list[PatchNode] = []
        self.new_edges: list[PatchEdge] = []

        referenced = {n.change_id for n in patch.nodes}
        for e in patch.edges:
            referenced.update((e.from_change_id, e.to_change_id))
        self.local = resolve_many(store.db, sorted(referenced))

        known = set(self.local)
        for node in patch.nodes:
            if node.change_id in known:
                self.report.nodes_skipped += 1
                continue
            known.add(node.change_id)
            self.new_nodes.append(node)

        # Edges are placed after every node, so their order in the patch does not matter
        seen: set[tuple[str, str, str]] = set()
        for edge in patch.edges:
            if edge.from_change_id not in known or edge.to_change_id not in known:
                self.report.unresolved.append(edge)
            elif edge.key in seen or store.find_edge(*edge.key) is not None:
                self.report.edges_skipped += 1
            else:
                seen.add(edge.key)
                self.new_edges.append(edge)

        self.report.nodes_added = len(self.new_nodes)
        self.report.edges_added = len(self.new_edges)


def apply_patch(
    store: GraphStore,
    patch: GraphPatch,
    dry_run: bool = False,
    name: str | None = None,
) -> ApplyReport:
    """Merge a patch into the store.

    Expected divergence (nodes already present, duplicate edges, missing
    endpoints) is reported, never raised. With ``dry_run`` nothing is
    written and the same report is returned.

    Args:
        store: Target store
        patch: Patch to merge
        dry_run: Plan only
        name: Patch file name; recorded as applied on success

    Raises:
        StoreError: The transaction could not be committed
    """
    if dry_run:
        report = _Plan(store, patch).report
        report.dry_run = True
        report.name = name
        return report

    try:
        with store.mutation("apply_patch") as (conn, m):
            plan = _Plan(store, patch)
            local = dict(plan.local)
            for node in plan.new_nodes:
                local[node.change_id] = store.insert_node_row(
                    conn,
                    change_id=node.change_id,
                    node_type=node.node_type,
                    title=node.title,
                    description=node.description,
                    status=node.status,
                    metadata_json=node.metadata_json,
                    created_at=node.created_at or utc_now(),
                )
            for edge in plan.new_edges:
                store.insert_edge_row(
                    conn,
                    from_node_id=local[edge.from_change_id],
                    to_node_id=local[edge.to_change_id],
                    from_change_id=edge.from_change_id,
                    to_change_id=edge.to_change_id,
                    edge_type=edge.edge_type,
                    rationale=edge.rationale,
                )
            report = plan.report
            report.name = name
            if name:
                conn.execute(
                    "INSERT OR REPLACE INTO applied_patches (name, applied_at, report) VALUES (?, ?, ?)",
                    (name, to_iso(utc_now()), report.model_dump_json()),
                )
            m.outcome = (
                f"applied {name or 'patch'}: +{report.nodes_added} nodes, "
                f"+{report.edges_added} edges, {report.skipped} skipped, "
                f"{len(report.unresolved)} unresolved"
            )
    except sqlite3.DatabaseError as e:
        raise StoreError(f"Apply failed, nothing was written: {e}") from e

    for edge in report.unresolved:
        logger.info(f"Unresolved edge {edge.describe()}")
    return report


def validate_patch(store: GraphStore, patch: GraphPatch) -> list[PatchEdge]:
    """Edges whose endpoints are neither in the patch nor in the local store."""
    in_patch = {n.change_id for n in patch.nodes}
    endpoints = {c for e in patch.edges for c in (e.from_change_id, e.to_change_id)}
    local = resolve_many(store.db, sorted(endpoints - in_patch))
    available = in_patch | set(local)
    return [
        e for e in patch.edges
        if e.from_change_id not in available or e.to_change_id not in available
    ]


# ─────────────────────────────────────────────────────────────────────────────
# Applied-patch markers
# ─────────────────────────────────────────────────────────────────────────────


def applied_patch_names(store: GraphStore) -> set[str]:
    return {r["name"] for r in store.db.query("SELECT name FROM applied_patches")}


def patch_status(store: GraphStore, directory: Path) -> list[tuple[Path, bool]]:
    """Every ``*.json`` patch in ``directory`` with whether it has been applied here."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    applied = applied_patch_names(store)
    return [(p, p.name in applied) for p in sorted(directory.glob("*.json"))]


def default_patch_name(author: str | None, branch: str | None) -> str:
    stamp = utc_now().strftime("%Y%m%dT%H%M%S")
    parts = [p for p in (author, branch) if p]
    slug = "-".join(parts).replace("/", "-").replace(" ", "-") or "patch"
    return f"{slug}-{stamp}.json"
