"""Core data models for the reasoning graph and trace ledger.

Uses Pydantic v2 for validation. Rows read from SQLite are converted into
these models; nothing here touches the database.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, get_args

from pydantic import BaseModel, ConfigDict, field_validator

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Format a timestamp for storage.

    All stored timestamps are UTC with microsecond precision so that text
    comparison in SQL orders them correctly.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


NodeType = Literal[
    "goal",         # what we are trying to achieve
    "decision",     # a choice point
    "option",       # a candidate considered at a decision
    "action",       # something that was done
    "outcome",      # the result of an action
    "observation",  # something noticed along the way
]

EdgeType = Literal["leads_to", "requires", "chosen", "rejected", "blocks", "enables"]

NodeStatus = Literal["pending", "active", "completed", "rejected"]

NODE_TYPES: tuple[str, ...] = get_args(NodeType)
EDGE_TYPES: tuple[str, ...] = get_args(EdgeType)
NODE_STATUSES: tuple[str, ...] = get_args(NodeStatus)


# ─────────────────────────────────────────────────────────────────────────────
# Graph
# ─────────────────────────────────────────────────────────────────────────────


class NodeMetadata(BaseModel):
    """Side-document attached to a node.

    Known keys are typed; anything else a peer put in the document is kept
    as-is so it survives a patch round trip.
    """

    model_config = ConfigDict(extra="allow")

    confidence: int | None = None  # 0-100
    commit: str | None = None
    prompt: str | None = None
    files: list[str] | None = None
    branch: str | None = None

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, value: int | None) -> int | None:
        if value is None:
            return None
        return max(0, min(100, int(value)))

    @field_validator("files", mode="before")
    @classmethod
    def _split_files(cls, value):
        if isinstance(value, str):
            return [f.strip() for f in value.split(",") if f.strip()]
        return value

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)

    def to_json(self) -> str | None:
        """Serialize, or None when there is nothing to store."""
        data = self.model_dump(exclude_none=True)
        if not data:
            return None
        return json.dumps(data, sort_keys=True)

    @classmethod
    def from_json(cls, text: str | None) -> "NodeMetadata":
        """Parse a stored document, tolerating garbage from older peers."""
        if not text:
            return cls()
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed node metadata: {text[:60]!r}")
            return cls()
        if not isinstance(data, dict):
            return cls()
        try:
            return cls.model_validate(data)
        except ValueError as e:
            logger.warning(f"Ignoring invalid node metadata: {e}")
            return cls()


def build_metadata(
    confidence: int | None = None,
    commit: str | None = None,
    prompt: str | None = None,
    files: str | list[str] | None = None,
    branch: str | None = None,
) -> str | None:
    """Build the metadata JSON for a new node, or None if every field is empty."""
    return NodeMetadata(
        confidence=confidence,
        commit=commit,
        prompt=prompt,
        files=files,
        branch=branch,
    ).to_json()


class Node(BaseModel):
    """A unit of recorded reasoning."""

    id: int  # local, machine-scoped
    change_id: str  # global, immutable
    node_type: NodeType
    title: str
    description: str | None = None
    status: NodeStatus = "pending"
    metadata_json: str | None = None
    created_at: datetime
    updated_at: datetime
    linked_span_id: int | None = None
    linked_change_id: str | None = None  # change-id of the span this node was created under

    @property
    def metadata(self) -> NodeMetadata:
        return NodeMetadata.from_json(self.metadata_json)

    @property
    def branch(self) -> str | None:
        return self.metadata.branch

    def to_summary(self) -> dict:
        """Return a compact JSON-friendly summary of this node."""
        return {
            "id": self.id,
            "change_id": self.change_id,
            "node_type": self.node_type,
            "title": self.title,
            "status": self.status,
            "branch": self.branch,
            "created_at": self.created_at.isoformat(),
        }


class Edge(BaseModel):
    """A directed, typed relationship between two nodes."""

    id: int
    change_id: str
    from_node_id: int
    to_node_id: int
    from_change_id: str
    to_change_id: str
    edge_type: EdgeType
    rationale: str | None = None
    created_at: datetime
    linked_span_id: int | None = None
    linked_change_id: str | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        """Deduplication key used during merge."""
        return (self.from_change_id, self.to_change_id, self.edge_type)

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "from": self.from_node_id,
            "to": self.to_node_id,
            "edge_type": self.edge_type,
            "rationale": self.rationale,
        }


class GraphSession(BaseModel):
    """A named working session grouping nodes."""

    id: int
    name: str | None = None
    started_at: datetime
    ended_at: datetime | None = None
    root_node_id: int | None = None
    summary: str | None = None


class CommandLogEntry(BaseModel):
    """One row of the local, append-only audit log."""

    id: int
    command: str
    outcome: str
    working_dir: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    node_id: int | None = None


# ─────────────────────────────────────────────────────────────────────────────
# Trace ledger
# ─────────────────────────────────────────────────────────────────────────────

GraceWindow = Literal["link", "unlinked"]


class SpanState(str, Enum):
    """Lifecycle of a span: cheap start, expensive completion."""

    STARTED = "started"
    COMPLETED = "completed"

    def accepts_links(self, grace_window: GraceWindow = "link", superseded: bool = False) -> bool:
        """Whether a node created now may be linked to a span in this state.

        A started span always accepts links. A completed span accepts them
        only while it is still the ambient span (the window between the
        response finishing and the next request starting) and only when the
        grace window policy is ``link``. Once a later span of the same
        session has started, a completed span is stale.
        """
        if self is SpanState.STARTED:
            return True
        return grace_window == "link" and not superseded


class TraceSession(BaseModel):
    """One external tool invocation lifetime."""

    id: int
    session_id: str
    started_at: datetime
    ended_at: datetime | None = None
    working_dir: str | None = None
    git_branch: str | None = None
    command: str | None = None
    summary: str | None = None
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read: int = 0
    total_cache_write: int = 0
    linked_node_id: int | None = None
    linked_change_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


class TraceSpan(BaseModel):
    """One network request/response pair within a session."""

    id: int
    change_id: str
    session_id: str
    sequence_num: int
    state: SpanState = SpanState.STARTED
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    model: str | None = None
    request_id: str | None = None
    stop_reason: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_read: int | None = None
    cache_write: int | None = None
    user_preview: str | None = None
    thinking_preview: str | None = None
    response_preview: str | None = None
    tool_names: str | None = None
    linked_node_id: int | None = None
    linked_change_id: str | None = None


class TraceContent(BaseModel):
    """Full (non-preview) content captured for a span."""

    id: int
    span_id: int
    content_type: str  # thinking, response, tool_input, tool_output, tool_error, system, tool_definitions
    tool_name: str | None = None
    tool_use_id: str | None = None
    content: str
    sequence_num: int = 0


class ToolCall(BaseModel):
    """A tool invocation emitted by the model."""

    id: str | None = None
    name: str | None = None
    input: str = ""  # raw JSON text, concatenated from fragments
    output: str | None = None


class ToolResult(BaseModel):
    """Output of an earlier tool call, as sent back in a request."""

    tool_use_id: str
    content: str
    is_error: bool | None = None


class ToolDefinition(BaseModel):
    name: str
    description: str | None = None
    input_schema: dict | None = None


class SpanRecord(BaseModel):
    """Everything captured about one request/response pair.

    This is the document the interceptor pipes into ``trace record --stdin``.
    Every field is optional; a degraded capture still records what it has.
    """

    model_config = ConfigDict(extra="ignore")

    model: str | None = None
    request_id: str | None = None
    stop_reason: str | None = None
    duration_ms: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_read: int | None = None
    cache_write: int | None = None
    user_preview: str | None = None
    thinking_preview: str | None = None
    response_preview: str | None = None
    tool_names: str | None = None
    thinking: str | None = None
    response: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_results: list[ToolResult] | None = None
    tool_definitions: list[ToolDefinition] | None = None
    system_prompt: str | None = None
    message_count: int | None = None
