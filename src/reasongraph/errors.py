"""Exception hierarchy.

Library code raises these. The CLI catches ``ReasonGraphError`` at the
command boundary and turns it into ``Error: ...`` plus exit code 1.
Expected divergence during patch apply is never raised; it goes into the
apply report instead.
"""


class ReasonGraphError(Exception):
    """Base class for all reasongraph errors."""


class NodeNotFoundError(ReasonGraphError):
    def __init__(self, ref: int | str):
        self.ref = ref
        super().__init__(f"Node not found: {ref}")


class DuplicateEdgeError(ReasonGraphError):
    def __init__(self, from_change_id: str, to_change_id: str, edge_type: str):
        self.key = (from_change_id, to_change_id, edge_type)
        super().__init__(
            f"Edge already exists: {from_change_id[:8]} -[{edge_type}]-> {to_change_id[:8]}"
        )


class InvalidValueError(ReasonGraphError, ValueError):
    """A node type, edge type or status outside the closed set."""

    def __init__(self, kind: str, value: str, allowed: tuple[str, ...]):
        self.kind = kind
        self.value = value
        super().__init__(f"Invalid {kind} '{value}'. Must be one of: {', '.join(allowed)}")


class StoreError(ReasonGraphError):
    """The database is unreadable, corrupt or otherwise unusable."""


class StoreLockedError(StoreError):
    """Lock contention persisted after every retry."""


class PatchFormatError(ReasonGraphError):
    """A patch document is not valid JSON or does not match the schema."""


class SpanNotFoundError(ReasonGraphError):
    def __init__(self, span_id: int):
        self.span_id = span_id
        super().__init__(f"Span not found: {span_id}")
