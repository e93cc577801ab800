"""Dual identifiers: machine-local integer ids and global change-ids.

Local ids are SQLite row ids and mean nothing on another machine.
Change-ids are random UUIDs generated without coordination; they are what
patches carry. Lookups that miss return None, because a patch referencing
a node we have not received yet is normal.
"""

import uuid

from .database import Database


def new_change_id() -> str:
    """Generate a fresh 128-bit random change-id."""
    return str(uuid.uuid4())


def resolve(db: Database, change_id: str) -> int | None:
    """Map a change-id to the local node id, or None if we don't have it."""
    row = db.query_one("SELECT id FROM decision_nodes WHERE change_id = ?", (change_id,))
    return row["id"] if row else None


def local_to_change(db: Database, local_id: int) -> str | None:
    """Map a local node id to its change-id."""
    row = db.query_one("SELECT change_id FROM decision_nodes WHERE id = ?", (local_id,))
    return row["change_id"] if row else None


def resolve_many(db: Database, change_ids: list[str]) -> dict[str, int]:
    """Resolve several change-ids at once; missing ones are simply absent."""
    if not change_ids:
        return {}
    found: dict[str, int] = {}
    # Stay well under SQLite's bound-parameter limit
    for start in range(0, len(change_ids), 500):
        chunk = change_ids[start:start + 500]
        placeholders = ",".join("?" * len(chunk))
        rows = db.query(
            f"SELECT id, change_id FROM decision_nodes WHERE change_id IN ({placeholders})",
            chunk,
        )
        found.update({row["change_id"]: row["id"] for row in rows})
    return found
