"""MCP server exposing the reasoning graph to agents."""

import asyncio
import json
import logging
import sys
import traceback

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from .config import LOG_FILE_NAME, find_db_path, load_config
from .database import Database
from .errors import ReasonGraphError
from .models import EDGE_TYPES, NODE_STATUSES, NODE_TYPES, NodeMetadata
from .store import GraphStore
from .trace import SpanLedger

logger = logging.getLogger("reasongraph")

TOOLS = [
    Tool(
        name="add_node",
        description=(
            "Record a reasoning step as a node. "
            "Types: goal, decision, option, action, outcome, observation. "
            "Returns the node with its local id and change-id."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "node_type": {"type": "string", "enum": list(NODE_TYPES)},
                "title": {"type": "string"},
                "description": {"type": "string"},
                "confidence": {"type": "integer", "minimum": 0, "maximum": 100},
                "files": {"type": "array", "items": {"type": "string"}},
                "branch": {"type": "string"},
            },
            "required": ["node_type", "title"],
        },
    ),
    Tool(
        name="link_nodes",
        description="Connect two nodes with a typed edge (e.g. a decision 'chosen' an option).",
        inputSchema={
            "type": "object",
            "properties": {
                "from_id": {"type": "integer"},
                "to_id": {"type": "integer"},
                "edge_type": {"type": "string", "enum": list(EDGE_TYPES), "default": "leads_to"},
                "rationale": {"type": "string"},
            },
            "required": ["from_id", "to_id"],
        },
    ),
    Tool(
        name="update_status",
        description="Change a node's status.",
        inputSchema={
            "type": "object",
            "properties": {
                "node_id": {"type": "integer"},
                "status": {"type": "string", "enum": list(NODE_STATUSES)},
            },
            "required": ["node_id", "status"],
        },
    ),
    Tool(
        name="list_nodes",
        description="List nodes oldest first, optionally filtered by type, branch or status.",
        inputSchema={
            "type": "object",
            "properties": {
                "node_type": {"type": "string", "enum": list(NODE_TYPES)},
                "branch": {"type": "string"},
                "status": {"type": "string", "enum": list(NODE_STATUSES)},
                "limit": {"type": "integer"},
            },
        },
    ),
    Tool(
        name="list_edges",
        description="List edges oldest first, optionally filtered by type.",
        inputSchema={
            "type": "object",
            "properties": {"edge_type": {"type": "string", "enum": list(EDGE_TYPES)}},
        },
    ),
    Tool(
        name="list_spans",
        description="List the spans of a trace session, or the spans linked to a node.",
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": {"type": "string"},
                "node_id": {"type": "integer"},
            },
        },
    ),
]


def dispatch_tool(
    store: GraphStore,
    name: str,
    arguments: dict,
    ledger: SpanLedger | None = None,
) -> dict | list:
    """Run one tool call and return a JSON-serialisable result.

    Raises:
        ReasonGraphError: On bad arguments or store errors
    """
    ledger = ledger or SpanLedger(store.db)

    if name == "add_node":
        metadata = NodeMetadata(
            confidence=arguments.get("confidence"),
            files=arguments.get("files"),
            branch=arguments.get("branch"),
        )
        node = store.create_node(
            arguments["node_type"],
            arguments["title"],
            arguments.get("description"),
            metadata=metadata,
        )
        return node.to_summary()

    elif name == "link_nodes":
        edge = store.create_edge(
            int(arguments["from_id"]),
            int(arguments["to_id"]),
            arguments.get("edge_type", "leads_to"),
            arguments.get("rationale"),
        )
        return edge.to_summary()

    elif name == "update_status":
        node = store.update_status(int(arguments["node_id"]), arguments["status"])
        return node.to_summary()

    elif name == "list_nodes":
        nodes = store.list_nodes(
            node_type=arguments.get("node_type"),
            branch=arguments.get("branch"),
            status=arguments.get("status"),
            limit=arguments.get("limit"),
        )
        return [n.to_summary() for n in nodes]

    elif name == "list_edges":
        return [e.to_summary() for e in store.list_edges(edge_type=arguments.get("edge_type"))]

    elif name == "list_spans":
        if arguments.get("node_id") is not None:
            spans = ledger.spans_for_node(int(arguments["node_id"]))
        elif arguments.get("session_id"):
            spans = ledger.list_spans(arguments["session_id"])
        else:
            raise ReasonGraphError("list_spans needs session_id or node_id")
        return [s.model_dump(mode="json") for s in spans]

    raise ReasonGraphError(f"Unknown tool: {name}")


def create_server(store: GraphStore) -> Server:
    server = Server("reasongraph")
    ledger = SpanLedger(store.db)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available MCP tools."""
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        """Handle tool calls."""
        logger.info(f"Tool call: {name}")
        logger.debug(f"Arguments: {arguments}")
        try:
            result = dispatch_tool(store, name, arguments or {}, ledger)
        except (ReasonGraphError, KeyError, ValueError) as e:
            logger.warning(f"Tool {name} failed: {e}")
            return [TextContent(type="text", text=json.dumps({"error": str(e)}))]
        return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]

    return server


async def _run_server(server: Server):
    """Run the MCP server."""
    async with stdio_server() as (read, write):
        await server.run(read, write, server.create_initialization_options())


def main():
    """Entry point for the MCP server."""
    db_path = find_db_path()
    data_dir = db_path.parent
    data_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(data_dir / LOG_FILE_NAME),
            logging.StreamHandler(sys.stderr),
        ],
    )
    config = load_config(data_dir)
    db = Database(
        db_path,
        lock_attempts=config.store.lock_attempts,
        lock_backoff=config.store.lock_backoff_seconds,
    )
    store = GraphStore(db, command="mcp")
    logger.info(f"Reasongraph MCP server starting (db={db_path})")
    try:
        asyncio.run(_run_server(create_server(store)))
    except Exception as e:
        logger.error(f"Server crashed: {e}")
        logger.error(traceback.format_exc())
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
