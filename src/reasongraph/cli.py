"""Command-line interface for reasongraph.

Human-facing commands print with rich; the commands other processes call
(``trace start``, ``trace start-span``, ``trace record``, ``graph``) print
bare JSON on stdout.
"""

import json
import logging
import shutil
import subprocess
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import (
    ENV_DB_PATH,
    LOG_FILE_NAME,
    Config,
    find_db_path,
    load_config,
    write_default_config,
)
from .database import Database
from .errors import ReasonGraphError
from .gitinfo import author_name, current_branch, current_commit
from .models import EDGE_TYPES, NODE_STATUSES, NODE_TYPES, NodeMetadata, SpanRecord, utc_now
from .patch import (
    GraphPatch,
    apply_patch,
    default_patch_name,
    export_patch,
    parse_node_range,
    patch_status,
    validate_patch,
)
from .propagation import ENV_BIN, SpanContext, attach_to_span
from .store import GraphStore
from .timeutil import format_relative_time, parse_time_reference
from .trace import SpanLedger

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)


def setup_logging(data_dir: Path, verbose: bool = False):
    """Configure the root logger once per invocation.

    stderr gets warnings (everything with ``-v``); ``reasongraph.log`` in
    the data directory gets INFO and up once the directory exists.
    """
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handlers: list[logging.Handler] = [stream_handler]
    if data_dir.is_dir():
        file_handler = logging.FileHandler(data_dir / LOG_FILE_NAME)
        file_handler.setLevel(logging.INFO)
        handlers.append(file_handler)
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


class AppContext:
    """Lazily opened handles shared by the commands of one invocation."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.data_dir = db_path.parent
        self._config: Config | None = None
        self._db: Database | None = None
        self._store: GraphStore | None = None
        self._ledger: SpanLedger | None = None

    @property
    def config(self) -> Config:
        if self._config is None:
            self._config = load_config(self.data_dir)
        return self._config

    @property
    def db(self) -> Database:
        if self._db is None:
            self._db = Database(
                self.db_path,
                lock_attempts=self.config.store.lock_attempts,
                lock_backoff=self.config.store.lock_backoff_seconds,
            )
        return self._db

    @property
    def store(self) -> GraphStore:
        if self._store is None:
            self._store = GraphStore(self.db, command=_command_text())
        return self._store

    @property
    def ledger(self) -> SpanLedger:
        if self._ledger is None:
            self._ledger = SpanLedger(self.db)
        return self._ledger

    def close(self):
        if self._db is not None:
            self._db.close()


def _command_text() -> str:
    """Reconstruct the current command line for the audit log."""
    ctx = click.get_current_context(silent=True)
    if ctx is None:
        return "reasongraph"
    parts = [ctx.command_path]
    for key, value in ctx.params.items():
        if value in (None, False, ()):
            continue
        parts.append(key if value is True else f"{key}={value}")
    return " ".join(parts)


class ReasonGraphGroup(click.Group):
    """Turns library errors into ``Error: ...`` and exit code 1."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except ReasonGraphError as e:
            logger.debug("Command failed", exc_info=True)
            err_console.print(f"[red]Error:[/red] {escape(str(e))}")
            ctx.exit(1)


def _parse_time(value: str | None):
    if value is None:
        return None
    try:
        return parse_time_reference(value)
    except ValueError as e:
        raise click.BadParameter(str(e))


@click.group(cls=ReasonGraphGroup)
@click.option(
    "--db",
    "db_path",
    envvar=ENV_DB_PATH,
    type=click.Path(path_type=Path),
    help="Path to reasongraph.db",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging on stderr")
@click.version_option(__version__, prog_name="reasongraph")
@click.pass_context
def cli(ctx, db_path, verbose):
    """Reasongraph - record reasoning as a graph, sync it with patches."""
    db_path = db_path or find_db_path()
    app = AppContext(db_path)
    ctx.obj = app
    ctx.call_on_close(app.close)
    setup_logging(app.data_dir, verbose)


# ─────────────────────────────────────────────────────────────────────────────
# Graph commands
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.pass_obj
def init(app: AppContext):
    """Create the .reasongraph directory, config and database."""
    existed = app.db_path.exists()
    app.data_dir.mkdir(parents=True, exist_ok=True)
    write_default_config(app.data_dir)
    app.config.patch_dir(app.data_dir).mkdir(parents=True, exist_ok=True)
    app.db  # creates schema
    if existed:
        console.print(f"[yellow]![/yellow] Already initialized at {app.data_dir}")
    else:
        console.print(f"[green]✓[/green] Initialized reasongraph at {app.data_dir}")


def _link_to_ambient_span(app: AppContext, node=None, edge=None, quiet: bool = False):
    context = SpanContext.from_environ()
    span = attach_to_span(
        app.store,
        app.ledger,
        context,
        node=node,
        edge=edge,
        grace_window=app.config.trace.grace_window,
    )
    if span is not None and not quiet:
        console.print(f"  [dim]linked to span {span.id} ({span.change_id[:8]})[/dim]")


@cli.command()
@click.argument("node_type", type=click.Choice(NODE_TYPES))
@click.argument("title")
@click.option("-d", "--description", help="Longer description")
@click.option("-s", "--status", type=click.Choice(NODE_STATUSES), default="pending")
@click.option("-c", "--confidence", type=click.IntRange(0, 100), help="Confidence 0-100")
@click.option("--commit", help="Associated commit hash (HEAD for the current one)")
@click.option("-p", "--prompt", help="Prompt that led to this node")
@click.option("-f", "--files", help="Comma-separated associated files")
@click.option("-b", "--branch", help="Branch tag (default: current git branch)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def add(app: AppContext, node_type, title, description, status, confidence, commit, prompt,
        files, branch, as_json):
    """Add a node."""
    if commit == "HEAD":
        commit = current_commit()
    if branch is None and app.config.branch.auto_detect:
        branch = current_branch()
    metadata = NodeMetadata(
        confidence=confidence, commit=commit, prompt=prompt, files=files, branch=branch
    )
    node = app.store.create_node(node_type, title, description, status=status, metadata=metadata)

    if as_json:
        click.echo(json.dumps(node.to_summary()))
    else:
        console.print(f"[green]✓[/green] Created {node.node_type} [bold]#{node.id}[/bold]: {escape(node.title)}")
        console.print(f"  [dim]change-id {node.change_id}[/dim]")
        if node.branch and not app.config.is_main_branch(node.branch):
            console.print(f"  [dim]branch[/dim] [magenta]{node.branch}[/magenta]")
    _link_to_ambient_span(app, node=node, quiet=as_json)


@cli.command()
@click.argument("from_id", type=int)
@click.argument("to_id", type=int)
@click.option("-t", "--type", "edge_type", type=click.Choice(EDGE_TYPES), default="leads_to")
@click.option("-r", "--rationale", help="Why these nodes are connected")
@click.pass_obj
def link(app: AppContext, from_id, to_id, edge_type, rationale):
    """Connect two nodes."""
    edge = app.store.create_edge(from_id, to_id, edge_type, rationale)
    console.print(f"[green]✓[/green] Linked #{from_id} -\\[{edge_type}]-> #{to_id}")
    _link_to_ambient_span(app, edge=edge)


@cli.command()
@click.argument("node_id", type=int)
@click.argument("new_status", type=click.Choice(NODE_STATUSES))
@click.pass_obj
def status(app: AppContext, node_id, new_status):
    """Change a node's status."""
    node = app.store.update_status(node_id, new_status)
    console.print(f"[green]✓[/green] #{node.id} is now [cyan]{node.status}[/cyan]")


@cli.command()
@click.argument("node_id", type=int)
@click.argument("text", required=False)
@click.option("--commit", help="Also set the commit (HEAD for the current one)")
@click.pass_obj
def prompt(app: AppContext, node_id, text, commit):
    """Attach the originating prompt (and optionally a commit) to a node."""
    if text is None and commit is None:
        raise click.UsageError("Give a prompt TEXT and/or --commit")
    node = app.store.update_metadata(node_id, prompt=text, commit=commit)
    meta = node.metadata
    console.print(f"[green]✓[/green] Updated #{node.id}")
    if meta.commit:
        console.print(f"  commit: [yellow]{meta.commit}[/yellow]")


@cli.command()
@click.option("-t", "--type", "node_type", type=click.Choice(NODE_TYPES))
@click.option("-b", "--branch", help="Only nodes tagged with this branch")
@click.option("-s", "--status", "node_status", type=click.Choice(NODE_STATUSES))
@click.option("--since", help="Created at or after (ISO, '3 days ago', 'yesterday')")
@click.option("--until", help="Created at or before")
@click.option("-r", "--reverse", is_flag=True, help="Newest first")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def nodes(app: AppContext, node_type, branch, node_status, since, until, reverse, as_json):
    """List nodes, oldest first."""
    found = app.store.list_nodes(
        node_type=node_type,
        branch=branch,
        status=node_status,
        since=_parse_time(since),
        until=_parse_time(until),
        reverse=reverse,
    )
    if as_json:
        click.echo(json.dumps([n.to_summary() for n in found], indent=2))
        return
    if not found:
        console.print("[dim]No nodes.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", justify="right")
    table.add_column("Type", style="cyan")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Branch", style="magenta")
    table.add_column("Created", style="dim")
    for n in found:
        table.add_row(
            str(n.id), n.node_type, n.title, n.status, n.branch or "",
            format_relative_time(n.created_at),
        )
    console.print(table)


@cli.command()
@click.option("-t", "--type", "edge_type", type=click.Choice(EDGE_TYPES))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def edges(app: AppContext, edge_type, as_json):
    """List edges, oldest first."""
    found = app.store.list_edges(edge_type=edge_type)
    if as_json:
        click.echo(json.dumps([e.to_summary() for e in found], indent=2))
        return
    if not found:
        console.print("[dim]No edges.[/dim]")
        return
    for e in found:
        line = f"#{e.from_node_id} -[[cyan]{e.edge_type}[/cyan]]-> #{e.to_node_id}"
        if e.rationale:
            line += f"  [dim]{e.rationale}[/dim]"
        console.print(line)


@cli.command()
@click.pass_obj
def graph(app: AppContext):
    """Dump every node and edge as JSON."""
    click.echo(json.dumps(app.store.graph_snapshot(), indent=2))


@cli.command()
@click.option("-n", "--limit", default=20, help="Number of entries to show")
@click.pass_obj
def commands(app: AppContext, limit):
    """Show the local command log."""
    entries = app.store.recent_commands(limit)
    if not entries:
        console.print("[dim]No commands logged.[/dim]")
        return
    for entry in reversed(entries):
        ts = entry.started_at.strftime("%Y-%m-%d %H:%M:%S")
        console.print(f"[dim]{ts}[/dim]  {escape(entry.command)}  [green]{escape(entry.outcome)}[/green]")


@cli.command()
@click.argument("dest", required=False, type=click.Path(path_type=Path))
@click.pass_obj
def backup(app: AppContext, dest):
    """Copy the database (online backup)."""
    if dest is None:
        stamp = utc_now().strftime("%Y%m%dT%H%M%S")
        dest = app.data_dir / "backups" / f"reasongraph-{stamp}.db"
    path = app.store.backup(dest)
    console.print(f"[green]✓[/green] Backed up to {path}")


# ─────────────────────────────────────────────────────────────────────────────
# Patches
# ─────────────────────────────────────────────────────────────────────────────


@cli.group()
def diff():
    """Export and apply graph patches."""


@diff.command("export")
@click.option("-o", "--output", type=click.Path(path_type=Path), help="Patch file to write")
@click.option("-b", "--branch", help="Export nodes tagged with this branch")
@click.option("-n", "--nodes", "node_range", help="Node ids, e.g. '1-10,15'")
@click.option("--since", help="Nodes created at or after")
@click.option("--until", help="Nodes created at or before")
@click.option("--author", help="Author tag (default: git user.name)")
@click.pass_obj
def diff_export(app: AppContext, output, branch, node_range, since, until, author):
    """Write a patch of the selected nodes."""
    try:
        node_ids = parse_node_range(node_range) if node_range else None
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--nodes")

    author = author or app.config.patches.author or author_name()
    patch = export_patch(
        app.store,
        node_ids=node_ids,
        branch=branch,
        since=_parse_time(since),
        until=_parse_time(until),
        author=author,
        base_commit=current_commit(),
    )
    if output is None:
        output = app.config.patch_dir(app.data_dir) / default_patch_name(author, branch)
    try:
        patch.save(output)
    except OSError as e:
        raise ReasonGraphError(f"Failed to write patch {output}: {e}")
    console.print(
        f"[green]✓[/green] Exported {len(patch.nodes)} nodes, {len(patch.edges)} edges to {output}"
    )


@diff.command("apply")
@click.argument("files", nargs=-1, required=True, type=click.Path(path_type=Path))
@click.option("--dry-run", is_flag=True, help="Show what would change without writing")
@click.pass_obj
def diff_apply(app: AppContext, files, dry_run):
    """Merge one or more patches into the local graph.

    Every file is parsed before any is applied, so a malformed file leaves
    the graph untouched.
    """
    patches = [(path, GraphPatch.load(path)) for path in files]
    for path, patch in patches:
        report = apply_patch(app.store, patch, dry_run=dry_run, name=path.name)

        prefix = "[yellow](dry run)[/yellow] " if dry_run else ""
        console.print(f"{prefix}[bold]{path.name}[/bold]")
        console.print(
            f"  nodes: [green]+{report.nodes_added}[/green] added, {report.nodes_skipped} skipped"
        )
        console.print(
            f"  edges: [green]+{report.edges_added}[/green] added, {report.edges_skipped} skipped"
        )
        if report.unresolved:
            console.print(f"  [yellow]{len(report.unresolved)} unresolved edge(s):[/yellow]")
            for edge in report.unresolved:
                console.print(f"    {escape(edge.describe())}")


@diff.command("status")
@click.option("--path", "directory", type=click.Path(path_type=Path), help="Patch directory")
@click.option("-a", "--all", "show_all", is_flag=True, help="Also list applied patches")
@click.pass_obj
def diff_status(app: AppContext, directory, show_all):
    """List patch files not yet applied here."""
    directory = directory or app.config.patch_dir(app.data_dir)
    entries = patch_status(app.store, directory)
    pending = [p for p, applied in entries if not applied]

    if show_all:
        for path, applied in entries:
            mark = "[green]applied[/green]" if applied else "[yellow]pending[/yellow]"
            console.print(f"  {mark}  {path.name}")
    else:
        for path in pending:
            console.print(f"  [yellow]pending[/yellow]  {path.name}")
    if not pending:
        console.print("[green]All patches applied.[/green]")
    else:
        console.print(f"{len(pending)} patch(es) not yet applied in {directory}")


@diff.command("validate")
@click.argument("file", type=click.Path(path_type=Path))
@click.pass_obj
def diff_validate(app: AppContext, file):
    """Check a patch for edges whose endpoints nobody has."""
    patch = GraphPatch.load(file)
    missing = validate_patch(app.store, patch)
    console.print(f"{file.name}: {len(patch.nodes)} nodes, {len(patch.edges)} edges")
    if not missing:
        console.print("[green]✓[/green] Every edge endpoint is available")
        return
    console.print(f"[yellow]{len(missing)} edge(s) reference nodes not in the patch or here:[/yellow]")
    for edge in missing:
        console.print(f"  {escape(edge.describe())}")


# ─────────────────────────────────────────────────────────────────────────────
# Traces
# ─────────────────────────────────────────────────────────────────────────────


@cli.group()
def trace():
    """Record and inspect model API traces."""


@trace.command("start")
@click.option("--session-id", help="Use this session id instead of a new one")
@click.option("--command", "command_text", help="Command being traced")
@click.pass_obj
def trace_start(app: AppContext, session_id, command_text):
    """Start a trace session; prints {"session_id": ...}."""
    session = app.ledger.start_session(
        session_id=session_id, git_branch=current_branch(), command=command_text
    )
    click.echo(json.dumps({"session_id": session.session_id}))


@trace.command("end")
@click.option("--session", "session_id", required=True)
@click.option("--summary", help="One-line summary of the session")
@click.pass_obj
def trace_end(app: AppContext, session_id, summary):
    """End a trace session."""
    session = app.ledger.end_session(session_id, summary)
    click.echo(json.dumps({
        "session_id": session.session_id,
        "input_tokens": session.total_input_tokens,
        "output_tokens": session.total_output_tokens,
    }))


@trace.command("start-span")
@click.option("--session", "session_id", required=True)
@click.pass_obj
def trace_start_span(app: AppContext, session_id):
    """Start a span; prints {"span_id": N}."""
    span = app.ledger.start_span(session_id)
    click.echo(json.dumps({"span_id": span.id}))


@trace.command("record")
@click.option("--session", "session_id", required=True)
@click.option("--span-id", type=int, help="Complete this started span (else start a new one)")
@click.option("--stdin", "from_stdin", is_flag=True, required=True, help="Read the record JSON from stdin")
@click.pass_obj
def trace_record(app: AppContext, session_id, span_id, from_stdin):
    """Complete a span from a JSON record; prints {"span_id": N}."""
    text = click.get_text_stream("stdin").read()
    try:
        record = SpanRecord.model_validate_json(text or "{}")
    except ValueError as e:
        raise ReasonGraphError(f"Invalid span record: {e}")
    if span_id is None:
        span_id = app.ledger.start_span(session_id).id
    span = app.ledger.complete_span(span_id, record)
    click.echo(json.dumps({"span_id": span.id}))


@trace.command("sessions")
@click.option("-n", "--limit", default=20)
@click.option("--linked", is_flag=True, help="Only sessions linked to a node")
@click.pass_obj
def trace_sessions(app: AppContext, limit, linked):
    """List recent trace sessions."""
    sessions = app.ledger.list_sessions(limit=limit, linked_only=linked)
    if not sessions:
        console.print("[dim]No trace sessions.[/dim]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Session")
    table.add_column("Started", style="dim")
    table.add_column("Tokens in/out", justify="right")
    table.add_column("Node", justify="right")
    table.add_column("Summary")
    for s in sessions:
        table.add_row(
            s.session_id,
            format_relative_time(s.started_at),
            f"{s.total_input_tokens}/{s.total_output_tokens}",
            f"#{s.linked_node_id}" if s.linked_node_id else "",
            s.summary or ("[cyan]active[/cyan]" if s.is_active else ""),
        )
    console.print(table)


@trace.command("spans")
@click.argument("session_id")
@click.pass_obj
def trace_spans(app: AppContext, session_id):
    """List the spans of a session in start order."""
    spans = app.ledger.list_spans(session_id)
    if not spans:
        console.print("[dim]No spans.[/dim]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Span", justify="right")
    table.add_column("State")
    table.add_column("Model", style="cyan")
    table.add_column("ms", justify="right")
    table.add_column("Tools")
    table.add_column("Node", justify="right")
    for s in spans:
        table.add_row(
            str(s.sequence_num), str(s.id), s.state.value, s.model or "",
            str(s.duration_ms or ""), s.tool_names or "",
            f"#{s.linked_node_id}" if s.linked_node_id else "",
        )
    console.print(table)


@trace.command("show")
@click.argument("span_id", type=int)
@click.option("--full", is_flag=True, help="Print captured content in full")
@click.pass_obj
def trace_show(app: AppContext, span_id, full):
    """Show one span with its content and linked nodes."""
    span = app.ledger.get_span(span_id)
    console.print(f"[bold]Span {span.id}[/bold] ({span.change_id}) #{span.sequence_num} "
                  f"in {span.session_id} [cyan]{span.state.value}[/cyan]")
    if span.model:
        console.print(f"Model: {span.model}  stop: {span.stop_reason or '-'}")
    console.print(
        f"Tokens: in {span.input_tokens or 0}, out {span.output_tokens or 0}, "
        f"cache r/w {span.cache_read or 0}/{span.cache_write or 0}"
    )
    for label, text in (("User", span.user_preview), ("Thinking", span.thinking_preview),
                        ("Response", span.response_preview)):
        if text:
            console.print(f"[bold]{label}:[/bold] {text}")
    if full:
        for item in app.ledger.get_content(span.id):
            title = item.content_type + (f" ({item.tool_name})" if item.tool_name else "")
            console.print(f"[bold]── {title}[/bold]")
            console.print(item.content, markup=False)
    linked = app.ledger.nodes_for_span(span.id)
    if linked:
        console.print("[bold]Nodes created during this span:[/bold]")
        for n in linked:
            console.print(f"  #{n.id} {n.node_type}: {escape(n.title)}")


@trace.command("link")
@click.argument("node_id", type=int)
@click.option("--session", "session_id", help="Trace session to link")
@click.option("--span", "span_id", type=int, help="Span to link")
@click.pass_obj
def trace_link(app: AppContext, node_id, session_id, span_id):
    """Link a trace session or span to a node."""
    if bool(session_id) == bool(span_id):
        raise click.UsageError("Give exactly one of --session or --span")
    if session_id:
        app.ledger.link_session_to_node(session_id, node_id)
        console.print(f"[green]✓[/green] Session {session_id} linked to #{node_id}")
    else:
        app.ledger.link_span_to_node(span_id, node_id)
        console.print(f"[green]✓[/green] Span {span_id} linked to #{node_id}")


@trace.command("unlink")
@click.option("--session", "session_id", help="Trace session to unlink")
@click.option("--span", "span_id", type=int, help="Span to unlink")
@click.pass_obj
def trace_unlink(app: AppContext, session_id, span_id):
    """Remove a session or span link."""
    if bool(session_id) == bool(span_id):
        raise click.UsageError("Give exactly one of --session or --span")
    if session_id:
        app.ledger.unlink_session(session_id)
    else:
        app.ledger.unlink_span(span_id)
    console.print("[green]✓[/green] Unlinked")


@trace.command("prune")
@click.option("--days", default=30, show_default=True, help="Delete sessions older than this")
@click.option("--keep-linked/--include-linked", default=True, show_default=True)
@click.option("--dry-run", is_flag=True)
@click.pass_obj
def trace_prune(app: AppContext, days, keep_linked, dry_run):
    """Delete old trace data."""
    counts = app.ledger.prune(days, keep_linked=keep_linked, dry_run=dry_run)
    verb = "Would delete" if dry_run else "Deleted"
    console.print(
        f"{verb} {counts['sessions']} sessions, {counts['spans']} spans, "
        f"{counts['content']} content rows"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Proxy
# ─────────────────────────────────────────────────────────────────────────────


@cli.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option("--auto-link", is_flag=True, help="Link the session to the most recent goal")
@click.option("--summary", help="Session summary (default: the exit status)")
@click.pass_context
def proxy(ctx, command, auto_link, summary):
    """Run COMMAND inside a trace session.

    Example:
        reasongraph proxy -- my-agent --task "fix the tests"
    """
    app: AppContext = ctx.obj
    session = app.ledger.start_session(
        git_branch=current_branch(), command=" ".join(command)
    )
    env = SpanContext(session_id=session.session_id).child_env()
    env[ENV_BIN] = shutil.which("reasongraph") or sys.argv[0]
    env[ENV_DB_PATH] = str(app.db_path.resolve())

    err_console.print(f"[dim]trace session {session.session_id}[/dim]")
    try:
        result = subprocess.run(list(command), env=env)
        code = result.returncode
    except OSError as e:
        app.ledger.end_session(session.session_id, f"failed to start: {e}")
        raise ReasonGraphError(f"Cannot run {command[0]}: {e}")
    except KeyboardInterrupt:
        code = 130

    ended = app.ledger.end_session(session.session_id, summary or f"exit {code}")
    if auto_link:
        goal = app.store.latest_node("goal")
        if goal is not None:
            app.ledger.link_session_to_node(session.session_id, goal.id)
            err_console.print(f"[dim]linked to goal #{goal.id}: {escape(goal.title)}[/dim]")

    spans = app.ledger.list_spans(session.session_id)
    err_console.print(
        f"[bold]{len(spans)}[/bold] spans, "
        f"{ended.total_input_tokens} input / {ended.total_output_tokens} output tokens"
    )
    ctx.exit(code)


def main():
    """Entry point for the reasongraph CLI."""
    cli(prog_name="reasongraph")


if __name__ == "__main__":
    main()
