"""
plaintrack CLI - Command-line interface.

Every command loads the store fresh from the files; only `watch` keeps a
process alive and runs the filesystem watcher.

Commands:
- plaintrack ls → List records
- plaintrack show ID → Show one record
- plaintrack ready / blocked → Readiness classification
- plaintrack next → What to work on next
- plaintrack dep-tree ID → Dependency tree
- plaintrack cycles → Dependency cycles
- plaintrack doctor → Files that failed to load
- plaintrack search "query" → Semantic search
- plaintrack cache status|prune|rebuild → Embedding cache maintenance
- plaintrack plan ls|status|next → Plan progress
- plaintrack watch → Follow changes to the repository
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from plaintrack.core.config import settings, setup_logging
from plaintrack.core.errors import (
    AmbiguousIdError,
    FeatureUnavailableError,
    NotFoundError,
    WatcherError,
)
from plaintrack.core.types import InclusionReason, PlanState, Record, RecordStatus, RecordType, StoreEvent
from plaintrack.engine.graph import GraphEngine, format_tree, tree_truncated
from plaintrack.engine.status import StatusEngine
from plaintrack.storage.embeddings import EmbeddingCache
from plaintrack.storage.store import Store
from plaintrack.storage.watcher import StoreWatcher

app = typer.Typer(
    name="plaintrack",
    help="plaintrack - Plain-text issue tracking",
    no_args_is_help=True,
)
cache_app = typer.Typer(help="Embedding cache maintenance", no_args_is_help=True)
plan_app = typer.Typer(help="Plan progress", no_args_is_help=True)
app.add_typer(cache_app, name="cache")
app.add_typer(plan_app, name="plan")

console = Console()

STATUS_STYLES = {
    RecordStatus.NEW: "white",
    RecordStatus.NEXT: "cyan",
    RecordStatus.IN_PROGRESS: "yellow",
    RecordStatus.COMPLETE: "green",
    RecordStatus.CANCELLED: "dim",
}

PLAN_STYLES = {
    PlanState.NEW: "white",
    PlanState.IN_PROGRESS: "yellow",
    PlanState.COMPLETE: "green",
    PlanState.CANCELLED: "dim",
}


def run_async(coro):
    """Run an async function synchronously."""
    return asyncio.run(coro)


def fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(1)


def get_store(ctx: typer.Context) -> Store:
    """Load a fresh store for this invocation."""
    store = Store(ctx.obj["root"])
    store.load()
    return store


def resolve(store: Store, partial_id: str) -> Record:
    try:
        return store.resolve(partial_id)
    except AmbiguousIdError as e:
        fail(f"ambiguous ID '{partial_id}', candidates: {', '.join(e.candidates)}")
    except NotFoundError as e:
        fail(str(e))


def status_text(status: RecordStatus) -> str:
    style = STATUS_STYLES[status]
    return f"[{style}]{status.value}[/{style}]"


def records_table(title: str, records: list[Record]) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Type", style="dim")
    table.add_column("P", justify="right")
    table.add_column("Title")

    for record in records:
        table.add_row(
            record.id,
            status_text(record.status),
            record.record_type.value,
            str(record.priority),
            record.title or "-",
        )
    return table


@app.callback()
def main(
    ctx: typer.Context,
    root: Optional[Path] = typer.Option(None, "--root", "-r", help="Repository root directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Plain-text issue tracking."""
    setup_logging("DEBUG" if verbose else "WARNING")
    ctx.obj = {"root": root or settings.root_dir}


# ============================================
# Records
# ============================================

@app.command("ls")
def list_records(
    ctx: typer.Context,
    status: Optional[RecordStatus] = typer.Option(None, help="Only records with this status"),
    record_type: Optional[RecordType] = typer.Option(None, "--type", help="Only records of this type"),
):
    """List records."""
    store = get_store(ctx)
    records = store.list_records(status=status, record_type=record_type)

    if records:
        console.print(records_table("Records", records))
    else:
        console.print("[dim]No records found[/dim]")


@app.command()
def show(
    ctx: typer.Context,
    record_id: str = typer.Argument(..., help="Record ID or unique prefix"),
):
    """Show a record with its dependencies."""
    store = get_store(ctx)
    record = resolve(store, record_id)
    graph = GraphEngine.from_store(store)

    lines = [
        f"Status: {status_text(record.status)}",
        f"Type: {record.record_type.value}",
        f"Priority: P{record.priority}",
    ]
    if record.parent:
        lines.append(f"Parent: {record.parent}")
    if record.created:
        lines.append(f"Created: {record.created}")
    if record.status.is_unstarted:
        lines.append("Ready: [green]yes[/green]" if graph.is_ready(record) else "Ready: [red]no[/red]")

    console.print(Panel("\n".join(lines), title=f"{record.id}: {record.title or ''}"))

    if record.deps:
        console.print("\n[bold]Dependencies:[/bold]")
        for dep_id in record.deps:
            dep = store.get(dep_id)
            if dep is None:
                console.print(f"  • {dep_id} [red][missing][/red]")
            else:
                console.print(f"  • {dep_id} {status_text(dep.status)} {dep.title or ''}")

    if record.links:
        console.print("\n[bold]Links:[/bold]")
        for link_id in record.links:
            console.print(f"  • {link_id}")

    if record.body:
        console.print()
        console.print(Markdown(record.body))


@app.command()
def ready(ctx: typer.Context):
    """List records that can be started now."""
    store = get_store(ctx)
    records = GraphEngine.from_store(store).ready_records()

    if records:
        console.print(records_table("Ready", records))
    else:
        console.print("[dim]Nothing is ready[/dim]")


@app.command()
def blocked(ctx: typer.Context):
    """List records waiting on dependencies."""
    store = get_store(ctx)
    entries = GraphEngine.from_store(store).blocked_records()

    if not entries:
        console.print("[green]Nothing is blocked[/green]")
        return

    table = Table(title="Blocked")
    table.add_column("ID", style="cyan")
    table.add_column("P", justify="right")
    table.add_column("Title")
    table.add_column("Waiting on", style="red")

    for entry in entries:
        table.add_row(
            entry.record.id,
            str(entry.record.priority),
            entry.record.title or "-",
            ", ".join(entry.unmet_deps),
        )
    console.print(table)


@app.command("next")
def next_work(
    ctx: typer.Context,
    limit: int = typer.Option(5, "--limit", "-n", help="Maximum number of entries"),
):
    """Show what to work on next."""
    store = get_store(ctx)
    items = GraphEngine.from_store(store).next_work(limit)

    if not items:
        console.print("[green]Nothing to do! You're all caught up.[/green]")
        return

    table = Table(title="Next Work")
    table.add_column("ID", style="cyan")
    table.add_column("P", justify="right")
    table.add_column("Reason")
    table.add_column("Title")
    table.add_column("Notes", style="dim")

    for item in items:
        if item.reason is InclusionReason.BLOCKING:
            notes = f"unblocks {', '.join(item.unblocks)}"
        elif item.reason is InclusionReason.BLOCKED:
            notes = f"waiting on {', '.join(item.unmet_deps)}"
        else:
            notes = ""
        table.add_row(item.id, str(item.record.priority), item.reason.value, item.record.title or "-", notes)

    console.print(table)


@app.command("dep-tree")
def dep_tree(
    ctx: typer.Context,
    record_id: str = typer.Argument(..., help="Root record ID or unique prefix"),
    full: bool = typer.Option(False, "--full", help="Repeat shared dependencies under every parent"),
    as_json: bool = typer.Option(False, "--json", help="Print the tree as JSON"),
):
    """Show the dependency tree below a record."""
    store = get_store(ctx)
    record = resolve(store, record_id)
    tree = GraphEngine.from_store(store).dependency_tree(record.id, full=full)

    if as_json:
        console.print_json(json.dumps(tree.to_dict()))
        return

    console.print(format_tree(tree), highlight=False, markup=False)
    if tree_truncated(tree):
        console.print(f"[yellow]Tree truncated at {settings.tree_max_nodes} nodes[/yellow]")


@app.command()
def cycles(ctx: typer.Context):
    """Report dependency cycles."""
    store = get_store(ctx)
    found = GraphEngine.from_store(store).find_cycles()

    if not found:
        console.print("[green]No dependency cycles[/green]")
        return

    console.print(f"[bold red]{len(found)} dependency cycle(s):[/bold red]")
    for cycle in found:
        console.print(f"  • {cycle}", markup=False)
    raise typer.Exit(1)


@app.command()
def doctor(ctx: typer.Context):
    """Report files that failed to load or were corrected while loading."""
    store = get_store(ctx)
    diagnostics = store.diagnostics()

    console.print(f"Root: {store.root}")
    console.print(f"  Records: {len(store)}")
    console.print(f"  Plans: {len(store.list_plans())}")

    if not diagnostics:
        console.print("\n[green]✓ All files loaded cleanly[/green]")
        return

    console.print(f"\n[yellow]{len(diagnostics)} problem(s):[/yellow]")
    for diagnostic in diagnostics:
        console.print(f"  • [{diagnostic.kind}] {diagnostic.path}: {diagnostic.message}", markup=False)
    raise typer.Exit(1)


# ============================================
# Semantic search
# ============================================

@app.command()
def search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="What to look for"),
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum number of results"),
    threshold: Optional[float] = typer.Option(None, help="Minimum similarity (0-1)"),
):
    """Find records by meaning rather than exact words."""
    store = get_store(ctx)
    cache = EmbeddingCache(store)

    try:
        with console.status("Searching..."):
            results = run_async(cache.search_text(query, limit=limit, min_threshold=threshold))
    except FeatureUnavailableError as e:
        console.print(f"[yellow]⚠ {e}[/yellow]")
        raise typer.Exit(1)

    if not results:
        console.print("[dim]No matches[/dim]")
        return

    table = Table(title=f"Results for '{query}'")
    table.add_column("Score", justify="right", style="green")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Title")

    for result in results:
        table.add_row(
            f"{result.similarity:.3f}",
            result.record.id,
            status_text(result.record.status),
            result.record.title or "-",
        )
    console.print(table)


@cache_app.command("status")
def cache_status(ctx: typer.Context):
    """Show embedding cache status."""
    store = get_store(ctx)
    info = EmbeddingCache(store).status()

    console.print("[bold]Embedding cache[/bold]\n")
    console.print(f"Semantic search: {'[green]enabled[/green]' if info.enabled else '[red]unavailable[/red]'}")
    console.print(f"Model: {info.model_name} ({info.dimensions} dimensions)")
    console.print(f"Directory: {info.cache_dir}")
    console.print(f"Entries on disk: {info.entries_on_disk}")
    console.print(f"Orphaned entries: {info.orphaned_entries}")
    console.print(
        f"Coverage: {info.records_with_embeddings}/{info.total_records} "
        f"({info.coverage_percent:.0f}%)"
    )


@cache_app.command("prune")
def cache_prune(ctx: typer.Context):
    """Delete cached embeddings for file versions that no longer exist."""
    store = get_store(ctx)
    removed = EmbeddingCache(store).prune()
    console.print(f"[green]✓ Pruned {removed} orphaned embedding(s)[/green]")


@cache_app.command("rebuild")
def cache_rebuild(ctx: typer.Context):
    """Regenerate every embedding."""
    store = get_store(ctx)
    cache = EmbeddingCache(store)

    try:
        with console.status("Generating embeddings..."):
            generated = run_async(cache.rebuild())
    except FeatureUnavailableError as e:
        console.print(f"[yellow]⚠ {e}[/yellow]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Generated {generated} embedding(s)[/green]")


# ============================================
# Plans
# ============================================

@plan_app.command("ls")
def plan_list(ctx: typer.Context):
    """List plans with their computed status."""
    store = get_store(ctx)
    plans = store.list_plans()

    if not plans:
        console.print("[dim]No plans found[/dim]")
        return

    engine = StatusEngine.from_store(store)
    table = Table(title="Plans")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Title")

    for plan in plans:
        status = engine.plan_status(plan)
        style = PLAN_STYLES[status.status]
        table.add_row(
            plan.id,
            f"[{style}]{status.status.value}[/{style}]",
            f"{status.completed_count}/{status.total_count}",
            plan.title or "-",
        )
    console.print(table)


def resolve_plan(store: Store, plan_id: str):
    try:
        return store.resolve_plan(plan_id)
    except AmbiguousIdError as e:
        fail(f"ambiguous plan ID '{plan_id}', candidates: {', '.join(e.candidates)}")
    except NotFoundError as e:
        fail(str(e))


@plan_app.command("status")
def plan_status(
    ctx: typer.Context,
    plan_id: str = typer.Argument(..., help="Plan ID or unique prefix"),
):
    """Show a plan's computed status, per phase for phased plans."""
    store = get_store(ctx)
    plan = resolve_plan(store, plan_id)
    engine = StatusEngine.from_store(store)
    status = engine.plan_status(plan)
    style = PLAN_STYLES[status.status]

    console.print(Panel(
        f"Status: [{style}]{status.status.value}[/{style}]\n"
        f"Progress: {status.completed_count}/{status.total_count} complete",
        title=f"{plan.id}: {plan.title or ''}",
    ))

    if plan.is_phased:
        table = Table(title="Phases")
        table.add_column("#", justify="right")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Progress", justify="right")

        for phase in engine.phase_statuses(plan):
            phase_style = PLAN_STYLES[phase.status]
            table.add_row(
                phase.phase_number,
                phase.phase_name,
                f"[{phase_style}]{phase.status.value}[/{phase_style}]",
                f"{phase.completed_count}/{phase.total_count}",
            )
        console.print(table)


@plan_app.command("next")
def plan_next(
    ctx: typer.Context,
    plan_id: str = typer.Argument(..., help="Plan ID or unique prefix"),
    count: int = typer.Option(1, "--count", "-n", help="Items per phase"),
    first_phase: bool = typer.Option(False, "--first-phase", help="Only the first unfinished phase"),
):
    """Show the next actionable items in a plan."""
    store = get_store(ctx)
    plan = resolve_plan(store, plan_id)
    groups = StatusEngine.from_store(store).next_actionable(plan, count, first_phase_only=first_phase)

    if not groups:
        console.print("[green]Nothing left to do in this plan[/green]")
        return

    for group in groups:
        if group.phase_number is not None:
            console.print(f"\n[bold]Phase {group.phase_number}: {group.phase_name}[/bold]")
        for record in group.records:
            console.print(f"  • {record.id} {status_text(record.status)} {record.title or ''}")


# ============================================
# Watch
# ============================================

@app.command()
def watch(ctx: typer.Context):
    """Keep the store current and report changes until interrupted."""
    store = get_store(ctx)
    console.print(f"Watching {store.root} ({len(store)} records). Press Ctrl-C to stop.")

    def report(event: StoreEvent) -> None:
        if event is StoreEvent.RECORDS_CHANGED:
            console.print(f"[cyan]Records changed[/cyan] ({len(store)} records)")
        else:
            console.print(f"[cyan]Plans changed[/cyan] ({len(store.list_plans())} plans)")

    try:
        with StoreWatcher(store) as watcher:
            watcher.subscribe(report)
            while True:
                time.sleep(1)
    except WatcherError as e:
        fail(str(e))
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped[/dim]")


if __name__ == "__main__":
    app()
