"""Fact lookup CLI commands."""

from datetime import datetime

import click
from rich.console import Console
from rich.table import Table

from cli.utils import load_components
from facts.models import DateRange, EntityRef, FactSnapshot

console = Console()


def _format_value(value) -> str:
    if isinstance(value, frozenset):
        return ", ".join(sorted(value)) or "(empty)"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _parse_entity(ref: str) -> EntityRef:
    try:
        return EntityRef.parse(ref)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="ENTITY")


def _snapshot_rows(table: Table, source: str, snapshot: FactSnapshot):
    ts = snapshot.timestamp.strftime("%Y-%m-%d %H:%M:%S")
    for name, value in sorted(snapshot.values.items()):
        table.add_row(source, ts, name, _format_value(value))


@click.command()
@click.argument("entity")
@click.option("-s", "--source", "sources", multiple=True, help="Limit to fact retriever id(s)")
@click.pass_context
def latest(ctx: click.Context, entity: str, sources: tuple):
    """Show the latest facts for ENTITY (kind:namespace/name)."""
    ref = _parse_entity(entity)
    c = load_components(ctx.obj.get("config_path"))
    snapshots = c["query"].get_latest_for_entity(ref, list(sources) or None)

    if not snapshots:
        console.print(f"[yellow]No facts for {ref}.[/]")
        return

    table = Table(title=f"Latest facts: {ref}", show_header=True)
    table.add_column("Source", style="cyan")
    table.add_column("Collected", style="dim")
    table.add_column("Fact", style="green")
    table.add_column("Value")
    for source, snapshot in snapshots.items():
        _snapshot_rows(table, source, snapshot)
    console.print(table)


@click.command()
@click.argument("source")
@click.argument("entity")
@click.option("--since", type=click.DateTime(), help="Earliest timestamp (UTC)")
@click.option("--until", type=click.DateTime(), help="Latest timestamp (UTC)")
@click.option("-n", "--limit", default=20, help="Max snapshots to show")
@click.pass_context
def history(ctx: click.Context, source: str, entity: str, since, until, limit: int):
    """Show stored snapshots of SOURCE for ENTITY, newest first."""
    ref = _parse_entity(entity)
    try:
        date_range = DateRange(since, until) if since or until else None
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--since/--until")

    c = load_components(ctx.obj.get("config_path"))
    snapshots = c["query"].get_history(source, ref, date_range=date_range, limit=limit)

    if not snapshots:
        console.print(f"[yellow]No snapshots of {source} for {ref}.[/]")
        return

    table = Table(title=f"{source}: {ref}", show_header=True)
    table.add_column("Source", style="cyan")
    table.add_column("Collected", style="dim")
    table.add_column("Fact", style="green")
    table.add_column("Value")
    for snapshot in snapshots:
        _snapshot_rows(table, source, snapshot)
    console.print(table)
    console.print(f"[dim]{len(snapshots)} snapshot(s)[/]")
