"""Retriever listing and health CLI commands."""

import click
from rich.console import Console
from rich.table import Table

from cli.utils import load_components
from facts.models import MaxItems, TimeToLive

console = Console()


def _describe_retention(policy) -> str:
    if isinstance(policy, MaxItems):
        return f"keep {policy.n}"
    if isinstance(policy, TimeToLive):
        return f"ttl {policy.duration}"
    return "unlimited"


@click.command()
@click.pass_context
def retrievers(ctx: click.Context):
    """List registered fact retrievers."""
    c = load_components(ctx.obj.get("config_path"))
    scheduler = c["scheduler"]

    table = Table(title="Fact Retrievers", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Version")
    table.add_column("Cadence")
    table.add_column("Next run", style="dim")
    table.add_column("Retention")
    table.add_column("Facts", justify="right")

    for reg in c["registry"]:
        nxt = scheduler.next_fire_time(reg.id)
        table.add_row(
            reg.id,
            reg.version,
            reg.cadence,
            nxt.strftime("%Y-%m-%d %H:%M %Z") if nxt else "-",
            _describe_retention(reg.retention),
            str(len(reg.schema)),
        )
    console.print(table)


@click.command()
@click.pass_context
def health(ctx: click.Context):
    """Show run health per fact retriever."""
    c = load_components(ctx.obj.get("config_path"))
    rows = c["health"].get_health_summary()

    if not rows:
        console.print("[yellow]No runs recorded yet.[/]")
        return

    table = Table(title="Retriever Health", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Runs", justify="right")
    table.add_column("Error rate", justify="right")
    table.add_column("Last written", justify="right")
    table.add_column("Last success", style="dim")
    table.add_column("Last error", max_width=50)

    styles = {"healthy": "green", "degraded": "yellow", "failing": "red"}
    for r in rows:
        style = styles[r["status"]]
        table.add_row(
            r["fact_source_id"],
            f"[{style}]{r['status']}[/]",
            str(r["total_runs"]),
            f"{r['error_rate']:.1f}%",
            str(r["last_inserted"]),
            (r["last_success_at"] or "-")[:19],
            r["last_error"] or "",
        )
    console.print(table)
