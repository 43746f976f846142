"""Scheduler CLI commands."""

import time

import click
from rich.console import Console

from cli.utils import load_components
from facts.errors import UnknownRetrieverError
from observability import log_run_summary
from shared_types import RunStatus

console = Console()


@click.command()
@click.pass_context
def run(ctx: click.Context):
    """Start the scheduler and run until interrupted."""
    c = load_components(ctx.obj.get("config_path"))
    scheduler = c["scheduler"]
    scheduler.start()

    console.print(f"[green]Started[/] {len(c['registry'])} fact retriever(s)")
    for reg in c["registry"]:
        nxt = scheduler.next_fire_time(reg.id)
        console.print(f"  {reg.id} [dim]({reg.cadence}, next {nxt:%Y-%m-%d %H:%M %Z})[/]")
    console.print("Press Ctrl+C to stop")

    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        scheduler.stop()
        log_run_summary()
        console.print("\n[yellow]Stopped[/]")


@click.command("run-once")
@click.argument("retriever_id")
@click.pass_context
def run_once(ctx: click.Context, retriever_id: str):
    """Run one fact retriever now (for cron integration)."""
    c = load_components(ctx.obj.get("config_path"))
    try:
        report = c["scheduler"].run_now(retriever_id)
    except UnknownRetrieverError:
        console.print(f"[red]Unknown retriever:[/] {retriever_id}")
        raise SystemExit(1)

    if report is None:
        console.print(f"[yellow]Skipped[/] {retriever_id} (another run holds it)")
        return

    if report.status is RunStatus.FAILED:
        console.print(f"[red]Failed:[/] {report.error}")
        raise SystemExit(1)

    console.print(
        f"[green]{retriever_id}[/]: {report.inserted} snapshot(s) written, "
        f"{report.duplicates} duplicate(s), {report.pruned} pruned, "
        f"{len(report.violations)} violation(s) in {report.duration_s:.2f}s"
    )
    for v in report.violations[:10]:
        detail = f" {v.fact}" if v.fact else ""
        console.print(f"  [dim]{v.entity}{detail}: {v.reason}[/]")


@click.command()
@click.pass_context
def prune(ctx: click.Context):
    """Apply retention policies to every stored snapshot now."""
    c = load_components(ctx.obj.get("config_path"))
    with console.status("Pruning..."):
        results = c["scheduler"].sweep_retention()

    total = sum(results.values())
    for rid, deleted in sorted(results.items()):
        if deleted:
            console.print(f"  {rid}: {deleted}")
    console.print(f"Pruned {total} snapshot(s)")
