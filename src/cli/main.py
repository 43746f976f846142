"""CLI entry point for the fact engine."""

import sys
from pathlib import Path

import click
from rich.console import Console

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cli.commands import health, history, latest, prune, retrievers, run, run_once
from cli.config import load_config_model
from cli.logging_config import setup_logging

console = Console()


@click.group()
@click.version_option(version="0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file (default: $FACTS_CONFIG, ./facts.yaml, ~/.facts/config.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Path | None):
    """Facts - scheduled fact retrieval for catalog entities."""
    try:
        config = load_config_model(config_path)
    except ValueError as e:
        console.print(f"[red]Config error:[/] {e}")
        sys.exit(1)

    level = "DEBUG" if verbose else config.logging.level
    setup_logging(
        json_mode=config.logging.json_mode,
        level=level,
        secrets=[config.catalog.token] if config.catalog.token else (),
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


cli.add_command(run)
cli.add_command(run_once)
cli.add_command(retrievers)
cli.add_command(latest)
cli.add_command(history)
cli.add_command(health)
cli.add_command(prune)


if __name__ == "__main__":
    cli()
