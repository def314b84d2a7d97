"""CLI entry point for the cortex supervisor."""

import sys
from pathlib import Path

import click
from rich.console import Console

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cli.commands import breaker, memory, run, tick
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
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Config file (default: ./cortex.yaml or ~/.cortex/config.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Path | None):
    """Cortex - supervisor and memory consolidation core."""
    try:
        config = load_config_model(config_path)
    except ValueError as e:
        console.print(f"[red]Config error:[/] {e}")
        ctx.exit(1)
    setup_logging(
        json_mode=config.logging.json_output,
        level="DEBUG" if verbose else config.logging.level,
        log_file=config.paths.log_file,
    )
    ctx.obj = {"config_path": config_path}


cli.add_command(run)
cli.add_command(tick)
cli.add_command(breaker)
cli.add_command(memory)


if __name__ == "__main__":
    cli()
