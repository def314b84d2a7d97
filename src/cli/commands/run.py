"""Loop CLI commands — run the supervisor or a single tick."""

import time

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components
from observability import log_run_summary

console = Console()


@click.command()
@click.option("--summary-every", default=60, help="Log a metrics summary every N ticks (0 = never)")
@click.pass_obj
def run(obj: dict, summary_every: int):
    """Start the supervisory loop in the foreground."""
    c = get_components(obj.get("config_path"))
    cortex = c["cortex"]
    cortex.start()
    console.print(f"[green]Cortex running[/] (tick every {cortex.tick_interval:g}s). Press Ctrl+C to stop")

    elapsed = 0
    try:
        while True:
            time.sleep(cortex.tick_interval)
            elapsed += 1
            if summary_every and elapsed % summary_every == 0:
                log_run_summary()
    except KeyboardInterrupt:
        cortex.stop()
        console.print("\n[yellow]Stopped[/]")


@click.command()
@click.option("--consolidate", is_flag=True, help="Force a consolidation pass on this tick")
@click.pass_obj
def tick(obj: dict, consolidate: bool):
    """Run exactly one tick and print its report."""
    c = get_components(obj.get("config_path"))
    cortex = c["cortex"]
    try:
        report = cortex.tick()
        if consolidate and report.consolidation is None:
            report.consolidation = cortex.consolidate()
    finally:
        cortex.stop()

    console.print(f"Tick [bold]{report.tick_id}[/] at {report.started_at:%Y-%m-%d %H:%M:%S}")
    console.print(f"Signals processed: {report.signals_processed}")
    if report.remediations:
        table = Table(title="Remediations")
        table.add_column("Action", width=8)
        table.add_column("Kind", width=8)
        table.add_column("Component")
        table.add_column("Reason")
        for r in report.remediations:
            table.add_row(r.action, str(r.kind), r.component_id, r.reason)
        console.print(table)
    for flag in report.channel_flags:
        console.print(f"[yellow]Channel flagged:[/] {flag.channel_id} ({flag.reason})")
    if report.latency_degraded:
        console.print("[yellow]Branch latency degraded[/]")
    if report.consolidation is not None:
        r = report.consolidation
        state = "[red]abandoned[/]" if r.abandoned else "[green]complete[/]"
        console.print(
            f"Consolidation {state}: merged={r.merged} associated={r.associated} "
            f"superseded={r.superseded} contradictions={r.contradictions} pruned={r.pruned + r.orphans_pruned}"
        )
    for err in report.errors:
        console.print(f"[red]Error:[/] {err}")
