"""Memory CLI commands — status, consolidate, ledger, revert, restore, bulletin."""

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components

console = Console()


@click.group()
def memory():
    """Shared memory graph maintenance."""
    pass


@memory.command("status")
@click.pass_obj
def memory_status(obj: dict):
    """Show memory counts by type and status."""
    c = get_components(obj.get("config_path"), with_cortex=False)
    stats = c["store"].get_stats()

    console.print(f"Active memories: {stats['total_active']}")
    console.print(f"Merged: {stats['total_merged']}")
    console.print(f"Pruned: {stats['total_pruned']}")
    console.print(f"Associations: {stats['associations']}")
    if stats["by_type"]:
        console.print("\nBy type:")
        for kind, cnt in sorted(stats["by_type"].items()):
            console.print(f"  {kind}: {cnt}")
    console.print("\nImportance:")
    for bucket, cnt in stats["importance_histogram"].items():
        console.print(f"  {bucket}: {cnt}")


@memory.command("consolidate")
@click.option(
    "--only",
    "operations",
    multiple=True,
    type=click.Choice(["relations", "observations", "decay", "prune", "orphans", "centrality"]),
    help="Run only these phases (repeatable)",
)
@click.pass_obj
def memory_consolidate(obj: dict, operations: tuple[str, ...]):
    """Run a consolidation pass now."""
    c = get_components(obj.get("config_path"))
    report = c["engine"].run(operations=operations or None)
    if not report.abandoned and c.get("bulletin") is not None:
        c["bulletin"].build()

    console.print(f"Run [bold]{report.run_id}[/]")
    for label, value in (
        ("Merged", report.merged),
        ("Associated", report.associated),
        ("Superseded", report.superseded),
        ("Contradictions", report.contradictions),
        ("Decayed", report.decayed),
        ("Pruned", report.pruned),
        ("Orphans pruned", report.orphans_pruned),
        ("Centrality updated", report.centrality_updated),
        ("Reasoning calls", report.reasoning_calls),
    ):
        console.print(f"  {label}: {value}")
    for err in report.errors:
        console.print(f"[red]Error:[/] {err}")


@memory.command("log")
@click.option("--limit", "-n", default=20)
@click.option("--run", "run_id", default=None, help="Only entries from this run")
@click.pass_obj
def memory_log(obj: dict, limit: int, run_id: str | None):
    """Show recent consolidation ledger entries."""
    c = get_components(obj.get("config_path"), with_cortex=False)
    entries = c["store"].ledger(limit=limit, run_id=run_id)
    if not entries:
        console.print("Ledger is empty.")
        return

    table = Table(title="Consolidation Ledger")
    table.add_column("ID", width=6)
    table.add_column("Run", width=12)
    table.add_column("Action", width=13)
    table.add_column("Memories")
    table.add_column("When")
    for e in entries:
        action = f"[dim]{e.action} (reverted)[/]" if e.reverted else e.action
        table.add_row(
            str(e.id),
            e.run_id,
            action,
            ", ".join(m[:8] for m in e.memory_ids),
            e.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@memory.command("revert")
@click.argument("entry_id", type=int)
@click.pass_obj
def memory_revert(obj: dict, entry_id: int):
    """Undo a single ledger entry."""
    c = get_components(obj.get("config_path"), with_cortex=False)
    if c["store"].revert(entry_id):
        console.print(f"[green]Reverted[/] ledger entry {entry_id}")
    else:
        console.print(f"[yellow]Nothing to revert for entry {entry_id}[/]")


@memory.command("restore")
@click.argument("memory_id")
@click.pass_obj
def memory_restore(obj: dict, memory_id: str):
    """Bring a pruned memory back."""
    c = get_components(obj.get("config_path"), with_cortex=False)
    if c["store"].restore(memory_id):
        console.print(f"[green]Restored[/] {memory_id}")
    else:
        console.print(f"[yellow]{memory_id} is not pruned[/]")


@memory.command("bulletin")
@click.pass_obj
def memory_bulletin(obj: dict):
    """Build and print the memory bulletin."""
    c = get_components(obj.get("config_path"))
    if c.get("bulletin") is None:
        console.print("[yellow]Bulletin disabled in config[/]")
        return
    bulletin = c["bulletin"].build()
    console.print(bulletin.text or "[dim]No memories yet.[/]")
