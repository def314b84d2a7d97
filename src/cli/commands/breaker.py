"""Circuit breaker CLI commands — list and administrative reset."""

import click
from rich.console import Console
from rich.table import Table

from cli.utils import get_components
from shared_types import BreakerState, ComponentKind

console = Console()


@click.group()
def breaker():
    """Inspect and reset per-component circuit breakers."""
    pass


@breaker.command("list")
@click.option("--open", "open_only", is_flag=True, help="Only show open breakers")
@click.pass_obj
def breaker_list(obj: dict, open_only: bool):
    """List tracked breakers."""
    c = get_components(obj.get("config_path"), with_cortex=False)
    breakers = c["breakers"].list_all(state=BreakerState.OPEN if open_only else None)
    if not breakers:
        console.print("No breakers tracked.")
        return

    table = Table(title="Circuit Breakers")
    table.add_column("Kind", width=9)
    table.add_column("Component")
    table.add_column("State", width=7)
    table.add_column("Failures", width=8)
    table.add_column("Opened")
    table.add_column("Last error")
    for b in breakers:
        state = "[red]open[/]" if b.is_open else "[green]closed[/]"
        table.add_row(
            str(b.kind),
            b.component_id,
            state,
            str(b.consecutive_failures),
            b.opened_at.strftime("%Y-%m-%d %H:%M") if b.opened_at else "",
            (b.last_signature or "")[:40],
        )
    console.print(table)


@breaker.command("reset")
@click.argument("kind", type=click.Choice([k.value for k in ComponentKind]))
@click.argument("component_id")
@click.pass_obj
def breaker_reset(obj: dict, kind: str, component_id: str):
    """Close an open breaker after the dependency has been fixed."""
    c = get_components(obj.get("config_path"), with_cortex=False)
    if c["breakers"].reset(ComponentKind(kind), component_id):
        console.print(f"[green]Reset[/] {kind}:{component_id}")
    else:
        console.print(f"[yellow]No breaker for {kind}:{component_id}[/]")
