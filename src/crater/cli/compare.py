# Copyright (c) Syntropy Systems
"""Compare command - classify each crate across the two toolchains."""

import typer
from rich.console import Console
from rich.table import Table

from crater.cli.project import open_project
from crater.errors import CraterError
from crater.report import Comparison, generate_report

console = Console()

_STYLES = {
    Comparison.REGRESSED: "red",
    Comparison.FIXED: "green",
    Comparison.UNKNOWN: "yellow",
    Comparison.SAME_BUILD_FAIL: "dim",
    Comparison.SAME_TEST_FAIL: "dim",
    Comparison.SAME_TEST_PASS: "dim",
}


def compare(
    name: str = typer.Argument(..., help="Experiment name"),
    all_crates: bool = typer.Option(
        False,
        "--all",
        "-a",
        help="List unchanged crates too",
    ),
) -> None:
    """Compare the results of an experiment's two toolchains.

    Example:
        crater compare weekly

    """
    project = open_project()
    try:
        ex = project.store.load_experiment(name)
        report = generate_report(project.store, ex)
    except (CraterError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    tc1, tc2 = (t.name for t in ex.toolchains)
    console.print(f"\n[bold]{ex.name}[/bold]: {tc1} vs {tc2}\n")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Crate", style="cyan")
    table.add_column("Result")
    table.add_column(tc1)
    table.add_column(tc2)

    shown = 0
    for crate in report.crates:
        if not all_crates and crate.res.value.startswith("Same"):
            continue
        style = _STYLES[crate.res]
        table.add_row(
            crate.name,
            f"[{style}]{crate.res.value}[/{style}]",
            *[run.res.value if run is not None else "-" for run in crate.runs],
        )
        shown += 1

    if shown:
        console.print(table)
    else:
        console.print("[dim]No changes between toolchains[/dim]")

    counts = report.summary()
    console.print()
    for comparison, count in counts.items():
        console.print(f"  {comparison.value}: {count}")
