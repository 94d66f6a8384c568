# Copyright (c) Syntropy Systems
"""crater prepare-ex command."""
from __future__ import annotations

import typer
from rich.console import Console

from crater.cli.project import open_project
from crater.config import get_crates_dir
from crater.crates import CrateFetcher
from crater.download import Downloader
from crater.errors import CraterError, ParseError
from crater.models.crates import RepoCrate, VersionCrate, resolve_crate

console = Console()


def prepare_ex(
    name: str = typer.Argument(..., help="Experiment name"),
    workers: int = typer.Option(
        0,
        "--workers",
        "-w",
        help="Parallel downloads (default: prepare_workers from config)",
    ),
) -> None:
    """Resolve repository commits and download every crate of an experiment."""
    project = open_project()
    config = project.config

    mirrors = project.mirrors()

    with Downloader() as downloader:
        fetcher = CrateFetcher(
            get_crates_dir(project.crater_dir),
            downloader,
            mirrors,
            registry_url=config.registry_url,
            workers=workers or config.prepare_workers,
        )
        try:
            ex = project.store.load_experiment(name)
            shas = fetcher.capture_shas(project.store, ex)

            crates: list[VersionCrate | RepoCrate] = []
            for entry in ex.crates:
                try:
                    crates.append(resolve_crate(entry, shas))
                except ParseError as e:
                    console.print(f"[yellow]Skipping:[/yellow] {e}")

            summary = fetcher.prepare([(crate, fetcher.crate_dir(crate)) for crate in crates])
        except CraterError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e

    console.print(
        f"[green]Prepared[/green] {summary.succeeded} of {summary.requested} crates"
        + (f" [yellow]({summary.failed} failed)[/yellow]" if summary.failed else "")
    )
