# Copyright (c) Syntropy Systems
"""crater define-ex / delete-ex commands."""

from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console

from crater.cli.project import open_project
from crater.errors import CraterError, ParseError
from crater.models.crates import GitHubRepo, RegistryCrate
from crater.models.experiment import ExMode
from crater.models.toolchain import parse_toolchain
from crater.registry import RegistryIndex, newest_releases

console = Console()


def parse_crate(value: str) -> "RegistryCrate | GitHubRepo":
    """Parse ``name@version`` or a repository URL."""
    value = value.strip()
    try:
        if "://" in value:
            return GitHubRepo(url=value)
        name, sep, version = value.partition("@")
        if sep:
            return RegistryCrate(name=name, version=version)
    except ValidationError as e:
        msg = f"invalid crate {value!r}: {e.errors()[0]['msg']}"
        raise ParseError(msg) from e
    msg = f"expected name@version or a repository url, got {value!r}"
    raise ParseError(msg)


def define_ex(
    name: str = typer.Argument(..., help="Experiment name"),
    toolchains: list[str] = typer.Option(
        ...,
        "--toolchain",
        "-t",
        help="Toolchain to test (give exactly two to compare)",
    ),
    crates: Optional[list[str]] = typer.Option(
        None,
        "--crate",
        "-c",
        help="Crate as name@version or a repository url",
    ),
    crate_list: Optional[Path] = typer.Option(
        None,
        "--crate-list",
        help="File with one crate per line",
    ),
    registry: bool = typer.Option(
        False,
        "--registry",
        help="Add the newest release of every crate in the registry index",
    ),
    offline: bool = typer.Option(
        False,
        "--offline",
        help="Read the local registry index without updating it",
    ),
    mode: ExMode = typer.Option(
        ExMode.BUILD_AND_TEST,
        "--mode",
        "-m",
        help="What to do with each crate",
    ),
) -> None:
    """Define a new experiment.

    Example:
        crater define-ex weekly -t stable -t beta -c serde@1.0.0 -c https://github.com/org/repo

    """
    entries = list(crates or [])
    if crate_list is not None:
        entries += [line for line in crate_list.read_text().splitlines() if line.strip()]

    try:
        parsed_toolchains = [parse_toolchain(t) for t in toolchains]
        parsed_crates = [parse_crate(c) for c in entries]
    except ParseError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if len(parsed_toolchains) != 2:
        console.print("[yellow]Warning:[/yellow] comparison needs exactly 2 toolchains")

    project = open_project()
    if registry:
        index = RegistryIndex(project.mirrors(), project.config.registry_index_url)
        try:
            parsed_crates += newest_releases(index.find_crates(update=not offline))
        except CraterError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e

    try:
        ex = project.store.create_experiment(name, parsed_toolchains, parsed_crates, mode)
    except (CraterError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(f"[green]Defined experiment[/green] {ex.name}")
    console.print(f"  [dim]mode:[/dim] {ex.mode.value}")
    console.print(f"  [dim]toolchains:[/dim] {', '.join(t.name for t in ex.toolchains)}")
    console.print(f"  [dim]crates:[/dim] {len(ex.crates)}")


def delete_ex(
    name: str = typer.Argument(..., help="Experiment name"),
) -> None:
    """Delete an experiment and all of its results."""
    project = open_project()
    try:
        project.store.delete_experiment(name)
    except CraterError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    console.print(f"[green]Deleted experiment[/green] {name}")
