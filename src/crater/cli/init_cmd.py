# Copyright (c) Syntropy Systems
"""crater init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from crater.config import (
    CraterConfig,
    get_crates_dir,
    get_db_path,
    get_ex_dir,
    get_mirrors_dir,
)
from crater.store.sql import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
    backend: str = typer.Option(
        "fs",
        "--backend",
        "-b",
        help="Result store backend: fs or sql",
    ),
) -> None:
    """Initialize a new crater project.

    Creates a .crater directory with configuration, source cache and result store.
    """
    if backend not in ("fs", "sql"):
        console.print(f"[red]Error:[/red] unknown backend {backend!r}")
        raise typer.Exit(1)

    target = path.resolve()
    crater_dir = target / ".crater"

    if crater_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {crater_dir}")
        return

    crater_dir.mkdir(parents=True)
    for directory in (get_crates_dir(crater_dir), get_mirrors_dir(crater_dir), get_ex_dir(crater_dir)):
        directory.mkdir()

    defaults = CraterConfig()
    config = {
        "heartbeat_timeout": defaults.heartbeat_timeout,
        "max_timeout": defaults.max_timeout,
        "registry_url": defaults.registry_url,
        "git_depths": defaults.git_depths,
        "git_delay": defaults.git_delay,
        "prepare_workers": defaults.prepare_workers,
        "store_backend": backend,
    }

    config_path = crater_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(config, f, default_flow_style=False)

    if backend == "sql":
        init_db(get_db_path(crater_dir))

    console.print(f"[green]Initialized crater project:[/green] {crater_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]backend:[/dim] {backend}")
    console.print(f"  [dim]crates:[/dim] {get_crates_dir(crater_dir)}")
