# Copyright (c) Syntropy Systems
"""Shared helpers for commands that operate inside a crater project."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import typer
from rich.console import Console

from crater.config import CraterConfig, get_mirrors_dir, load_config, require_crater_dir
from crater.git import GitMirrors
from crater.runner import ProcessSupervisor
from crater.store import ResultStore, open_store

console = Console()


@dataclass
class Project:
    """An opened crater project."""

    crater_dir: Path
    config: CraterConfig
    store: ResultStore

    def mirrors(self) -> GitMirrors:
        """Git mirrors under the project, running git through a configured supervisor."""
        supervisor = ProcessSupervisor(
            heartbeat_timeout=self.config.heartbeat_timeout,
            max_timeout=self.config.max_timeout,
        )
        return GitMirrors(
            get_mirrors_dir(self.crater_dir),
            supervisor,
            depths=self.config.git_depths,
            delay=self.config.git_delay,
        )


def open_project() -> Project:
    """Open the project around the cwd or exit with an error."""
    try:
        crater_dir = require_crater_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    config = load_config(crater_dir)
    return Project(crater_dir=crater_dir, config=config, store=open_store(config, crater_dir))
