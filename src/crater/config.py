# Copyright (c) Syntropy Systems
"""Configuration management for crater."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

DEFAULT_REGISTRY_URL = "https://crates-io.s3-us-west-1.amazonaws.com/crates"
DEFAULT_REGISTRY_INDEX_URL = "https://github.com/rust-lang/crates.io-index.git"


@dataclass
class CraterConfig:
    """Configuration for crater."""

    # Kill a command that prints nothing for this long (seconds)
    heartbeat_timeout: int = 60 * 2

    # Kill a command that runs longer than this regardless of output (seconds)
    max_timeout: int = 60 * 10 * 2

    # Base URL of the registry mirror serving <name>/<name>-<version>.crate
    registry_url: str = DEFAULT_REGISTRY_URL

    # Git repository of the registry index, used to list every published crate
    registry_index_url: str = DEFAULT_REGISTRY_INDEX_URL

    # Clone depths tried, in order, before falling back to a full clone
    git_depths: list[int] = field(default_factory=lambda: [1, 10, 100, 1000])

    # Delay after each clone or pull against the git host (seconds)
    git_delay: float = 0.1

    # Parallel crate downloads
    prepare_workers: int = 4

    # Parallel build/test invocations
    run_workers: int = field(default_factory=lambda: os.cpu_count() or 1)

    # Result store backend: "fs" or "sql"
    store_backend: str = "fs"


def find_crater_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .crater directory by walking up from start_path.

    Returns None if no .crater directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        crater_dir = current / ".crater"
        if crater_dir.is_dir():
            return crater_dir
        current = current.parent

    crater_dir = current / ".crater"
    if crater_dir.is_dir():
        return crater_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global crater config directory (~/.crater)."""
    return Path.home() / ".crater"


def _int_option(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return default


def load_config(crater_dir: Path | None = None) -> CraterConfig:
    """Load configuration from .crater/config.yaml or defaults.

    Looks for config in:
    1. Provided crater_dir
    2. Nearest .crater directory walking up
    3. ~/.crater/config.yaml
    4. Defaults
    """
    config = CraterConfig()

    config_path = None

    if crater_dir is not None:
        config_path = crater_dir / "config.yaml"
    else:
        found_dir = find_crater_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is None or not config_path.exists():
        return config

    with config_path.open() as f:
        data = cast("dict[str, object]", yaml.safe_load(f) or {})

    config.heartbeat_timeout = _int_option(data, "heartbeat_timeout", config.heartbeat_timeout)
    config.max_timeout = _int_option(data, "max_timeout", config.max_timeout)
    config.prepare_workers = _int_option(data, "prepare_workers", config.prepare_workers)
    config.run_workers = _int_option(data, "run_workers", config.run_workers)

    registry_url = data.get("registry_url")
    if isinstance(registry_url, str) and registry_url:
        config.registry_url = registry_url.rstrip("/")
    registry_index_url = data.get("registry_index_url")
    if isinstance(registry_index_url, str) and registry_index_url:
        config.registry_index_url = registry_index_url
    git_depths = data.get("git_depths")
    if isinstance(git_depths, list) and all(isinstance(d, int) for d in git_depths):
        config.git_depths = cast("list[int]", git_depths)
    git_delay = data.get("git_delay")
    if isinstance(git_delay, (int, float)):
        config.git_delay = float(git_delay)
    store_backend = data.get("store_backend")
    if store_backend in ("fs", "sql"):
        config.store_backend = cast(str, store_backend)

    return config


def require_crater_dir() -> Path:
    """Get crater directory or raise an error if not found."""
    crater_dir = find_crater_dir()
    if crater_dir is None:
        msg = "No .crater directory found. Run 'crater init' first."
        raise RuntimeError(msg)
    return crater_dir


def get_crates_dir(crater_dir: Path) -> Path:
    """Directory holding unpacked crate sources (reg/ and gh/)."""
    return crater_dir / "crates"


def get_mirrors_dir(crater_dir: Path) -> Path:
    """Directory holding one persistent clone per repository URL."""
    return crater_dir / "gh-mirrors"


def get_ex_dir(crater_dir: Path) -> Path:
    """Root of the filesystem result store."""
    return crater_dir / "ex"


def get_db_path(crater_dir: Path) -> Path:
    """Path to the SQLite database used by the relational store."""
    return crater_dir / "crater.db"
