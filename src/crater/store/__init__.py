# Copyright (c) Syntropy Systems
"""Result stores: pick a backend from configuration."""
from __future__ import annotations

from typing import TYPE_CHECKING

from crater.config import get_db_path, get_ex_dir

from .base import ResultStore
from .fs import FsStore
from .sql import SqlStore

if TYPE_CHECKING:
    from pathlib import Path

    from crater.config import CraterConfig

__all__ = ["FsStore", "ResultStore", "SqlStore", "open_store"]


def open_store(config: CraterConfig, crater_dir: Path) -> ResultStore:
    """Open the result store selected by ``config.store_backend``."""
    if config.store_backend == "sql":
        return SqlStore(get_db_path(crater_dir))
    if config.store_backend == "fs":
        return FsStore(get_ex_dir(crater_dir))
    msg = f"unknown store backend: {config.store_backend!r}"
    raise ValueError(msg)
