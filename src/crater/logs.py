# Copyright (c) Syntropy Systems
"""Logging setup and per-result log redirection."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def setup_logging(verbose: bool = False, console: Console | None = None) -> None:
    """Send crater's log records to the terminal through rich."""
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger("crater")
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.propagate = False


@contextmanager
def redirect(log_path: Path, parent: logging.Logger) -> Iterator[logging.Logger]:
    """Yield a logger whose records are written to log_path.

    The logger is not registered with the logging module, so one can be made
    per result without growing the global logger table. Records still
    propagate to ``parent``'s handlers.
    """
    result_logger = logging.Logger(f"{parent.name}.{log_path.parent.name}", logging.DEBUG)
    result_logger.parent = parent

    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    result_logger.addHandler(handler)
    try:
        yield result_logger
    finally:
        result_logger.removeHandler(handler)
        handler.close()
