# Copyright (c) Syntropy Systems
"""Pytest fixtures for crater tests."""

import io
import json
import logging
import os
import tarfile
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

# Store original cwd at module load time
_original_cwd = Path.cwd()


@pytest.fixture(autouse=True)
def restore_crater_logger() -> Generator[None, None, None]:
    """Undo setup_logging so caplog sees crater records in every test."""
    logger = logging.getLogger("crater")
    handlers, level, propagate = logger.handlers[:], logger.level, logger.propagate
    yield
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def crater_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary crater project directory."""
    crater_dir = temp_dir / ".crater"
    crater_dir.mkdir()
    for name in ("crates", "gh-mirrors", "ex"):
        (crater_dir / name).mkdir()

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


def make_crate_tarball(prefix: str, files: dict[str, bytes]) -> bytes:
    """Build a gzip tarball with every file under a single top directory."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        top = tarfile.TarInfo(prefix)
        top.type = tarfile.DIRTYPE
        top.mode = 0o755
        archive.addfile(top)
        for name, data in files.items():
            info = tarfile.TarInfo(f"{prefix}/{name}")
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def index_file_path(root: Path, name: str) -> Path:
    """Where the registry index keeps a crate: 1/a, 2/ab, 3/a/abc, se/rd/serde."""
    lower = name.lower()
    if len(lower) <= 2:
        return root / str(len(lower)) / lower
    if len(lower) == 3:
        return root / "3" / lower[0] / lower
    return root / lower[:2] / lower[2:4] / lower


def write_index(root: Path, crates: dict[str, list[str]], yanked: frozenset[str] = frozenset()) -> None:
    """Lay out a registry index with one line per version.

    ``yanked`` holds ``name@version`` strings to mark yanked.
    """
    (root / ".git").mkdir(parents=True, exist_ok=True)
    (root / "config.json").write_text('{"dl": "https://registry.test/crates"}')
    for name, versions in crates.items():
        path = index_file_path(root, name)
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [
            json.dumps({
                "name": name,
                "vers": version,
                "deps": [{"name": "libc", "req": "^0.2", "kind": "normal"}],
                "cksum": "0" * 64,
                "features": {},
                "yanked": f"{name}@{version}" in yanked,
            })
            for version in versions
        ]
        path.write_text("\n".join(lines) + "\n")
