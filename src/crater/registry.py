# Copyright (c) Syntropy Systems
"""The registry index: a git repository listing every published release.

Each file in the index holds one crate, one JSON document per line and one
line per published version::

    {"name": "serde", "vers": "1.0.0", "deps": [{"name": "serde_derive", "req": "^1"}], ...}

The index is kept as one more mirror next to the repository crates.
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import Field, ValidationError

from crater.config import DEFAULT_REGISTRY_INDEX_URL
from crater.errors import NetworkError, ParseError
from crater.models.base import CraterBaseModel
from crater.models.crates import SEMVER_PATTERN, RegistryCrate

if TYPE_CHECKING:
    from crater.git import GitMirrors

logger = logging.getLogger(__name__)

_SEMVER_RE = re.compile(SEMVER_PATTERN)


class IndexDependency(CraterBaseModel):
    """A dependency requirement of one published version."""

    name: str
    req: str


class IndexEntry(CraterBaseModel):
    """One line of an index file."""

    name: str
    vers: str
    deps: list[IndexDependency] = Field(default_factory=list)
    yanked: bool = False


class IndexCrate(CraterBaseModel):
    """Every published version of one crate, in index order."""

    name: str
    versions: list[IndexEntry] = Field(default_factory=list)

    def newest(self) -> IndexEntry | None:
        """The highest non-yanked version with a valid semver, if any.

        Pre-releases are only picked for crates that have no release.
        """
        candidates = [v for v in self.versions if not v.yanked and _SEMVER_RE.fullmatch(v.vers)]
        releases = [v for v in candidates if semver_key(v.vers)[3] == 1]
        if not candidates:
            return None
        return max(releases or candidates, key=lambda v: semver_key(v.vers))


def semver_key(version: str) -> tuple[int, int, int, int, tuple[tuple[int, int | str], ...]]:
    """Sort key implementing semver precedence; build metadata is ignored.

    Raises:
        ParseError: if version is not a semantic version

    """
    match = _SEMVER_RE.fullmatch(version)
    if match is None:
        msg = f"invalid version: {version!r}"
        raise ParseError(msg)
    major, minor, patch, pre, _build = match.groups()
    if pre is None:
        # A release sorts after all of its pre-releases
        return int(major), int(minor), int(patch), 1, ()
    identifiers = tuple(
        (0, int(part)) if part.isdigit() else (1, part) for part in pre.split(".")
    )
    return int(major), int(minor), int(patch), 0, identifiers


def read_crate(path: Path) -> IndexCrate:
    """Parse one index file.

    Lines that aren't index entries are skipped. The crate takes the name of
    the last entry read.
    """
    versions: list[IndexEntry] = []
    with path.open(encoding="utf-8") as f:
        for lineno, raw_line in enumerate(f, 1):
            line = raw_line.strip()
            if not line:
                continue
            try:
                versions.append(IndexEntry.model_validate_json(line))
            except ValidationError:
                logger.debug("skipping malformed index line %s:%d", path, lineno)

    name = versions[-1].name if versions else ""
    return IndexCrate(name=name, versions=versions)


class RegistryIndex:
    """Reads the registry index out of its git mirror."""

    mirrors: GitMirrors
    url: str

    def __init__(self, mirrors: GitMirrors, url: str = DEFAULT_REGISTRY_INDEX_URL) -> None:
        self.mirrors = mirrors
        self.url = url

    @property
    def index_dir(self) -> Path:
        return self.mirrors.repo_dir(self.url)

    def update(self) -> None:
        """Clone the index, or pull it if a clone already exists.

        Raises:
            NetworkError: if the index can't be fetched

        """
        try:
            self.mirrors.shallow_clone_or_pull(self.url)
        except NetworkError as e:
            msg = f"unable to update registry: {e}"
            raise NetworkError(msg) from e

    def read(self) -> list[IndexCrate]:
        """Parse every crate file in the local index.

        Hidden entries (``.git``) and the index's ``config.json`` are skipped.

        Raises:
            ParseError: if there is no local index

        """
        root = self.index_dir
        if not root.is_dir():
            msg = f"no registry index at {root}"
            raise ParseError(msg)

        logger.info("loading registry")
        crates: list[IndexCrate] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for filename in sorted(filenames):
                if filename.startswith(".") or filename == "config.json":
                    continue
                crate = read_crate(Path(dirpath) / filename)
                if crate.versions:
                    crates.append(crate)
        logger.info("registry loaded: %d crates", len(crates))
        return crates

    def find_crates(self, update: bool = True) -> list[IndexCrate]:
        """Update the index unless told not to, then read it."""
        with self.mirrors.lock(self.url):
            if update:
                self.update()
            return self.read()


def newest_releases(crates: list[IndexCrate]) -> list[RegistryCrate]:
    """Experiment entries for the newest release of every crate.

    Crates with no usable version, or whose name can't be a crate path,
    are left out.
    """
    entries: list[RegistryCrate] = []
    for crate in crates:
        newest = crate.newest()
        if newest is None:
            logger.debug("no usable release of %s", crate.name)
            continue
        try:
            entries.append(RegistryCrate(name=newest.name, version=newest.vers))
        except ValidationError:
            logger.debug("skipping unusable release %s %s", newest.name, newest.vers)
    return entries
