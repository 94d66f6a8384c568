# Copyright (c) Syntropy Systems
"""Crate acquisition: fill per-crate source directories from the registry or git."""
from __future__ import annotations

import io
import logging
import shutil
import tarfile
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from typing_extensions import assert_never

from crater.config import DEFAULT_REGISTRY_URL
from crater.errors import ParseError, PrepareFailed
from crater.models.crates import RepoCrate, VersionCrate, crate_display_name, crate_path

if TYPE_CHECKING:
    from collections.abc import Sequence

    from crater.download import Downloader
    from crater.git import GitMirrors
    from crater.models.experiment import Experiment
    from crater.store.base import ResultStore

logger = logging.getLogger(__name__)


@dataclass
class PrepareSummary:
    """Aggregate outcome of a prepare batch."""

    requested: int
    succeeded: int

    @property
    def failed(self) -> int:
        return self.requested - self.succeeded


def unpack_without_first_dir(archive: tarfile.TarFile, dest: Path) -> None:
    """Extract archive into dest, dropping the first component of every entry.

    Crate tarballs wrap their contents in a ``<name>-<version>/`` directory;
    ``pkg-1.0/src/lib.rs`` lands at ``dest/src/lib.rs``.

    Raises:
        ParseError: if an entry would land outside dest

    """
    root = dest.resolve()
    for member in archive:
        parts = PurePosixPath(member.name).parts[1:]
        if not parts:
            continue
        if ".." in parts or PurePosixPath(*parts).is_absolute():
            msg = f"refusing to unpack {member.name!r} outside of {dest}"
            raise ParseError(msg)
        target = root.joinpath(*parts)

        if member.isdir():
            target.mkdir(parents=True, exist_ok=True)
            continue
        if not member.isfile():
            # Links and devices have no place in a crate source tree
            logger.debug("skipping non-regular entry %s", member.name)
            continue

        target.parent.mkdir(parents=True, exist_ok=True)
        source = archive.extractfile(member)
        if source is None:
            continue
        with source, target.open("wb") as f:
            shutil.copyfileobj(source, f)
        if member.mode & 0o111:
            target.chmod(0o755)


def copy_tree(src: Path, dest: Path) -> None:
    """Copy a mirror's working tree into dest, without its .git directory."""
    if dest.exists():
        shutil.rmtree(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    _ = shutil.copytree(src, dest, symlinks=True, ignore=shutil.ignore_patterns(".git"))


class CrateFetcher:
    """Resolves crates to cache directories and populates them.

    Registry releases are downloaded once and never touched again. Repository
    crates are copied out of a persistent mirror clone after resetting it to
    the pinned commit, so several commits of one repository can coexist.
    """

    crates_dir: Path
    downloader: Downloader
    mirrors: GitMirrors
    registry_url: str
    workers: int

    def __init__(
        self,
        crates_dir: Path,
        downloader: Downloader,
        mirrors: GitMirrors,
        registry_url: str = DEFAULT_REGISTRY_URL,
        workers: int = 1,
    ) -> None:
        """Initialize the fetcher.

        Args:
            crates_dir: Root of the source cache (holds reg/ and gh/)
            downloader: HTTP downloader for registry archives
            mirrors: Git mirror set for repository crates
            registry_url: Base URL of the registry mirror
            workers: Number of crates prepared in parallel

        """
        self.crates_dir = crates_dir
        self.downloader = downloader
        self.mirrors = mirrors
        self.registry_url = registry_url.rstrip("/")
        self.workers = max(1, workers)

    def crate_dir(self, spec: VersionCrate | RepoCrate) -> Path:
        """Cache directory for a crate. Pure; the same spec always maps to the same path."""
        return self.crates_dir / crate_path(spec)

    def registry_download_url(self, name: str, version: str) -> str:
        """URL of the gzip tarball for a registry release."""
        return f"{self.registry_url}/{name}/{name}-{version}.crate"

    def prepare(self, items: Sequence[tuple[VersionCrate | RepoCrate, Path]]) -> PrepareSummary:
        """Populate each target directory from its crate source.

        Every item is attempted. Failures are logged and counted, never
        raised, unless so many fail that the source itself looks broken.

        Raises:
            PrepareFailed: if fewer than half of the items succeeded

        """
        logger.info("preparing %d crates", len(items))
        succeeded = 0
        counter_lock = threading.Lock()

        def prepare_one(item: tuple[VersionCrate | RepoCrate, Path]) -> None:
            nonlocal succeeded
            spec, dest = item
            try:
                self.prepare_crate(spec, dest)
            except Exception:
                logger.exception("unable to download %s", crate_display_name(spec))
                return
            with counter_lock:
                succeeded += 1

        if self.workers == 1:
            for item in items:
                prepare_one(item)
        else:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                _ = list(pool.map(prepare_one, items))

        summary = PrepareSummary(requested=len(items), succeeded=succeeded)
        logger.info(
            "prepared %d of %d crates (%d failed)",
            summary.succeeded,
            summary.requested,
            summary.failed,
        )
        if summary.succeeded < summary.requested // 2:
            raise PrepareFailed(summary.succeeded, summary.requested)
        return summary

    def prepare_crate(self, spec: VersionCrate | RepoCrate, dest: Path) -> None:
        """Populate dest from a single crate source."""
        if isinstance(spec, VersionCrate):
            self.download_registry(spec.name, spec.version, dest)
        elif isinstance(spec, RepoCrate):
            self.download_repo(spec.url, spec.sha, dest)
        else:
            assert_never(spec)

    def download_registry(self, name: str, version: str, dest: Path) -> None:
        """Download and unpack a registry release unless dest already exists."""
        if dest.exists():
            logger.info("crate %s-%s exists at %s. skipping", name, version, dest)
            return

        logger.info("downloading crate %s-%s to %s", name, version, dest)
        data = self.downloader.download(self.registry_download_url(name, version))

        dest.mkdir(parents=True)
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
                unpack_without_first_dir(archive, dest)
        except Exception:
            logger.warning("unable to unpack crate tarball for %s-%s", name, version)
            shutil.rmtree(dest, ignore_errors=True)
            raise

    def download_repo(self, url: str, sha: str, dest: Path) -> None:
        """Check out sha in url's mirror and copy the tree into dest."""
        logger.info("downloading repo %s to %s", url, dest)
        with self.mirrors.lock(url):
            self.mirrors.reset_to_sha(url, sha)
            copy_tree(self.mirrors.repo_dir(url), dest)

    def capture_shas(self, store: ResultStore, experiment: Experiment) -> dict[str, str]:
        """Record the current HEAD commit of every repository in the experiment.

        Repositories whose mirror can't be updated are logged and left out.
        """
        shas: dict[str, str] = {}
        for url in experiment.repo_urls():
            try:
                shas[url] = self.mirrors.head_sha(url)
            except Exception:
                logger.exception("unable to capture sha for %s", url)
        store.write_shas(experiment.name, shas)
        return shas
