# Copyright (c) Syntropy Systems
"""Persistent git mirrors, one clone per repository URL."""
from __future__ import annotations

import logging
import shutil
import threading
import time
from typing import TYPE_CHECKING

from crater.errors import CommandFailed, NetworkError
from crater.models.crates import gh_url_to_org_and_name

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from crater.runner import ProcessSupervisor

logger = logging.getLogger(__name__)

DEFAULT_DEPTHS = (1, 10, 100, 1000)

# Never prompt for credentials; a private repo should fail, not hang.
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}


def frob_url(url: str) -> str:
    """Rewrite https URLs to the unauthenticated git protocol.

    Over https git asks for a password for private repos. The git protocol
    just generates an error instead.
    """
    return url.replace("https://", "git://")


class GitMirrors:
    """Manages one persistent clone per repository URL.

    Operations on the same URL are serialized through a per-URL lock;
    different URLs proceed in parallel. Hold ``lock(url)`` across a reset
    and the copy that follows it so another commit can't be checked out in
    between.
    """

    root: Path
    supervisor: ProcessSupervisor
    depths: tuple[int, ...]
    delay: float

    def __init__(
        self,
        root: Path,
        supervisor: ProcessSupervisor,
        depths: Sequence[int] = DEFAULT_DEPTHS,
        delay: float = 0.1,
    ) -> None:
        """Initialize the mirror set.

        Args:
            root: Directory holding the clones
            supervisor: Runs git commands
            depths: Shallow clone depths tried before a full clone
            delay: Seconds to sleep after each clone or pull

        """
        self.root = root
        self.supervisor = supervisor
        self.depths = tuple(depths)
        self.delay = delay
        self._locks: dict[Path, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def lock(self, url: str) -> threading.RLock:
        """Return the lock serializing work on url's mirror.

        URLs naming the same mirror directory share a lock.
        """
        key = self.repo_dir(url)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def repo_dir(self, url: str) -> Path:
        """Directory of the mirror clone for url."""
        org, name = gh_url_to_org_and_name(url)
        return self.root / f"{org}.{name}"

    def shallow_clone_or_pull(self, url: str) -> None:
        """Bring the mirror up to date with the remote's default branch."""
        remote = frob_url(url)
        repo = self.repo_dir(url)
        with self.lock(url):
            if not repo.exists():
                logger.info("cloning %s into %s", remote, repo)
                self._clone(remote, repo, depth=1)
            else:
                logger.info("pulling existing url %s into %s", remote, repo)
                try:
                    self.supervisor.cd_run(repo, "git", ["pull"], _GIT_ENV)
                except CommandFailed as e:
                    msg = f"unable to pull {remote}"
                    raise NetworkError(msg) from e
                finally:
                    time.sleep(self.delay)

    def shallow_fetch_sha(self, url: str, sha: str) -> None:
        """Ensure that a commit exists locally in the mirror.

        First checks whether it does, and if not re-clones at increasingly
        large depths until the history contains the commit, finishing with a
        full clone.

        Raises:
            NetworkError: if a clone fails or the commit is nowhere to be found

        """
        remote = frob_url(url)
        repo = self.repo_dir(url)
        with self.lock(url):
            logger.info("ensuring sha %s in %s", sha, remote)
            if self.has_commit(repo, sha):
                return

            for depth in self.depths:
                self._clone(remote, repo, depth=depth)
                if self.has_commit(repo, sha):
                    return

            self._clone(remote, repo, depth=None)
            if not self.has_commit(repo, sha):
                msg = f"commit {sha} does not exist in {url}"
                raise NetworkError(msg)

    def reset_to_sha(self, url: str, sha: str) -> None:
        """Fetch sha if needed and hard-reset the mirror's worktree to it."""
        repo = self.repo_dir(url)
        with self.lock(url):
            self.shallow_fetch_sha(url, sha)
            try:
                self.supervisor.cd_run(repo, "git", ["reset", "--hard", sha], _GIT_ENV)
            except CommandFailed as e:
                msg = f"unable to reset {repo} to {sha}"
                raise NetworkError(msg) from e

    def head_sha(self, url: str) -> str:
        """Pull the mirror and return the commit its HEAD points at."""
        repo = self.repo_dir(url)
        with self.lock(url):
            self.shallow_clone_or_pull(url)
            stdout, _ = self.supervisor.run_capture(
                "git", ["rev-parse", "HEAD"], _GIT_ENV, repo
            )
        if not stdout or not stdout[0].strip():
            msg = f"unable to read HEAD of {url}"
            raise NetworkError(msg)
        return stdout[0].strip()

    def has_commit(self, repo: Path, sha: str) -> bool:
        """Check whether the clone at repo contains sha."""
        if not repo.exists():
            return False
        try:
            self.supervisor.cd_run(repo, "git", ["cat-file", "-e", f"{sha}^{{commit}}"], _GIT_ENV)
        except CommandFailed:
            return False
        return True

    def _clone(self, remote: str, repo: Path, depth: int | None) -> None:
        """Replace repo with a fresh clone of remote, shallow when depth is set."""
        if repo.exists():
            shutil.rmtree(repo)
        repo.parent.mkdir(parents=True, exist_ok=True)

        args = ["clone"]
        if depth is not None:
            args += ["--depth", str(depth)]
        args += [remote, str(repo)]

        try:
            self.supervisor.run("git", args, _GIT_ENV)
        except CommandFailed as e:
            if repo.exists():
                shutil.rmtree(repo)
            msg = f"unable to clone {remote}"
            raise NetworkError(msg) from e
        finally:
            time.sleep(self.delay)
