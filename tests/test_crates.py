# Copyright (c) Syntropy Systems
"""Tests for crate acquisition."""

import hashlib
import io
import logging
import tarfile
import threading
from pathlib import Path

import httpx
import pytest
from conftest import make_crate_tarball

from crater.crates import CrateFetcher, copy_tree, unpack_without_first_dir
from crater.download import Downloader
from crater.errors import NetworkError, ParseError, PrepareFailed
from crater.models.crates import (
    GitHubRepo,
    RegistryCrate,
    RepoCrate,
    VersionCrate,
    crate_display_name,
)
from crater.models.experiment import ExMode
from crater.models.toolchain import DistToolchain
from crater.store.fs import FsStore

REGISTRY = "https://registry.test/crates"


def fake_sha(url: str) -> str:
    return hashlib.sha1(url.encode()).hexdigest()


class FakeMirrors:
    """Serves repository trees from a directory, failing for chosen URLs."""

    def __init__(self, root: Path, broken: set[str] | None = None) -> None:
        self.root = root
        self.broken = broken or set()
        self.resets: list[tuple[str, str]] = []
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def lock(self, url: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault(url, threading.RLock())

    def repo_dir(self, url: str) -> Path:
        path = self.root / url.rsplit("/", 1)[-1]
        path.mkdir(parents=True, exist_ok=True)
        (path / "Cargo.toml").write_text(f'[package]\nname = "{path.name}"\n')
        (path / ".git").mkdir(exist_ok=True)
        return path

    def reset_to_sha(self, url: str, sha: str) -> None:
        if url in self.broken:
            msg = f"unable to clone {url}"
            raise NetworkError(msg)
        self.resets.append((url, sha))

    def head_sha(self, url: str) -> str:
        if url in self.broken:
            msg = f"unable to pull {url}"
            raise NetworkError(msg)
        return fake_sha(url)


class Registry:
    """httpx mock transport serving crate tarballs."""

    def __init__(self, crates: dict[str, bytes]) -> None:
        self.crates = crates
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        body = self.crates.get(request.url.path.rsplit("/", 1)[-1])
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body)


def make_fetcher(root: Path, registry: Registry, mirrors: FakeMirrors, workers: int = 1) -> CrateFetcher:
    client = httpx.Client(transport=httpx.MockTransport(registry))
    return CrateFetcher(
        root / "crates",
        Downloader(client=client),
        mirrors,  # type: ignore[arg-type]
        registry_url=REGISTRY,
        workers=workers,
    )


class TestUnpack:
    """Tests for tarball extraction."""

    def test_strips_first_component(self, temp_dir: Path) -> None:
        """pkg-1.0/src/lib.rs lands at dest/src/lib.rs."""
        data = make_crate_tarball("pkg-1.0", {"src/lib.rs": b"fn main() {}", "Cargo.toml": b""})
        dest = temp_dir / "dest"
        dest.mkdir()
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
            unpack_without_first_dir(archive, dest)
        assert (dest / "src" / "lib.rs").read_bytes() == b"fn main() {}"
        assert (dest / "Cargo.toml").exists()
        assert not (dest / "pkg-1.0").exists()

    def test_rejects_parent_paths(self, temp_dir: Path) -> None:
        """Entries escaping the destination are refused."""
        data = make_crate_tarball("pkg-1.0", {"../evil": b"x"})
        dest = temp_dir / "dest"
        dest.mkdir()
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
            with pytest.raises(ParseError):
                unpack_without_first_dir(archive, dest)
        assert not (temp_dir / "evil").exists()

    def test_copy_tree_skips_git(self, temp_dir: Path) -> None:
        """Copying a mirror leaves its .git directory behind."""
        src = temp_dir / "src"
        (src / ".git").mkdir(parents=True)
        (src / "lib.rs").write_text("")
        copy_tree(src, temp_dir / "out")
        assert (temp_dir / "out" / "lib.rs").exists()
        assert not (temp_dir / "out" / ".git").exists()


class TestRegistryDownload:
    """Tests for registry crates."""

    def test_download_and_unpack(self, temp_dir: Path) -> None:
        """The tarball is fetched from <registry>/<name>/<name>-<version>.crate."""
        registry = Registry({"serde-1.0.0.crate": make_crate_tarball("serde-1.0.0", {"src/lib.rs": b"//"})})
        fetcher = make_fetcher(temp_dir, registry, FakeMirrors(temp_dir / "mirrors"))
        crate = VersionCrate(name="serde", version="1.0.0")

        summary = fetcher.prepare([(crate, fetcher.crate_dir(crate))])

        assert summary.succeeded == 1
        assert registry.requests == [f"{REGISTRY}/serde/serde-1.0.0.crate"]
        assert (temp_dir / "crates" / "reg" / "serde-1.0.0" / "src" / "lib.rs").exists()

    def test_existing_dir_is_not_downloaded_again(self, temp_dir: Path) -> None:
        """A second prepare of the same release makes no request."""
        registry = Registry({"log-0.4.0.crate": make_crate_tarball("log-0.4.0", {"src/lib.rs": b""})})
        fetcher = make_fetcher(temp_dir, registry, FakeMirrors(temp_dir / "mirrors"))
        crate = VersionCrate(name="log", version="0.4.0")

        _ = fetcher.prepare([(crate, fetcher.crate_dir(crate))])
        _ = fetcher.prepare([(crate, fetcher.crate_dir(crate))])

        assert len(registry.requests) == 1

    def test_bad_archive_removes_dir(self, temp_dir: Path) -> None:
        """A corrupt tarball leaves no directory behind."""
        registry = Registry({"bad-1.0.0.crate": b"not a tarball"})
        fetcher = make_fetcher(temp_dir, registry, FakeMirrors(temp_dir / "mirrors"))
        crate = VersionCrate(name="bad", version="1.0.0")

        with pytest.raises(tarfile.TarError):
            fetcher.download_registry("bad", "1.0.0", fetcher.crate_dir(crate))
        assert not fetcher.crate_dir(crate).exists()

    def test_http_error(self, temp_dir: Path) -> None:
        """A 404 is a network error."""
        fetcher = make_fetcher(temp_dir, Registry({}), FakeMirrors(temp_dir / "mirrors"))
        with pytest.raises(NetworkError, match="HTTP 404"):
            fetcher.download_registry("nope", "1.0.0", temp_dir / "nope")


class TestRepoDownload:
    """Tests for repository crates."""

    def test_copy_from_mirror(self, temp_dir: Path) -> None:
        """The mirror is reset to the pinned sha and copied without .git."""
        mirrors = FakeMirrors(temp_dir / "mirrors")
        fetcher = make_fetcher(temp_dir, Registry({}), mirrors)
        crate = RepoCrate(url="https://github.com/org/repo", sha="abc")

        _ = fetcher.prepare([(crate, fetcher.crate_dir(crate))])

        dest = temp_dir / "crates" / "gh" / "org.repo.abc"
        assert (dest / "Cargo.toml").exists()
        assert not (dest / ".git").exists()
        assert mirrors.resets == [("https://github.com/org/repo", "abc")]


class TestBatchThreshold:
    """Tests for the prepare failure threshold."""

    @staticmethod
    def repos(count: int) -> list[RepoCrate]:
        return [RepoCrate(url=f"https://github.com/org/repo{i}", sha="abc") for i in range(count)]

    def test_majority_success(self, temp_dir: Path, caplog: pytest.LogCaptureFixture) -> None:
        """Six of ten succeeding is enough; each of the four failures is logged."""
        crates = self.repos(10)
        mirrors = FakeMirrors(temp_dir / "mirrors", broken={c.url for c in crates[6:]})
        fetcher = make_fetcher(temp_dir, Registry({}), mirrors, workers=4)

        with caplog.at_level(logging.ERROR, logger="crater"):
            summary = fetcher.prepare([(c, fetcher.crate_dir(c)) for c in crates])

        assert summary.requested == 10
        assert summary.succeeded == 6
        assert summary.failed == 4
        for crate in crates[:6]:
            assert (fetcher.crate_dir(crate) / "Cargo.toml").exists()
        for crate in crates[6:]:
            assert not fetcher.crate_dir(crate).exists()
            assert any(
                record.getMessage() == f"unable to download {crate_display_name(crate)}"
                and record.exc_info is not None
                for record in caplog.records
            )
        failures = [r for r in caplog.records if r.getMessage().startswith("unable to download")]
        assert len(failures) == 4

    def test_half_is_enough(self, temp_dir: Path) -> None:
        """Exactly half succeeding does not fail the batch."""
        crates = self.repos(10)
        mirrors = FakeMirrors(temp_dir / "mirrors", broken={c.url for c in crates[5:]})
        fetcher = make_fetcher(temp_dir, Registry({}), mirrors)

        assert fetcher.prepare([(c, fetcher.crate_dir(c)) for c in crates]).succeeded == 5

    def test_minority_success_fails_batch(self, temp_dir: Path) -> None:
        """Fewer than half succeeding raises PrepareFailed after trying all."""
        crates = self.repos(10)
        mirrors = FakeMirrors(temp_dir / "mirrors", broken={c.url for c in crates[4:]})
        fetcher = make_fetcher(temp_dir, Registry({}), mirrors)

        with pytest.raises(PrepareFailed) as exc_info:
            _ = fetcher.prepare([(c, fetcher.crate_dir(c)) for c in crates])
        assert exc_info.value.succeeded == 4
        assert exc_info.value.requested == 10

    def test_empty_batch(self, temp_dir: Path) -> None:
        """Nothing requested is not a failure."""
        fetcher = make_fetcher(temp_dir, Registry({}), FakeMirrors(temp_dir / "mirrors"))
        assert fetcher.prepare([]).requested == 0


class TestCaptureShas:
    """Tests for recording repository heads."""

    def test_capture_writes_shas(self, temp_dir: Path) -> None:
        """Every reachable repository's head is stored; broken ones are left out."""
        store = FsStore(temp_dir / "ex")
        ex = store.create_experiment(
            "ex1",
            [DistToolchain(dist="stable"), DistToolchain(dist="beta")],
            [
                RegistryCrate(name="serde", version="1.0.0"),
                GitHubRepo(url="https://github.com/org/good"),
                GitHubRepo(url="https://github.com/org/bad"),
            ],
            ExMode.BUILD_AND_TEST,
        )
        mirrors = FakeMirrors(temp_dir / "mirrors", broken={"https://github.com/org/bad"})
        fetcher = make_fetcher(temp_dir, Registry({}), mirrors)

        shas = fetcher.capture_shas(store, ex)

        assert shas == {"https://github.com/org/good": fake_sha("https://github.com/org/good")}
        assert store.read_shas("ex1") == shas

