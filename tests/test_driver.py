# Copyright (c) Syntropy Systems
"""Tests for running experiments with a caller-supplied policy."""

from collections.abc import Sequence
from pathlib import Path

from crater.crates import PrepareSummary
from crater.driver import run_crate, run_experiment
from crater.errors import CommandFailed, ProcessTimeout
from crater.models.crates import GitHubRepo, RegistryCrate, RepoCrate, VersionCrate, crate_path
from crater.models.experiment import ExMode, TestResult
from crater.models.toolchain import DistToolchain
from crater.runner import LogSink, ProcessSupervisor
from crater.store.fs import FsStore

STABLE = DistToolchain(dist="stable")
BETA = DistToolchain(dist="beta")


class ScriptedPolicy:
    """Fails build or test for crates and toolchains named in its tables."""

    def __init__(
        self,
        build_fail: set[tuple[str, str]] | None = None,
        test_fail: set[tuple[str, str]] | None = None,
        crash: set[tuple[str, str]] | None = None,
    ) -> None:
        self.build_fail = build_fail or set()
        self.test_fail = test_fail or set()
        self.crash = crash or set()
        self.tested: list[tuple[str, str]] = []

    @staticmethod
    def key(source_dir: Path, toolchain: DistToolchain) -> tuple[str, str]:
        return source_dir.name, toolchain.name

    def build(
        self,
        supervisor: ProcessSupervisor,
        source_dir: Path,
        toolchain: DistToolchain,
        logger: LogSink,
    ) -> None:
        key = self.key(source_dir, toolchain)
        logger.info("building %s", key)
        if key in self.crash:
            raise RuntimeError("policy crashed")
        if key in self.build_fail:
            raise CommandFailed("cargo build", 101)

    def test(
        self,
        supervisor: ProcessSupervisor,
        source_dir: Path,
        toolchain: DistToolchain,
        logger: LogSink,
    ) -> None:
        key = self.key(source_dir, toolchain)
        self.tested.append(key)
        if key in self.test_fail:
            raise ProcessTimeout("heartbeat", 120, "cargo test")


class FakeFetcher:
    """Creates an empty source directory per crate."""

    def __init__(self, root: Path, missing: set[str] | None = None) -> None:
        self.root = root
        self.missing = missing or set()

    def crate_dir(self, spec: VersionCrate | RepoCrate) -> Path:
        return self.root / crate_path(spec)

    def prepare(self, items: Sequence[tuple[VersionCrate | RepoCrate, Path]]) -> PrepareSummary:
        for _, dest in items:
            if dest.name not in self.missing:
                dest.mkdir(parents=True, exist_ok=True)
        return PrepareSummary(requested=len(items), succeeded=len(items) - len(self.missing))


def define(store: FsStore, mode: ExMode = ExMode.BUILD_AND_TEST) -> None:
    _ = store.create_experiment(
        "ex1",
        [STABLE, BETA],
        [
            RegistryCrate(name="serde", version="1.0.0"),
            RegistryCrate(name="log", version="0.4.0"),
            GitHubRepo(url="https://github.com/org/repo"),
        ],
        mode,
    )
    store.write_shas("ex1", {"https://github.com/org/repo": "abc"})


class TestRunCrate:
    """Tests for a single crate and toolchain."""

    def test_pass(self, temp_dir: Path) -> None:
        """Build and test succeeding records TestPass with the policy's log."""
        store = FsStore(temp_dir / "ex")
        define(store)
        ex = store.load_experiment("ex1")
        crate = VersionCrate(name="serde", version="1.0.0")
        source = temp_dir / "serde-1.0.0"

        result = run_crate(store, ProcessSupervisor(), ex, crate, STABLE, source, ScriptedPolicy())

        assert result is TestResult.TEST_PASS
        with store.read_test_log("ex1", crate, STABLE) as log:
            assert "building" in log.read()

    def test_build_failure(self, temp_dir: Path) -> None:
        """A failed build is BuildFail and the tests are not run."""
        store = FsStore(temp_dir / "ex")
        define(store)
        ex = store.load_experiment("ex1")
        policy = ScriptedPolicy(build_fail={("serde-1.0.0", "beta")})
        crate = VersionCrate(name="serde", version="1.0.0")

        result = run_crate(store, ProcessSupervisor(), ex, crate, BETA, temp_dir / "serde-1.0.0", policy)

        assert result is TestResult.BUILD_FAIL
        assert policy.tested == []

    def test_test_timeout(self, temp_dir: Path) -> None:
        """A test that times out is TestFail."""
        store = FsStore(temp_dir / "ex")
        define(store)
        ex = store.load_experiment("ex1")
        policy = ScriptedPolicy(test_fail={("serde-1.0.0", "beta")})
        crate = VersionCrate(name="serde", version="1.0.0")

        result = run_crate(store, ProcessSupervisor(), ex, crate, BETA, temp_dir / "serde-1.0.0", policy)

        assert result is TestResult.TEST_FAIL
        assert store.load_test_result("ex1", crate, BETA) is TestResult.TEST_FAIL

    def test_build_only_mode_skips_tests(self, temp_dir: Path) -> None:
        """Modes other than build-and-test pass once the build succeeds."""
        store = FsStore(temp_dir / "ex")
        define(store, ExMode.BUILD_ONLY)
        ex = store.load_experiment("ex1")
        policy = ScriptedPolicy(test_fail={("serde-1.0.0", "stable")})
        crate = VersionCrate(name="serde", version="1.0.0")

        result = run_crate(store, ProcessSupervisor(), ex, crate, STABLE, temp_dir / "serde-1.0.0", policy)

        assert result is TestResult.TEST_PASS
        assert policy.tested == []


class TestRunExperiment:
    """Tests for whole experiments."""

    def test_every_pair_runs(self, temp_dir: Path) -> None:
        """Each crate runs once per toolchain and the outcomes are stored."""
        store = FsStore(temp_dir / "ex")
        define(store)
        ex = store.load_experiment("ex1")
        policy = ScriptedPolicy(build_fail={("log-0.4.0", "beta")})

        summary = run_experiment(
            store,
            FakeFetcher(temp_dir / "crates"),  # type: ignore[arg-type]
            ProcessSupervisor(),
            ex,
            policy,
            workers=3,
        )

        assert summary.errors == 0
        assert len(summary.results) == 6
        assert summary.results[("log-0.4.0", "beta")] is TestResult.BUILD_FAIL
        assert summary.results[("org.repo.abc", "stable")] is TestResult.TEST_PASS
        repo = RepoCrate(url="https://github.com/org/repo", sha="abc")
        assert store.load_test_result("ex1", repo, BETA) is TestResult.TEST_PASS

    def test_errors_are_counted(self, temp_dir: Path) -> None:
        """A crashing policy leaves no result and does not stop the run."""
        store = FsStore(temp_dir / "ex")
        define(store)
        ex = store.load_experiment("ex1")
        policy = ScriptedPolicy(crash={("serde-1.0.0", "stable")})

        summary = run_experiment(
            store,
            FakeFetcher(temp_dir / "crates"),  # type: ignore[arg-type]
            ProcessSupervisor(),
            ex,
            policy,
        )

        assert summary.errors == 1
        assert len(summary.results) == 5
        serde = VersionCrate(name="serde", version="1.0.0")
        assert store.load_test_result("ex1", serde, STABLE) is None

    def test_missing_sources_and_shas_are_skipped(self, temp_dir: Path) -> None:
        """Crates without sources or without a sha are skipped and counted."""
        store = FsStore(temp_dir / "ex")
        define(store)
        store.write_shas("ex1", {})
        ex = store.load_experiment("ex1")

        summary = run_experiment(
            store,
            FakeFetcher(temp_dir / "crates", missing={"log-0.4.0"}),  # type: ignore[arg-type]
            ProcessSupervisor(),
            ex,
            ScriptedPolicy(),
        )

        assert summary.errors == 2
        assert set(summary.results) == {("serde-1.0.0", "stable"), ("serde-1.0.0", "beta")}

    def test_sanitizer_picks_build_dir(self, temp_dir: Path) -> None:
        """The sanitizer's returned directory is where the policy builds."""
        store = FsStore(temp_dir / "ex")
        define(store)
        ex = store.load_experiment("ex1")
        policy = ScriptedPolicy()

        def sanitize(crate: VersionCrate | RepoCrate, source_dir: Path) -> Path:
            target = temp_dir / "build" / f"clean-{source_dir.name}"
            target.mkdir(parents=True, exist_ok=True)
            return target

        _ = run_experiment(
            store,
            FakeFetcher(temp_dir / "crates"),  # type: ignore[arg-type]
            ProcessSupervisor(),
            ex,
            policy,
            sanitize=sanitize,
        )

        assert all(name.startswith("clean-") for name, _ in policy.tested)
        assert len(policy.tested) == 6
