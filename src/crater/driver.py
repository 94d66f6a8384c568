# Copyright (c) Syntropy Systems
"""Run every (crate, toolchain) pair of an experiment and record the outcomes."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Protocol

from crater.errors import CommandFailed, ParseError, ProcessTimeout
from crater.models.crates import crate_display_name, resolve_crate
from crater.models.experiment import ExMode, TestResult

if TYPE_CHECKING:
    from pathlib import Path

    from crater.crates import CrateFetcher
    from crater.models.crates import RepoCrate, VersionCrate
    from crater.models.experiment import Experiment
    from crater.models.toolchain import DistToolchain, TryToolchain
    from crater.runner import LogSink, ProcessSupervisor
    from crater.store.base import ResultStore

logger = logging.getLogger(__name__)

# Called once per crate before any toolchain runs; returns the directory to build in.
Sanitizer = Callable[["VersionCrate | RepoCrate", "Path"], "Path"]


class TestPolicy(Protocol):
    """Decides which commands build and test a crate.

    Both methods raise (typically CommandFailed or ProcessTimeout from the
    supervisor) when the step fails.
    """

    def build(
        self,
        supervisor: ProcessSupervisor,
        source_dir: Path,
        toolchain: DistToolchain | TryToolchain,
        logger: LogSink,
    ) -> None: ...

    def test(
        self,
        supervisor: ProcessSupervisor,
        source_dir: Path,
        toolchain: DistToolchain | TryToolchain,
        logger: LogSink,
    ) -> None: ...


@dataclass
class RunSummary:
    """Outcomes of an experiment run, keyed by (crate name, toolchain name)."""

    results: dict[tuple[str, str], TestResult] = field(default_factory=dict)
    errors: int = 0


def run_crate(
    store: ResultStore,
    supervisor: ProcessSupervisor,
    ex: Experiment,
    crate: VersionCrate | RepoCrate,
    toolchain: DistToolchain | TryToolchain,
    source_dir: Path,
    policy: TestPolicy,
) -> TestResult:
    """Build, and unless the mode says otherwise test, one crate with one toolchain.

    A failed or timed out build is a BuildFail, a failed or timed out test
    is a TestFail. Anything else escapes and leaves no recorded result.
    """

    def producer(sink: LogSink) -> TestResult:
        sink.info("testing %s against %s", crate_display_name(crate), toolchain.name)
        try:
            policy.build(supervisor, source_dir, toolchain, sink)
        except (CommandFailed, ProcessTimeout) as e:
            sink.info("build failed: %s", e)
            return TestResult.BUILD_FAIL

        if ex.mode is not ExMode.BUILD_AND_TEST:
            return TestResult.TEST_PASS

        try:
            policy.test(supervisor, source_dir, toolchain, sink)
        except (CommandFailed, ProcessTimeout) as e:
            sink.info("test failed: %s", e)
            return TestResult.TEST_FAIL
        return TestResult.TEST_PASS

    result = store.record_test_results(ex.name, crate, toolchain, producer)
    logger.info("%s on %s: %s", crate_display_name(crate), toolchain.name, result)
    return result


def run_experiment(
    store: ResultStore,
    fetcher: CrateFetcher,
    supervisor: ProcessSupervisor,
    ex: Experiment,
    policy: TestPolicy,
    workers: int = 1,
    sanitize: Sanitizer | None = None,
) -> RunSummary:
    """Prepare an experiment's crates and run every (crate, toolchain) pair.

    Per-pair failures are logged and counted. A prepare batch that fails
    outright (PrepareFailed) aborts the run.
    """
    shas = store.read_shas(ex.name)
    crates: list[VersionCrate | RepoCrate] = []
    summary = RunSummary()
    for entry in ex.crates:
        try:
            crates.append(resolve_crate(entry, shas))
        except ParseError as e:
            logger.warning("skipping crate: %s", e)
            summary.errors += 1

    _ = fetcher.prepare([(crate, fetcher.crate_dir(crate)) for crate in crates])

    build_dirs: dict[VersionCrate | RepoCrate, Path] = {}
    for crate in crates:
        source_dir = fetcher.crate_dir(crate)
        if not source_dir.exists():
            logger.warning("no sources for %s, skipping", crate_display_name(crate))
            summary.errors += 1
            continue
        if sanitize is None:
            build_dirs[crate] = source_dir
            continue
        try:
            build_dirs[crate] = sanitize(crate, source_dir)
        except Exception:
            logger.exception("unable to sanitize %s", crate_display_name(crate))
            summary.errors += 1

    lock = threading.Lock()

    def run_one(task: tuple[VersionCrate | RepoCrate, DistToolchain | TryToolchain]) -> None:
        crate, toolchain = task
        try:
            result = run_crate(store, supervisor, ex, crate, toolchain, build_dirs[crate], policy)
        except Exception:
            logger.exception(
                "unable to test %s against %s", crate_display_name(crate), toolchain.name
            )
            with lock:
                summary.errors += 1
            return
        with lock:
            summary.results[(crate_display_name(crate), toolchain.name)] = result

    tasks = [(crate, toolchain) for crate in build_dirs for toolchain in ex.toolchains]
    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        _ = list(pool.map(run_one, tasks))

    logger.info(
        "ran %d of %d crate/toolchain pairs (%d errors)",
        len(summary.results),
        len(tasks),
        summary.errors,
    )
    return summary
