# Copyright (c) Syntropy Systems
"""Comparison of paired results and the report built from them."""
from __future__ import annotations

import logging
from collections import Counter
from enum import Enum
from typing import TYPE_CHECKING, Optional

from crater.errors import CraterError, ParseError
from crater.models.base import CraterBaseModel
from crater.models.crates import (
    GitHubRepo,
    crate_display_name,
    gh_url_to_org_and_name,
    resolve_crate,
)
from crater.models.experiment import TestResult, result_path_fragment

if TYPE_CHECKING:
    from crater.models.crates import RegistryCrate, RepoCrate, VersionCrate
    from crater.models.experiment import Experiment
    from crater.models.toolchain import DistToolchain, TryToolchain
    from crater.store.base import ResultStore

logger = logging.getLogger(__name__)


class Comparison(str, Enum):
    """How a crate's outcome moved from the first toolchain to the second."""

    REGRESSED = "Regressed"
    FIXED = "Fixed"
    UNKNOWN = "Unknown"
    SAME_BUILD_FAIL = "SameBuildFail"
    SAME_TEST_FAIL = "SameTestFail"
    SAME_TEST_PASS = "SameTestPass"


_SAME = {
    TestResult.BUILD_FAIL: Comparison.SAME_BUILD_FAIL,
    TestResult.TEST_FAIL: Comparison.SAME_TEST_FAIL,
    TestResult.TEST_PASS: Comparison.SAME_TEST_PASS,
}


class BuildTestResult(CraterBaseModel):
    """One toolchain's outcome; the log is referenced by path, not inlined."""

    res: TestResult
    log: str


class CrateResult(CraterBaseModel):
    """Report entry for one crate."""

    name: str
    res: Comparison
    runs: tuple[Optional[BuildTestResult], Optional[BuildTestResult]]


class TestResults(CraterBaseModel):
    """The full report, one entry per crate in experiment order."""

    __test__ = False

    crates: list[CrateResult]

    def summary(self) -> dict[Comparison, int]:
        """Count crates per comparison, every comparison present."""
        counts = Counter(c.res for c in self.crates)
        return {comparison: counts.get(comparison, 0) for comparison in Comparison}


def compare(r1: TestResult | None, r2: TestResult | None) -> Comparison:
    """Classify a pair of outcomes.

    Equal outcomes are ``Same*``. An outcome that got further with the second
    toolchain is ``Fixed``, one that got less far is ``Regressed``. A missing
    side makes the pair ``Unknown``.
    """
    if r1 is None or r2 is None:
        return Comparison.UNKNOWN
    if r1 == r2:
        return _SAME[r1]
    if r1 < r2:
        return Comparison.FIXED
    return Comparison.REGRESSED


def _load_run(
    store: ResultStore,
    ex_name: str,
    crate: VersionCrate | RepoCrate,
    toolchain: DistToolchain | TryToolchain,
) -> BuildTestResult | None:
    """Load one side of a pair. Any failure turns into a missing result."""
    try:
        res = store.load_test_result(ex_name, crate, toolchain)
    except (CraterError, OSError) as e:
        logger.warning(
            "unable to load result for %s on %s: %s",
            crate_display_name(crate),
            toolchain.name,
            e,
        )
        return None
    if res is None:
        return None
    return BuildTestResult(res=res, log=str(result_path_fragment(crate, toolchain)))


def _entry_name(entry: RegistryCrate | GitHubRepo) -> str:
    if isinstance(entry, GitHubRepo):
        try:
            org, name = gh_url_to_org_and_name(entry.url)
        except ParseError:
            return "<unknown>"
        return f"{org}.{name}"
    return f"{entry.name}-{entry.version}"


def generate_report(store: ResultStore, ex: Experiment) -> TestResults:
    """Build the comparison report for an experiment with two toolchains.

    Raises:
        ValueError: if the experiment does not have exactly two toolchains

    """
    ex.require_comparable()
    tc1, tc2 = ex.toolchains
    shas = store.read_shas(ex.name)

    crates: list[CrateResult] = []
    for entry in ex.crates:
        try:
            crate = resolve_crate(entry, shas)
        except ParseError as e:
            logger.warning("%s", e)
            crates.append(
                CrateResult(name=_entry_name(entry), res=Comparison.UNKNOWN, runs=(None, None))
            )
            continue

        run1 = _load_run(store, ex.name, crate, tc1)
        run2 = _load_run(store, ex.name, crate, tc2)
        crates.append(
            CrateResult(
                name=crate_display_name(crate),
                res=compare(run1.res if run1 else None, run2.res if run2 else None),
                runs=(run1, run2),
            )
        )

    return TestResults(crates=crates)
