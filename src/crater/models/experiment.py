# Copyright (c) Syntropy Systems
"""Experiment definitions and per-crate test outcomes."""

from __future__ import annotations

import re
from enum import Enum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Annotated, TypeVar

from pydantic import Field, field_validator

from crater.errors import ParseError

from .base import CraterBaseModel
from .crates import Crate, GitHubRepo, crate_path
from .toolchain import Toolchain

if TYPE_CHECKING:
    from .crates import RepoCrate, VersionCrate
    from .toolchain import DistToolchain, TryToolchain

_T = TypeVar("_T")

# Experiment names are single path components in the filesystem store
EX_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"
_EX_NAME_RE = re.compile(EX_NAME_PATTERN)


class ExMode(str, Enum):
    """What the driver does with each crate."""

    BUILD_AND_TEST = "build-and-test"
    BUILD_ONLY = "build-only"
    CHECK_ONLY = "check-only"
    UNSTABLE_FEATURES = "unstable-features"


class TestResult(str, Enum):
    """Outcome of one (crate, toolchain) run, ordered by how far it got."""

    __test__ = False

    BUILD_FAIL = "build-fail"
    TEST_FAIL = "test-fail"
    TEST_PASS = "test-pass"

    @property
    def rank(self) -> int:
        return _RANKS[self.value]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, TestResult):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, TestResult):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, TestResult):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, TestResult):
            return NotImplemented
        return self.rank >= other.rank

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, token: str) -> TestResult:
        """Parse a persisted result token.

        Raises:
            ParseError: if the token is not one of the three literals

        """
        try:
            return cls(token.strip())
        except ValueError as e:
            msg = f"bogus test result: {token!r}"
            raise ParseError(msg) from e


_RANKS = {"build-fail": 0, "test-fail": 1, "test-pass": 2}


class Experiment(CraterBaseModel):
    """A named run of a crate set across toolchains."""

    name: Annotated[str, Field(pattern=EX_NAME_PATTERN)]
    mode: ExMode = ExMode.BUILD_AND_TEST
    toolchains: list[Toolchain] = Field(default_factory=list)
    crates: list[Crate] = Field(default_factory=list)

    @field_validator("toolchains", "crates")
    @classmethod
    def _drop_duplicates(cls, items: list[_T]) -> list[_T]:
        # First occurrence wins; every backend stores each entry once
        return list(dict.fromkeys(items))

    def require_comparable(self) -> None:
        """Raise ValueError unless the experiment pairs exactly two toolchains."""
        if len(self.toolchains) != 2:
            msg = (
                f"experiment `{self.name}` has {len(self.toolchains)} toolchains, "
                "comparison needs exactly 2"
            )
            raise ValueError(msg)

    def repo_urls(self) -> list[str]:
        """URLs of the repository crates, in experiment order."""
        return [c.url for c in self.crates if isinstance(c, GitHubRepo)]


def result_path_fragment(
    crate: VersionCrate | RepoCrate,
    toolchain: DistToolchain | TryToolchain,
) -> PurePosixPath:
    """Path fragment identifying this crate and toolchain."""
    return PurePosixPath(toolchain.name) / crate_path(crate)


def check_ex_name(ex_name: str) -> str:
    """Return ex_name if it is a valid experiment name.

    Raises:
        ParseError: if the name could not be used as a directory name

    """
    if not _EX_NAME_RE.fullmatch(ex_name):
        msg = f"invalid experiment name: {ex_name!r}"
        raise ParseError(msg)
    return ex_name
