# Copyright (c) Syntropy Systems
"""Compiler toolchains under test."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import Field, ValidationError
from typing_extensions import TypeAlias

from crater.errors import ParseError

from .base import FrozenModel
from .crates import SHA_PATTERN

TRY_PREFIX = "try#"

# Starts with a letter or digit, so never "." or ".."; no path separators
DIST_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._+-]*$"


class DistToolchain(FrozenModel):
    """A released toolchain channel or dated nightly (stable, beta, nightly-2017-06-01)."""

    kind: Literal["dist"] = "dist"
    dist: Annotated[str, Field(pattern=DIST_PATTERN)]

    @property
    def name(self) -> str:
        """Canonical name, used as a cache and result path key."""
        return self.dist


class TryToolchain(FrozenModel):
    """An unreleased try build identified by its commit."""

    kind: Literal["try"] = "try"
    sha: Annotated[str, Field(pattern=SHA_PATTERN)]

    @property
    def name(self) -> str:
        """Canonical name, used as a cache and result path key."""
        return f"{TRY_PREFIX}{self.sha}"


Toolchain: TypeAlias = Annotated[Union[DistToolchain, TryToolchain], Field(discriminator="kind")]


def parse_toolchain(value: str) -> DistToolchain | TryToolchain:
    """Parse ``stable`` / ``nightly-2017-06-01`` / ``try#<sha>``.

    Raises:
        ParseError: for an empty name, a try build without a hex sha, or a
            name that isn't a single path component (``/``, ``.``, ``..``)

    """
    value = value.strip()
    try:
        if value.startswith(TRY_PREFIX):
            return TryToolchain(sha=value[len(TRY_PREFIX):])
        return DistToolchain(dist=value)
    except ValidationError as e:
        msg = f"invalid toolchain name: {value!r}"
        raise ParseError(msg) from e
