# Copyright (c) Syntropy Systems
"""Crate identities and the paths derived from them.

Every field that ends up in a cache or result path is constrained on the
model, so a crate loaded from any source maps to exactly one path below its
root. Names never contain ``.`` and versions always start with
``<major>.``, which keeps ``<name>-<version>`` unambiguous.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Annotated, Literal, Union
from urllib.parse import urlsplit

from pydantic import Field, ValidationError, field_validator
from typing_extensions import TypeAlias, assert_never

from crater.errors import ParseError

from .base import FrozenModel

CRATE_NAME_PATTERN = r"^[A-Za-z0-9_-]+$"

# https://semver.org, without leading zeros in numeric identifiers
_SEMVER_IDENT = r"(?:0|[1-9][0-9]*|[0-9]*[a-zA-Z-][0-9a-zA-Z-]*)"
SEMVER_PATTERN = (
    r"^(0|[1-9][0-9]*)\.(0|[1-9][0-9]*)\.(0|[1-9][0-9]*)"
    rf"(?:-({_SEMVER_IDENT}(?:\.{_SEMVER_IDENT})*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

SHA_PATTERN = r"^[0-9a-fA-F]{1,64}$"

_ORG_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_REPO_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

CrateName: TypeAlias = Annotated[str, Field(pattern=CRATE_NAME_PATTERN)]
CrateVersion: TypeAlias = Annotated[str, Field(pattern=SEMVER_PATTERN)]
CommitSha: TypeAlias = Annotated[str, Field(pattern=SHA_PATTERN)]


class VersionCrate(FrozenModel):
    """A release published on the registry."""

    kind: Literal["version"] = "version"
    name: CrateName
    version: CrateVersion


class RepoCrate(FrozenModel):
    """A git repository pinned to a commit."""

    kind: Literal["repo"] = "repo"
    url: str
    sha: CommitSha

    @field_validator("url")
    @classmethod
    def _check_url(cls, url: str) -> str:
        _ = gh_url_to_org_and_name(url)
        return url


CrateSpec: TypeAlias = Annotated[Union[VersionCrate, RepoCrate], Field(discriminator="kind")]


class RegistryCrate(FrozenModel):
    """Experiment entry for a registry release."""

    kind: Literal["registry"] = "registry"
    name: CrateName
    version: CrateVersion


class GitHubRepo(FrozenModel):
    """Experiment entry for a repository; its sha is resolved at prepare time."""

    kind: Literal["github"] = "github"
    url: str

    @field_validator("url")
    @classmethod
    def _check_url(cls, url: str) -> str:
        _ = gh_url_to_org_and_name(url)
        return url


Crate: TypeAlias = Annotated[Union[RegistryCrate, GitHubRepo], Field(discriminator="kind")]


def gh_url_to_org_and_name(url: str) -> tuple[str, str]:
    """Split a repository URL into its organization and repository name.

    Organizations are letters, digits, ``_`` and ``-``; repository names may
    also contain dots but are never ``.`` or ``..``.

    Raises:
        ParseError: if the URL path has fewer than two segments or either
            part has characters outside those sets

    """
    parts = [p for p in urlsplit(url).path.split("/") if p]
    if len(parts) < 2:
        msg = f"malformed repo url: {url}"
        raise ParseError(msg)
    org, name = parts[-2], parts[-1]
    name = name.removesuffix(".git")
    if not _ORG_RE.fullmatch(org) or not _REPO_RE.fullmatch(name) or name in (".", ".."):
        msg = f"malformed repo url: {url}"
        raise ParseError(msg)
    return org, name


def crate_path(spec: VersionCrate | RepoCrate) -> PurePosixPath:
    """Return the cache path fragment for a crate.

    Sources (under the crates dir) and results (under a toolchain dir) both
    use this fragment, so the two trees share keys.
    """
    if isinstance(spec, VersionCrate):
        return PurePosixPath("reg") / f"{spec.name}-{spec.version}"
    if isinstance(spec, RepoCrate):
        org, name = gh_url_to_org_and_name(spec.url)
        return PurePosixPath("gh") / f"{org}.{name}.{spec.sha}"
    assert_never(spec)


def crate_display_name(spec: VersionCrate | RepoCrate) -> str:
    """Human readable crate name used in reports."""
    return crate_path(spec).name


def resolve_crate(entry: RegistryCrate | GitHubRepo, shas: dict[str, str]) -> VersionCrate | RepoCrate:
    """Turn one experiment entry into a concrete crate spec.

    Repositories take their commit from ``shas`` (url -> sha).

    Raises:
        ParseError: if a repository has no recorded sha, or a malformed one

    """
    if isinstance(entry, RegistryCrate):
        return VersionCrate(name=entry.name, version=entry.version)
    if isinstance(entry, GitHubRepo):
        sha = shas.get(entry.url)
        if sha is None:
            msg = f"no sha recorded for {entry.url}"
            raise ParseError(msg)
        try:
            return RepoCrate(url=entry.url, sha=sha)
        except ValidationError as e:
            msg = f"invalid sha recorded for {entry.url}: {sha!r}"
            raise ParseError(msg) from e
    assert_never(entry)


def resolve_crates(
    crates: list[RegistryCrate | GitHubRepo],
    shas: dict[str, str],
) -> list[VersionCrate | RepoCrate]:
    """Resolve every experiment entry; see resolve_crate."""
    return [resolve_crate(entry, shas) for entry in crates]
