# Copyright (c) Syntropy Systems
"""Error types raised by crater."""
from __future__ import annotations


class CraterError(Exception):
    """Base class for crater errors."""


class NetworkError(CraterError):
    """A download or clone failed."""


class ParseError(CraterError, ValueError):
    """Malformed manifest, JSON document, URL or result token."""


class ExperimentMissing(CraterError):
    """The named experiment does not exist."""

    name: str

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"The experiment `{name}` doesn't exist.")


class CommandFailed(CraterError):
    """A supervised command exited with a nonzero status."""

    command_line: str
    exit_code: int

    def __init__(self, command_line: str, exit_code: int) -> None:
        self.command_line = command_line
        self.exit_code = exit_code
        super().__init__(f"command `{command_line}` failed (exit code {exit_code})")


class ProcessTimeout(CraterError):
    """A supervised command was killed by one of the timeout policies."""

    phase: str
    threshold_seconds: float
    command_line: str

    def __init__(self, phase: str, threshold_seconds: float, command_line: str) -> None:
        self.phase = phase
        self.threshold_seconds = threshold_seconds
        self.command_line = command_line
        super().__init__(
            f"process `{command_line}` killed after {phase} timeout of {threshold_seconds:g}s"
        )


class NotSupportedError(CraterError, NotImplementedError):
    """The selected backend does not implement this operation."""


class PrepareFailed(CraterError):
    """Too many crates failed to download."""

    succeeded: int
    requested: int

    def __init__(self, succeeded: int, requested: int) -> None:
        self.succeeded = succeeded
        self.requested = requested
        super().__init__(
            "unable to download a suspiciously-large number of crates "
            f"({succeeded} of {requested} succeeded)"
        )
