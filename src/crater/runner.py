# Copyright (c) Syntropy Systems
"""Process supervisor with heartbeat and absolute timeouts."""
from __future__ import annotations

import contextlib
import ctypes
import logging
import os
import selectors
import shlex
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

from crater.errors import CommandFailed, ProcessTimeout

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path

    from typing_extensions import TypeAlias

LogSink: TypeAlias = Union[logging.Logger, logging.LoggerAdapter]  # type: ignore[type-arg]

HEARTBEAT_TIMEOUT_SECS = 60 * 2
MAX_TIMEOUT_SECS = 60 * 10 * 2

_READ_SIZE = 65536


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so child dies when parent dies.

    This prevents orphan processes when the supervisor crashes.
    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        # Can't set PDEATHSIG, continue without it
        return


def format_command(command: str, args: Sequence[str]) -> str:
    """Format a command line for logs and error messages."""
    return shlex.join([command, *args])


@dataclass
class ProcessOutput:
    """Result of a successful command."""

    exit_code: int
    duration: float
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)


class _LineBuffer:
    """Splits a byte stream into decoded lines."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        data = self._pending + chunk
        *complete, self._pending = data.split(b"\n")
        return [self._decode(line) for line in complete]

    def finish(self) -> list[str]:
        if not self._pending:
            return []
        line, self._pending = self._pending, b""
        return [self._decode(line)]

    @staticmethod
    def _decode(line: bytes) -> str:
        return line.decode("utf-8", errors="replace").rstrip("\r")


class ProcessSupervisor:
    """Runs external commands and classifies their outcome.

    Each invocation waits on five events at once: child exit, stdout
    readable, stderr readable, the heartbeat deadline and the absolute
    deadline. Whichever is ready first wins. When a deadline fires the whole
    process group is killed before the timeout is reported, so grandchildren
    (build scripts, test binaries) die with the command.

    Output lines from both streams are forwarded to a logging sink as they
    arrive. The sink is passed explicitly so concurrent invocations can log
    to separate destinations.
    """

    heartbeat_timeout: float
    max_timeout: float
    logger: LogSink

    def __init__(
        self,
        heartbeat_timeout: float = HEARTBEAT_TIMEOUT_SECS,
        max_timeout: float = MAX_TIMEOUT_SECS,
        logger: LogSink | None = None,
    ) -> None:
        """Initialize a supervisor.

        Args:
            heartbeat_timeout: Seconds a command may stay silent on both streams
            max_timeout: Seconds a command may run in total
            logger: Default sink for command output

        """
        self.heartbeat_timeout = heartbeat_timeout
        self.max_timeout = max_timeout
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        workdir: Path | None = None,
        *,
        capture: bool = False,
        logger: LogSink | None = None,
    ) -> ProcessOutput:
        """Run a command to completion under both timeout policies.

        Args:
            command: Program to run (looked up on PATH)
            args: Arguments, passed without a shell
            env: Extra environment variables layered over ours
            workdir: Working directory for the command
            capture: Keep output lines in the returned ProcessOutput
            logger: Sink for this invocation, defaults to the supervisor's

        Returns:
            ProcessOutput for a command that exited 0

        Raises:
            ProcessTimeout: if a deadline fired (the process group is killed)
            CommandFailed: if the command exited nonzero
            OSError: if the command could not be started

        """
        sink = logger if logger is not None else self.logger
        command_line = format_command(command, args)

        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        sink.info("running `%s`", command_line)
        process = subprocess.Popen(  # noqa: S603
            [command, *args],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=full_env,
            cwd=str(workdir) if workdir is not None else None,
            start_new_session=True,  # Creates new process group
            preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
        )

        output = ProcessOutput(exit_code=0, duration=0.0)
        start = time.monotonic()
        try:
            exit_code = self._supervise(process, command_line, sink, output if capture else None)
        finally:
            for pipe in (process.stdout, process.stderr):
                if pipe is not None:
                    with contextlib.suppress(OSError):
                        pipe.close()

        output.exit_code = exit_code
        output.duration = time.monotonic() - start

        if exit_code != 0:
            raise CommandFailed(command_line, exit_code)
        return output

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        *,
        logger: LogSink | None = None,
    ) -> None:
        """Run a command for its exit status only."""
        _ = self.execute(command, args, env, logger=logger)

    def cd_run(
        self,
        workdir: Path,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        *,
        logger: LogSink | None = None,
    ) -> None:
        """Run a command inside workdir for its exit status only."""
        _ = self.execute(command, args, env, workdir, logger=logger)

    def run_capture(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        workdir: Path | None = None,
        *,
        logger: LogSink | None = None,
    ) -> tuple[list[str], list[str]]:
        """Run a command and return its (stdout, stderr) lines."""
        output = self.execute(command, args, env, workdir, capture=True, logger=logger)
        return output.stdout, output.stderr

    def _next_deadline(self, start: float, last_output: float) -> tuple[str, float, float]:
        """Return (phase, threshold, seconds remaining) for the nearest deadline."""
        now = time.monotonic()
        heartbeat_left = last_output + self.heartbeat_timeout - now
        absolute_left = start + self.max_timeout - now
        if absolute_left <= heartbeat_left:
            return "absolute", self.max_timeout, absolute_left
        return "heartbeat", self.heartbeat_timeout, heartbeat_left

    def _supervise(
        self,
        process: subprocess.Popen[bytes],
        command_line: str,
        sink: LogSink,
        output: ProcessOutput | None,
    ) -> int:
        start = time.monotonic()
        last_output = start

        selector = selectors.DefaultSelector()
        if process.stdout is not None:
            _ = selector.register(process.stdout, selectors.EVENT_READ, _LineBuffer("stdout"))
        if process.stderr is not None:
            _ = selector.register(process.stderr, selectors.EVENT_READ, _LineBuffer("stderr"))

        try:
            while selector.get_map():
                phase, threshold, remaining = self._next_deadline(start, last_output)
                if remaining <= 0:
                    self._kill(process)
                    raise ProcessTimeout(phase, threshold, command_line)

                for key, _mask in selector.select(remaining):
                    buffer: _LineBuffer = key.data
                    chunk = os.read(key.fd, _READ_SIZE)
                    if chunk:
                        lines = buffer.feed(chunk)
                    else:
                        selector.unregister(key.fileobj)
                        lines = buffer.finish()
                    if lines:
                        last_output = time.monotonic()
                    for line in lines:
                        sink.info("%s: %s", buffer.name, line)
                        if output is not None:
                            getattr(output, buffer.name).append(line)
        finally:
            selector.close()

        # Both streams are closed; the child may still be running.
        while True:
            phase, threshold, remaining = self._next_deadline(start, last_output)
            if remaining <= 0:
                self._kill(process)
                raise ProcessTimeout(phase, threshold, command_line)
            try:
                return process.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                continue

    def _kill(self, process: subprocess.Popen[bytes]) -> None:
        """SIGKILL the command's whole process group and reap it."""
        # With start_new_session the group id is the child's pid
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(process.pid, signal.SIGKILL)
        with contextlib.suppress(subprocess.TimeoutExpired):
            _ = process.wait(timeout=5.0)
