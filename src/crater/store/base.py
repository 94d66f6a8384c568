# Copyright (c) Syntropy Systems
"""Result store interface shared by the filesystem and SQL backends."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from typing import TextIO

    from typing_extensions import TypeAlias

    from crater.models.crates import GitHubRepo, RegistryCrate, RepoCrate, VersionCrate
    from crater.models.experiment import Experiment, ExMode, TestResult
    from crater.models.toolchain import DistToolchain, TryToolchain
    from crater.runner import LogSink

    CrateSpec: TypeAlias = "VersionCrate | RepoCrate"
    Toolchain: TypeAlias = "DistToolchain | TryToolchain"
    ExperimentCrate: TypeAlias = "RegistryCrate | GitHubRepo"

Producer = Callable[["LogSink"], "TestResult"]


class ResultStore(ABC):
    """Persists experiments, resolved shas and per-crate test outcomes."""

    @abstractmethod
    def load_experiment(self, ex_name: str) -> Experiment:
        """Load an experiment definition.

        Raises:
            ExperimentMissing: if no experiment has this name

        """

    @abstractmethod
    def create_experiment(
        self,
        ex_name: str,
        toolchains: list[Toolchain],
        crates: list[ExperimentCrate],
        mode: ExMode,
    ) -> Experiment:
        """Define a new experiment.

        Raises:
            ValueError: if an experiment with this name already exists

        """

    @abstractmethod
    def delete_experiment(self, ex_name: str) -> None:
        """Delete an experiment and everything recorded for it."""

    @abstractmethod
    def write_shas(self, ex_name: str, shas: dict[str, str]) -> None:
        """Record the commit resolved for each repository URL."""

    @abstractmethod
    def read_shas(self, ex_name: str) -> dict[str, str]:
        """Return the recorded repository URL -> commit mapping."""

    @abstractmethod
    def load_test_result(
        self,
        ex_name: str,
        crate: CrateSpec,
        toolchain: Toolchain,
    ) -> TestResult | None:
        """Return the recorded outcome, or None if there is none."""

    @abstractmethod
    def delete_test_result(self, ex_name: str, crate: CrateSpec, toolchain: Toolchain) -> None:
        """Delete the outcome and log recorded for one crate and toolchain."""

    @abstractmethod
    def delete_all_test_results(self, ex_name: str) -> None:
        """Delete every outcome and log of an experiment."""

    @abstractmethod
    def read_test_log(self, ex_name: str, crate: CrateSpec, toolchain: Toolchain) -> TextIO:
        """Open the log of one crate and toolchain for reading."""

    @abstractmethod
    def record_test_results(
        self,
        ex_name: str,
        crate: CrateSpec,
        toolchain: Toolchain,
        producer: Producer,
    ) -> TestResult:
        """Run producer and persist the outcome it returns.

        Any previous outcome for the key is deleted first. The producer gets
        a logger writing to this key's log. The outcome is stored only if the
        producer returns; if it raises, the exception propagates and no
        outcome exists for the key.
        """
