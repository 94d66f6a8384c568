# Copyright (c) Syntropy Systems
"""Filesystem result store.

Layout under the root::

    <ex>/config.json
    <ex>/shas.json
    <ex>/res/<toolchain>/<crate-path>/results.txt
    <ex>/res/<toolchain>/<crate-path>/log.txt

``<crate-path>`` is the same fragment the source cache uses, so sources and
results share keys. Every (crate, toolchain) pair owns a separate directory,
which is why concurrent workers need no locking here.
"""
from __future__ import annotations

import json
import logging
import shutil
from typing import TYPE_CHECKING

from pydantic import TypeAdapter, ValidationError

from crater.errors import ExperimentMissing, ParseError
from crater.logs import redirect
from crater.models.experiment import (
    Experiment,
    TestResult,
    check_ex_name,
    result_path_fragment,
)

from .base import ResultStore

if TYPE_CHECKING:
    from pathlib import Path
    from typing import TextIO

    from crater.models.experiment import ExMode

    from .base import CrateSpec, ExperimentCrate, Producer, Toolchain

logger = logging.getLogger(__name__)

_SHAS_ADAPTER = TypeAdapter(dict[str, str])


class FsStore(ResultStore):
    """Result store backed by plain files."""

    root: Path

    def __init__(self, root: Path) -> None:
        self.root = root

    def ex_dir(self, ex_name: str) -> Path:
        return self.root / check_ex_name(ex_name)

    def config_file(self, ex_name: str) -> Path:
        return self.ex_dir(ex_name) / "config.json"

    def sha_file(self, ex_name: str) -> Path:
        return self.ex_dir(ex_name) / "shas.json"

    def result_dir(self, ex_name: str, crate: CrateSpec, toolchain: Toolchain) -> Path:
        return self.ex_dir(ex_name) / "res" / result_path_fragment(crate, toolchain)

    def result_file(self, ex_name: str, crate: CrateSpec, toolchain: Toolchain) -> Path:
        return self.result_dir(ex_name, crate, toolchain) / "results.txt"

    def result_log(self, ex_name: str, crate: CrateSpec, toolchain: Toolchain) -> Path:
        return self.result_dir(ex_name, crate, toolchain) / "log.txt"

    def load_experiment(self, ex_name: str) -> Experiment:
        config_file = self.config_file(ex_name)
        if not config_file.exists():
            raise ExperimentMissing(ex_name)
        try:
            return Experiment.model_validate_json(config_file.read_text())
        except ValidationError as e:
            msg = f"invalid experiment config at {config_file}: {e}"
            raise ParseError(msg) from e

    def create_experiment(
        self,
        ex_name: str,
        toolchains: list[Toolchain],
        crates: list[ExperimentCrate],
        mode: ExMode,
    ) -> Experiment:
        if self.config_file(ex_name).exists():
            msg = f"experiment `{ex_name}` already exists"
            raise ValueError(msg)

        logger.info("defining experiment %s for %d crates", ex_name, len(crates))
        ex = Experiment(name=ex_name, mode=mode, toolchains=toolchains, crates=crates)
        self.ex_dir(ex_name).mkdir(parents=True, exist_ok=True)
        config_file = self.config_file(ex_name)
        logger.info("writing ex config to %s", config_file)
        _ = config_file.write_text(ex.model_dump_json())
        return ex

    def delete_experiment(self, ex_name: str) -> None:
        ex_dir = self.ex_dir(ex_name)
        if ex_dir.exists():
            shutil.rmtree(ex_dir)

    def write_shas(self, ex_name: str, shas: dict[str, str]) -> None:
        if not self.ex_dir(ex_name).exists():
            raise ExperimentMissing(ex_name)
        sha_file = self.sha_file(ex_name)
        logger.info("writing shas to %s", sha_file)
        _ = sha_file.write_text(json.dumps(shas, sort_keys=True))

    def read_shas(self, ex_name: str) -> dict[str, str]:
        if not self.ex_dir(ex_name).exists():
            raise ExperimentMissing(ex_name)
        sha_file = self.sha_file(ex_name)
        if not sha_file.exists():
            return {}
        try:
            return _SHAS_ADAPTER.validate_json(sha_file.read_text())
        except ValidationError as e:
            msg = f"invalid shas file at {sha_file}: {e}"
            raise ParseError(msg) from e

    def load_test_result(
        self,
        ex_name: str,
        crate: CrateSpec,
        toolchain: Toolchain,
    ) -> TestResult | None:
        result_file = self.result_file(ex_name, crate, toolchain)
        if not result_file.exists():
            return None
        return TestResult.parse(result_file.read_text())

    def delete_test_result(self, ex_name: str, crate: CrateSpec, toolchain: Toolchain) -> None:
        result_dir = self.result_dir(ex_name, crate, toolchain)
        if result_dir.exists():
            shutil.rmtree(result_dir)

    def delete_all_test_results(self, ex_name: str) -> None:
        res_dir = self.ex_dir(ex_name) / "res"
        if res_dir.exists():
            shutil.rmtree(res_dir)

    def read_test_log(self, ex_name: str, crate: CrateSpec, toolchain: Toolchain) -> TextIO:
        return self.result_log(ex_name, crate, toolchain).open(encoding="utf-8")

    def record_test_results(
        self,
        ex_name: str,
        crate: CrateSpec,
        toolchain: Toolchain,
        producer: Producer,
    ) -> TestResult:
        self.delete_test_result(ex_name, crate, toolchain)
        self.result_dir(ex_name, crate, toolchain).mkdir(parents=True, exist_ok=True)

        with redirect(self.result_log(ex_name, crate, toolchain), logger) as result_logger:
            result = producer(result_logger)

        _ = self.result_file(ex_name, crate, toolchain).write_text(f"{result}\n")
        return result
