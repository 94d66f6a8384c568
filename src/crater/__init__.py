"""
crater - Regression testing across toolchains.

Fetch crates, build and test them with two toolchains, compare the results.
"""

from crater.models.crates import RepoCrate, VersionCrate, crate_path
from crater.models.experiment import Experiment, ExMode, TestResult
from crater.models.toolchain import DistToolchain, TryToolchain, parse_toolchain

__version__ = "0.1.0"
__all__ = [
    "DistToolchain",
    "ExMode",
    "Experiment",
    "RepoCrate",
    "TestResult",
    "TryToolchain",
    "VersionCrate",
    "__version__",
    "crate_path",
    "parse_toolchain",
]
