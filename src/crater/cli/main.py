# Copyright (c) Syntropy Systems
"""Main CLI entry point for crater."""

import typer

from crater.cli.compare import compare
from crater.cli.experiments import define_ex, delete_ex
from crater.cli.init_cmd import init
from crater.cli.prepare import prepare_ex
from crater.logs import setup_logging

app = typer.Typer(
    name="crater",
    help=(
        "Build and test a set of crates against two toolchains "
        "and report what regressed."
    ),
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug output",
    ),
) -> None:
    """Set up logging before any command runs."""
    setup_logging(verbose=verbose)


# Register commands
_ = app.command()(init)
_ = app.command(name="define-ex")(define_ex)
_ = app.command(name="delete-ex")(delete_ex)
_ = app.command(name="prepare-ex")(prepare_ex)
_ = app.command()(compare)


if __name__ == "__main__":
    app()
