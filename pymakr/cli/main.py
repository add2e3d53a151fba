import logging
import sys

from cyclopts import App
from rich.logging import RichHandler

import pymakr
from pymakr.cli.dev import dev
from pymakr.cli.download import download
from pymakr.cli.erase import erase
from pymakr.cli.exec import exec
from pymakr.cli.info import info
from pymakr.cli.reset import reset
from pymakr.cli.run import run
from pymakr.cli.upload import upload

app = App(version=pymakr.__version__, version_flags=("--version", "-v"), help_format="markdown")
app.command(dev)
app.command(download)
app.command(erase)
app.command(exec)
app.command(info)
app.command(reset)
app.command(run)
app.command(upload)

VERBOSE_FLAG = "--verbose"


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(show_path=verbose)],
    )


def run_app(*args, **kwargs):
    """Add CLI hacks that are not Cyclopts-friendly here."""
    # ``--verbose`` is accepted anywhere on the command line.
    verbose = VERBOSE_FLAG in sys.argv
    if verbose:
        sys.argv = [arg for arg in sys.argv if arg != VERBOSE_FLAG]
    setup_logging(verbose)
    app(*args, **kwargs)
