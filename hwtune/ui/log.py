"""Logging setup: module loggers render through rich on stderr."""

import logging

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(verbose: bool = False, quiet: bool = False):
    """Configure the root logger once per process."""
    level = logging.WARNING
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, markup=False)],
        force=True,
    )

    # requests/urllib3 log every metadata probe at DEBUG
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))
