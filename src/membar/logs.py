"""Logging setup shared by the CLI commands."""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"


def configure_logging(level: str = "WARNING", log_file: Path | None = None, *, quiet: bool = False) -> None:
    """
    Configure the root logger once per process.

    quiet drops records unless log_file is given; the terminal UI owns
    the screen and must not have log lines written over it.
    """
    handlers: list[logging.Handler]
    if log_file is not None:
        handlers = [logging.FileHandler(log_file, encoding="utf-8")]
    elif quiet:
        handlers = [logging.NullHandler()]
    else:
        handlers = [logging.StreamHandler()]

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
