"""Logging setup: persistent log file plus colored console lines."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ["httpx", "httpcore", "botocore", "boto3", "s3transfer", "urllib3"]


def configure_logging(log_file: Path | None, verbose: bool = False, console: Console | None = None) -> Path | None:
    """Configure the root logger for one run.

    Every run appends to ``log_file`` whatever its outcome. Console output is
    only added when stderr is a terminal, so cron runs log to the file alone.

    Returns:
        The log file path, or None if it could not be opened.
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    opened = None
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            print(f"Cannot write log file {log_file}: {e}", file=sys.stderr)
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
            root.addHandler(file_handler)
            opened = log_file

    if console is not None or sys.stderr.isatty():
        console_handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            log_time_format="[%X]",
        )
        console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        root.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return opened
