"""Logging setup and stderr reporting helpers.

The terminal UI owns the screen, so log records go to a file under the
melt data directory instead of stderr.
"""

import logging
import os
import sys
from pathlib import Path

import structlog

from .config import get_data_dir

LOG_FILE_NAME = 'melt.log'


def get_log_path() -> Path:
    """Get the log file path ($XDG_DATA_HOME/melt/melt.log)."""
    return get_data_dir() / LOG_FILE_NAME


def setup_logging(verbose: bool = False, log_path: Path | None = None) -> Path | None:
    """Route stdlib logging through structlog into the melt log file.

    The level comes from MELT_LOG (DEBUG, INFO, WARNING, ERROR), defaulting
    to INFO, or DEBUG when verbose is set.

    Returns the log file path, or None if the file could not be opened.
    """
    default = 'DEBUG' if verbose else 'INFO'
    level = getattr(logging, os.environ.get('MELT_LOG', default).upper(), logging.INFO)

    log_path = log_path or get_log_path()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding='utf-8')
    except OSError as e:
        warn(f'cannot open log file {log_path}: {e}')
        return None

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt='iso'),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
    )
    handler.setFormatter(formatter)

    root = logging.getLogger('melt')
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
    return log_path


def warn(msg: str) -> None:
    """Print a warning message to stderr in nix style."""
    print(f'warning: {msg}', file=sys.stderr)


def echo_command(cmd: list[str]) -> None:
    """Print a command about to be run, shell-trace style."""
    print(f'+ {" ".join(cmd)}', file=sys.stderr)
