# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

"""
Activity log for ykpm.

Every operational milestone is appended to a line-oriented log file,
one timestamped line per event:

    [2025-06-01 13:22:05] Backed up slot 5FC101

Operator-facing output is printed separately by the commands (click.echo);
the log file is the durable record.
"""

from __future__ import annotations

import logging
import sys
from collections import deque
from pathlib import Path

LOGGER_NAME = 'ykpm'
LOG_FORMAT = '[%(asctime)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(log_file: Path, verbose: bool = False) -> logging.Logger:
    """
    Configure the package logger to append to `log_file`.

    Handlers installed by a previous call are replaced, so the function can
    be called once per command invocation (and once per test).

    Args:
        log_file: Path of the append-only activity log
        verbose: Also echo every record to stderr (default: warnings only)

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
    logger.addHandler(console_handler)

    logger.propagate = False
    return logger


def tail(log_file: Path, count: int) -> list[str]:
    """Return the last `count` lines of the log file (empty if missing)."""
    if not log_file.exists():
        return []
    with open(log_file, encoding='utf-8', errors='replace') as f:
        return [line.rstrip('\n') for line in deque(f, maxlen=count)]
