# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ykpm.constants import (
    DEFAULT_BACKUP_DIR,
    DEFAULT_LOG_FILE,
    DEFAULT_SHARES_DIR,
    DEFAULT_TIMEOUT,
    DEFAULT_YKMAN,
)


@dataclass
class Config:
    """Paths and tool settings shared by every command."""
    backup_dir: Path = Path(DEFAULT_BACKUP_DIR)
    shares_dir: Path = Path(DEFAULT_SHARES_DIR)
    log_file: Path = Path(DEFAULT_LOG_FILE)
    ykman: str = DEFAULT_YKMAN
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self) -> None:
        self.backup_dir = Path(self.backup_dir)
        self.shares_dir = Path(self.shares_dir)
        self.log_file = Path(self.log_file)
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
