# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

from __future__ import annotations

import datetime
import logging

import pytest

from ykpm.auxiliaries import DeviceSession
from ykpm.device import EmulatedDevice

SERIAL = 12345678
OTHER_SERIAL = 87654321

# Fixed backup time, so archive names are predictable
BACKUP_TIME = datetime.datetime(
    2025, 6, 1, 13, 22, 5, tzinfo=datetime.timezone.utc
)


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop the handlers a CLI invocation installed on the package logger."""
    yield
    logger = logging.getLogger('ykpm')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True


@pytest.fixture
def tool() -> EmulatedDevice:
    """Emulated ykman with a single YubiKey attached."""
    tool = EmulatedDevice()
    tool.add_device(SERIAL)
    return tool


@pytest.fixture
def session(tool) -> DeviceSession:
    return DeviceSession(tool=tool, serial=SERIAL)


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / 'backups'
