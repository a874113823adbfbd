# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT


class YkpmError(Exception):
    """Base class for fatal ykpm errors."""
    pass


class ToolNotFoundError(YkpmError):
    """Raised when the ykman executable cannot be found."""
    pass


class NoDeviceError(YkpmError):
    """Raised when no YubiKey is attached (or the requested one is missing)."""
    pass


class SelectionError(YkpmError, ValueError):
    """Raised on a non-numeric or out-of-range selection."""
    pass


class NoBackupsError(YkpmError):
    """Raised when the backup directory holds no archive."""
    pass


class ArchiveError(YkpmError):
    """Raised when an archive cannot be created, read or extracted."""
    pass


class ChecksumRejected(YkpmError):
    """Raised when the operator declines to restore a mismatching archive."""
    pass


class DeviceError(RuntimeError):
    """Raised when a single ykman invocation fails."""
    pass


class DeviceTimeout(DeviceError):
    """Raised when a ykman invocation exceeds its timeout."""
    pass
