# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

"""
Orchestrator module for YubiKey backup and restore.

This module contains the business logic of the backup/restore pipeline,
kept apart from the CLI commands and the console so both (and the tests)
share one implementation.

Backup:  export each slot -> wrap in a JSON envelope -> archive + sidecar
Restore: select archive -> verify checksum -> select device -> extract
         -> import each slot -> cleanup
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from ykpm import envelope
from ykpm.archive import (
    ArchiveResult,
    ChecksumStatus,
    create_archive,
    extract_archive,
    list_archives,
    slot_file_name,
    slot_from_file_name,
    verify_checksum,
)
from ykpm.auxiliaries import DeviceSession, choose, temporary_directory
from ykpm.constants import (
    DEFAULT_SLOTS,
    OBJECT_SLOTS,
    RESTORE_PREFIX,
    STAGING_PREFIX,
)
from ykpm.errors import (
    ChecksumRejected,
    DeviceError,
    DeviceTimeout,
    NoBackupsError,
)

logger = logging.getLogger(__name__)


class SlotOutcome(Enum):
    BACKED_UP = 'backed up'
    EMPTY = 'empty'
    FAILED = 'failed'
    TIMEOUT = 'timeout'
    RESTORED = 'restored'


@dataclass
class SlotResult:
    slot: str
    outcome: SlotOutcome
    size: int = 0
    error: str | None = None


@dataclass
class BackupReport:
    serial: int
    slots: list[SlotResult]
    archive: ArchiveResult
    verification: ChecksumStatus

    @property
    def backed_up(self) -> int:
        return sum(1 for r in self.slots if r.outcome is SlotOutcome.BACKED_UP)


@dataclass
class RestoreReport:
    archive: Path
    serial: int
    checksum: ChecksumStatus
    slots: list[SlotResult] = field(default_factory=list)

    @property
    def restored(self) -> int:
        return sum(1 for r in self.slots if r.outcome is SlotOutcome.RESTORED)

    @property
    def failed(self) -> int:
        return len(self.slots) - self.restored


# === BACKUP ===================================================================


def export_slots(
    session: DeviceSession,
    slots: Sequence[str],
    staging_dir: Path,
    timestamp: str,
) -> list[SlotResult]:
    """
    Export each slot into `staging_dir/slot_<SLOT>.json`.

    Best effort: an empty, failed or timed-out export only leaves no file
    behind for that slot; nothing here aborts the backup.
    """
    results = []
    for slot in slots:
        output_file = staging_dir / slot_file_name(slot)
        logger.info(f'Checking slot {slot}...')

        try:
            data = session.tool.export_object(session.serial, slot)
        except DeviceTimeout as e:
            logger.warning(f'  ✗ Slot {slot} timed out: {e}')
            results.append(SlotResult(slot, SlotOutcome.TIMEOUT, error=str(e)))
            continue
        except DeviceError as e:
            logger.info(f'  ○ Slot {slot} not accessible or empty')
            results.append(SlotResult(slot, SlotOutcome.FAILED, error=str(e)))
            continue

        if not data:
            output_file.unlink(missing_ok=True)
            logger.info(f'  ○ Slot {slot} is empty')
            results.append(SlotResult(slot, SlotOutcome.EMPTY))
            continue

        output_file.write_bytes(
            envelope.wrap_bytes(data, slot, session.serial, timestamp)
        )
        logger.info(f'  ✓ Backed up slot {slot}')
        results.append(SlotResult(slot, SlotOutcome.BACKED_UP, size=len(data)))

    return results


def run_backup(
    session: DeviceSession,
    backup_dir: Path,
    slots: Sequence[str] = DEFAULT_SLOTS,
    now: datetime.datetime | None = None,
) -> BackupReport:
    """
    Back up the given slots of the session's YubiKey into one archive.

    Raises:
        ArchiveError: If the archive cannot be created (fatal)
    """
    if now is None:
        now = datetime.datetime.now().astimezone()

    logger.info(
        f'Starting backup of {len(slots)} slots from YubiKey {session.serial}'
    )

    with temporary_directory(STAGING_PREFIX) as staging_dir:
        results = export_slots(
            session, slots, staging_dir, envelope.backup_timestamp(now)
        )
        backed_up = sum(1 for r in results if r.outcome is SlotOutcome.BACKED_UP)
        logger.info(f'Successfully backed up {backed_up} of {len(slots)} slots')
        if backed_up == 0:
            logger.warning('No data found in any slot')

        logger.info(f'Creating backup archive in {backup_dir}')
        archive = create_archive(staging_dir, backup_dir, session.serial, now, slots)

    logger.info(
        f'Backup created: {archive.path} (Size: {archive.size}, SHA256: {archive.digest})'
    )

    # Re-read the archive just written against its sidecar
    verification = verify_checksum(archive.path)
    if verification is ChecksumStatus.OK:
        logger.info(f'✓ Backup verification successful: {archive.path.name}')
    else:
        logger.error(f'✗ Backup verification failed: {archive.path.name}')

    return BackupReport(
        serial=session.serial,
        slots=results,
        archive=archive,
        verification=verification,
    )


# === RESTORE ==================================================================


def import_slots(session: DeviceSession, files: Sequence[Path]) -> list[SlotResult]:
    """
    Re-import every staged `slot_<SLOT>.json` file.

    Each import is independent; a failure is logged and the next slot is
    processed.
    """
    results = []
    for path in files:
        slot = slot_from_file_name(path.name)
        if slot is None:
            continue
        if slot not in OBJECT_SLOTS:
            logger.warning(f'Skipping {path.name}: unknown slot {slot}')
            continue

        logger.info(f'  Restoring slot {slot}...')
        try:
            data = envelope.unwrap(envelope.loads(path.read_bytes()))
            session.tool.import_object(
                session.serial, slot, data,
                management_key=session.management_key,
                pin=session.pin,
            )
        except DeviceTimeout as e:
            logger.error(f'    ✗ Failed to restore slot {slot} (timeout): {e}')
            results.append(SlotResult(slot, SlotOutcome.TIMEOUT, error=str(e)))
            continue
        except (DeviceError, ValueError) as e:
            logger.error(f'    ✗ Failed to restore slot {slot}: {e}')
            results.append(SlotResult(slot, SlotOutcome.FAILED, error=str(e)))
            continue

        logger.info(f'    ✓ Restored slot {slot}')
        results.append(SlotResult(slot, SlotOutcome.RESTORED, size=len(data)))

    return results


def check_archive(archive: Path, confirm_mismatch: Callable[[Path], bool]) -> ChecksumStatus:
    """
    Verify an archive before restoring it.

    Raises:
        ChecksumRejected: On mismatch, unless `confirm_mismatch` returns True
    """
    status = verify_checksum(archive)
    if status is ChecksumStatus.OK:
        logger.info(f'✓ Checksum verified: {archive.name}')
    elif status is ChecksumStatus.MISSING:
        logger.warning(f'No checksum file for {archive.name}, skipping verification')
    else:
        logger.error(f'✗ Checksum verification failed: {archive.name}')
        if not confirm_mismatch(archive):
            raise ChecksumRejected(
                f'Checksum verification failed for {archive.name}; restore aborted'
            )
        logger.warning(f'Restoring {archive.name} despite checksum mismatch')
    return status


def run_restore(
    backup_dir: Path,
    pick_archive: Callable[[list[Path]], str],
    confirm_mismatch: Callable[[Path], bool],
    open_session: Callable[[], DeviceSession],
) -> RestoreReport:
    """
    Restore one archive onto one YubiKey.

    Args:
        backup_dir: Directory holding the archives
        pick_archive: Given the sorted archive list, returns the operator's
                      1-based answer
        confirm_mismatch: Asked whether to proceed when the checksum fails
        open_session: Selects the target YubiKey (after verification)

    Raises:
        NoBackupsError: If the backup directory holds no archive
        SelectionError: If the archive selection is invalid
        ChecksumRejected: If a mismatching archive is not confirmed
        NoDeviceError: If no target YubiKey can be selected
        ArchiveError: If extraction fails
    """
    archives = list_archives(backup_dir)
    if not archives:
        raise NoBackupsError(f'No backups found in {backup_dir}')

    archive = choose(archives, pick_archive(archives))
    logger.info(f'Selected backup: {archive.name}')

    checksum = check_archive(archive, confirm_mismatch)

    session = open_session()
    logger.info(f'Restoring {archive.name} to YubiKey {session.serial}')

    report = RestoreReport(archive=archive, serial=session.serial, checksum=checksum)
    with temporary_directory(RESTORE_PREFIX) as restore_dir:
        files = extract_archive(archive, restore_dir)
        report.slots = import_slots(session, files)

    logger.info(
        f'Restore complete: {report.restored} restored, {report.failed} failed'
    )
    return report
