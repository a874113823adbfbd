# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

"""
Backup and restore scenarios against the emulated ykman.
"""

from __future__ import annotations

import datetime
import json
import os
import tarfile

import pytest

from ykpm import orchestrator
from ykpm.archive import ChecksumStatus, list_archives
from ykpm.auxiliaries import DeviceSession
from ykpm.constants import DEFAULT_SLOTS
from ykpm.errors import ArchiveError, ChecksumRejected, NoBackupsError, SelectionError
from ykpm.orchestrator import SlotOutcome

SERIAL = 12345678
TARGET = 87654321
WHEN = datetime.datetime(2025, 6, 1, 13, 22, 5, tzinfo=datetime.timezone.utc)


def archive_members(path) -> list[str]:
    with tarfile.open(path, 'r:gz') as tar:
        return sorted(tar.getnames())


def restore(tool, backup_dir, serial=TARGET, answer='1', confirm=False):
    return orchestrator.run_restore(
        backup_dir,
        pick_archive=lambda archives: answer,
        confirm_mismatch=lambda archive: confirm,
        open_session=lambda: DeviceSession(tool, serial),
    )


def test_single_slot_backup_and_restore(tool, session, backup_dir) -> None:
    """Only 5FC101 holds data: one slot file, restored onto another key."""
    tool.device(SERIAL).objects['5FC101'] = b'\x00share-one\xff'

    report = orchestrator.run_backup(session, backup_dir, now=WHEN)

    assert report.backed_up == 1
    assert [r.slot for r in report.slots] == list(DEFAULT_SLOTS)
    assert report.slots[0].outcome is SlotOutcome.BACKED_UP
    assert report.slots[0].size == 11
    assert all(r.outcome is SlotOutcome.FAILED for r in report.slots[1:])
    assert report.verification is ChecksumStatus.OK
    assert report.archive.path.name == 'yubikey_12345678_20250601_132205.tar.gz'
    assert archive_members(report.archive.path) == ['MANIFEST.txt', 'slot_5FC101.json']

    with tarfile.open(report.archive.path, 'r:gz') as tar:
        manifest = tar.extractfile('MANIFEST.txt').read().decode()
    assert '✓ 5FC101: Backed up' in manifest
    assert '○ 5FC102: Empty or not accessible' in manifest

    tool.add_device(TARGET)
    restored = restore(tool, backup_dir)

    assert restored.serial == TARGET
    assert restored.checksum is ChecksumStatus.OK
    assert restored.restored == 1
    assert restored.failed == 0
    assert tool.device(TARGET).objects == {'5FC101': b'\x00share-one\xff'}


def test_empty_export_leaves_no_file(tool, session, backup_dir) -> None:
    tool.device(SERIAL).objects['5FC101'] = b''
    tool.device(SERIAL).objects['5FC102'] = b'data'

    report = orchestrator.run_backup(session, backup_dir, now=WHEN)

    outcomes = {r.slot: r.outcome for r in report.slots}
    assert outcomes['5FC101'] is SlotOutcome.EMPTY
    assert outcomes['5FC102'] is SlotOutcome.BACKED_UP
    assert archive_members(report.archive.path) == ['MANIFEST.txt', 'slot_5FC102.json']


def test_zero_slots_backup_restores_nothing(tool, session, backup_dir) -> None:
    report = orchestrator.run_backup(session, backup_dir, now=WHEN)

    assert report.backed_up == 0
    assert report.verification is ChecksumStatus.OK
    assert archive_members(report.archive.path) == ['MANIFEST.txt']

    tool.add_device(TARGET)
    restored = restore(tool, backup_dir)
    assert restored.slots == []
    assert tool.device(TARGET).import_log == []


def test_failed_and_timed_out_slots(tool, session, backup_dir) -> None:
    device = tool.device(SERIAL)
    device.objects.update({'5FC101': b'a', '5FC102': b'b', '5FC103': b'c'})
    device.faults.update({'5FC102': 'timeout', '5FC103': 'fail'})

    report = orchestrator.run_backup(session, backup_dir, now=WHEN)

    outcomes = {r.slot: r.outcome for r in report.slots}
    assert outcomes['5FC101'] is SlotOutcome.BACKED_UP
    assert outcomes['5FC102'] is SlotOutcome.TIMEOUT
    assert outcomes['5FC103'] is SlotOutcome.FAILED
    assert archive_members(report.archive.path) == ['MANIFEST.txt', 'slot_5FC101.json']


def test_structured_share_is_restored_with_metadata(tool, session, backup_dir) -> None:
    share = {'share_id': 1, 'data': 'AAAA', 'metadata': {'purpose': 'test_share'}}
    tool.device(SERIAL).objects['5FC101'] = json.dumps(share).encode()

    orchestrator.run_backup(session, backup_dir, now=WHEN)
    tool.add_device(TARGET)
    restore(tool, backup_dir)

    restored = json.loads(tool.device(TARGET).objects['5FC101'])
    assert restored['share_id'] == 1
    assert restored['data'] == 'AAAA'
    assert restored['metadata']['purpose'] == 'test_share'
    assert restored['metadata']['slot'] == '5FC101'
    assert restored['metadata']['serial'] == str(SERIAL)


def test_same_second_backup_is_rejected(tool, session, backup_dir) -> None:
    orchestrator.run_backup(session, backup_dir, now=WHEN)
    with pytest.raises(ArchiveError):
        orchestrator.run_backup(session, backup_dir, now=WHEN)
    assert len(list_archives(backup_dir)) == 1


def test_restore_continues_after_a_failed_slot(tool, session, backup_dir) -> None:
    tool.device(SERIAL).objects.update({'5FC101': b'a', '5FC102': b'b', '5FC103': b'c'})
    orchestrator.run_backup(session, backup_dir, now=WHEN)

    target = tool.add_device(TARGET)
    target.faults['5FC102'] = 'fail'
    target.faults['5FC103'] = 'timeout'
    report = restore(tool, backup_dir)

    outcomes = {r.slot: r.outcome for r in report.slots}
    assert outcomes == {
        '5FC101': SlotOutcome.RESTORED,
        '5FC102': SlotOutcome.FAILED,
        '5FC103': SlotOutcome.TIMEOUT,
    }
    assert report.restored == 1
    assert report.failed == 2
    assert target.objects == {'5FC101': b'a'}


def test_restore_with_wrong_management_key(tool, session, backup_dir) -> None:
    tool.device(SERIAL).objects['5FC101'] = b'a'
    orchestrator.run_backup(session, backup_dir, now=WHEN)
    target = tool.add_device(TARGET)
    target.management_key = 'ff' * 24

    report = restore(tool, backup_dir)
    assert report.restored == 0
    assert report.slots[0].outcome is SlotOutcome.FAILED

    report = orchestrator.run_restore(
        backup_dir,
        pick_archive=lambda archives: '1',
        confirm_mismatch=lambda archive: False,
        open_session=lambda: DeviceSession(tool, TARGET, management_key='ff' * 24),
    )
    assert report.restored == 1


def test_tampered_checksum_needs_confirmation(tool, session, backup_dir) -> None:
    tool.device(SERIAL).objects['5FC101'] = b'a'
    report = orchestrator.run_backup(session, backup_dir, now=WHEN)
    report.archive.checksum_path.write_text(
        f'{"0" * 64}  {report.archive.path.name}\n'
    )
    target = tool.add_device(TARGET)

    with pytest.raises(ChecksumRejected):
        restore(tool, backup_dir, confirm=False)
    assert target.import_log == []

    restored = restore(tool, backup_dir, confirm=True)
    assert restored.checksum is ChecksumStatus.MISMATCH
    assert restored.restored == 1


def test_missing_checksum_restores(tool, session, backup_dir) -> None:
    tool.device(SERIAL).objects['5FC101'] = b'a'
    report = orchestrator.run_backup(session, backup_dir, now=WHEN)
    report.archive.checksum_path.unlink()
    tool.add_device(TARGET)

    restored = restore(tool, backup_dir)
    assert restored.checksum is ChecksumStatus.MISSING
    assert restored.restored == 1


def test_restore_without_backups(tool, backup_dir) -> None:
    with pytest.raises(NoBackupsError):
        restore(tool, backup_dir)


@pytest.mark.parametrize('answer', ['', 'abc', '0', '2'])
def test_restore_invalid_selection(tool, session, backup_dir, answer) -> None:
    orchestrator.run_backup(session, backup_dir, now=WHEN)
    tool.add_device(TARGET)
    with pytest.raises(SelectionError):
        restore(tool, backup_dir, answer=answer)
    assert tool.device(TARGET).import_log == []


def test_slot_holding_an_envelope_restores_as_a_document(tool, session, backup_dir) -> None:
    """JSON that carries the raw-envelope marker is not base64-decoded."""
    stored_envelope = {
        'slot': '5FC101',
        'serial': '1',
        'data': 'aGVsbG8=',
        'data_encoding': 'base64',
        'metadata': {'original_format': 'raw'},
    }
    device = tool.device(SERIAL)
    device.objects['5FC101'] = json.dumps(stored_envelope).encode()
    device.objects['5FC102'] = json.dumps(
        {'metadata': {'original_format': 'raw'}, 'share': 1}
    ).encode()

    orchestrator.run_backup(session, backup_dir, now=WHEN)
    tool.add_device(TARGET)
    report = restore(tool, backup_dir)

    assert report.restored == 2
    assert report.failed == 0

    first = json.loads(tool.device(TARGET).objects['5FC101'])
    assert first['data'] == 'aGVsbG8='
    assert first['data_encoding'] == 'base64'
    assert first['metadata']['original_format'] == 'raw'

    second = json.loads(tool.device(TARGET).objects['5FC102'])
    assert second['share'] == 1
    assert second['metadata']['original_format'] == 'raw'


def test_backup_verifies_the_archive_it_wrote(tool, session, backup_dir) -> None:
    """A newer, corrupt archive of the same serial does not fail the backup."""
    backup_dir.mkdir()
    stale = backup_dir / f'yubikey_{SERIAL}_20990101_000000.tar.gz'
    stale.write_bytes(b'corrupt')
    stale.with_name(stale.name + '.sha256').write_text(f'{"0" * 64}  {stale.name}\n')
    future = 4_102_444_800  # 2100-01-01
    os.utime(stale, (future, future))

    tool.device(SERIAL).objects['5FC101'] = b'a'
    report = orchestrator.run_backup(session, backup_dir, now=WHEN)

    assert report.verification is ChecksumStatus.OK
    assert report.archive.path != stale
