# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

"""
Tests for backup archives: naming, manifest, checksum sidecar and
extraction.
"""

from __future__ import annotations

import datetime
import io
import tarfile
from pathlib import Path

import pytest

from ykpm import archive
from ykpm.archive import ChecksumStatus
from ykpm.constants import DEFAULT_SLOTS
from ykpm.errors import ArchiveError

SERIAL = 12345678
WHEN = datetime.datetime(2025, 6, 1, 13, 22, 5, tzinfo=datetime.timezone.utc)
NAME = 'yubikey_12345678_20250601_132205.tar.gz'


def make_staging(tmp_path: Path, slots: dict[str, bytes]) -> Path:
    staging = tmp_path / 'staging'
    staging.mkdir()
    for slot, content in slots.items():
        (staging / archive.slot_file_name(slot)).write_bytes(content)
    return staging


def make_archive(tmp_path: Path, slots: dict[str, bytes] | None = None):
    if slots is None:
        slots = {'5FC101': b'{"slot": "5FC101"}\n'}
    staging = make_staging(tmp_path, slots)
    return archive.create_archive(staging, tmp_path / 'backups', SERIAL, WHEN, DEFAULT_SLOTS)


def test_names() -> None:
    assert archive.archive_name(SERIAL, WHEN) == NAME
    assert archive.slot_file_name('5FC101') == 'slot_5FC101.json'
    assert archive.slot_from_file_name('slot_5fc10d.json') == '5FC10D'
    assert archive.slot_from_file_name('MANIFEST.txt') is None
    assert archive.checksum_path(Path('/b') / NAME) == Path('/b') / (NAME + '.sha256')


def test_format_size() -> None:
    assert archive.format_size(512) == '512B'
    assert archive.format_size(2048) == '2.0K'
    assert archive.format_size(3 * 1024 * 1024) == '3.0M'


def test_create_archive_writes_sidecar(tmp_path) -> None:
    result = make_archive(tmp_path)

    assert result.path == tmp_path / 'backups' / NAME
    assert result.checksum_path.name == NAME + '.sha256'
    assert result.digest == archive.sha256_file(result.path)
    assert result.size == result.path.stat().st_size

    # sha256sum compatible: "<hex>  <basename>\n"
    assert result.checksum_path.read_text() == f'{result.digest}  {NAME}\n'
    assert archive.verify_checksum(result.path) is ChecksumStatus.OK

    with tarfile.open(result.path, 'r:gz') as tar:
        assert sorted(tar.getnames()) == ['MANIFEST.txt', 'slot_5FC101.json']


def test_manifest_slot_status(tmp_path) -> None:
    result = make_archive(tmp_path)

    with tarfile.open(result.path, 'r:gz') as tar:
        manifest = tar.extractfile('MANIFEST.txt').read().decode()

    assert f'YubiKey Serial: {SERIAL}' in manifest
    assert f'Backup File: {NAME}' in manifest
    assert '✓ 5FC101: Backed up' in manifest
    assert '○ 5FC102: Empty or not accessible' in manifest
    assert '○ 5FC108: Empty or not accessible' in manifest


def test_archive_name_collision_is_an_error(tmp_path) -> None:
    first = make_archive(tmp_path)
    digest = first.digest

    staging = tmp_path / 'staging'
    with pytest.raises(ArchiveError, match='already exists'):
        archive.create_archive(staging, tmp_path / 'backups', SERIAL, WHEN, DEFAULT_SLOTS)

    # The first archive is left untouched
    assert archive.sha256_file(first.path) == digest
    assert archive.verify_checksum(first.path) is ChecksumStatus.OK


def test_tampered_archive_is_a_mismatch(tmp_path) -> None:
    result = make_archive(tmp_path)
    with open(result.path, 'ab') as f:
        f.write(b'\0')
    assert archive.verify_checksum(result.path) is ChecksumStatus.MISMATCH


def test_tampered_sidecar_is_a_mismatch(tmp_path) -> None:
    result = make_archive(tmp_path)
    result.checksum_path.write_text(f'{"0" * 64}  {NAME}\n')
    assert archive.verify_checksum(result.path) is ChecksumStatus.MISMATCH


def test_sidecar_for_another_file_is_a_mismatch(tmp_path) -> None:
    result = make_archive(tmp_path)
    result.checksum_path.write_text(f'{result.digest}  other.tar.gz\n')
    assert archive.verify_checksum(result.path) is ChecksumStatus.MISMATCH


def test_malformed_sidecar_is_a_mismatch(tmp_path) -> None:
    result = make_archive(tmp_path)
    result.checksum_path.write_text('garbage\n')
    assert archive.verify_checksum(result.path) is ChecksumStatus.MISMATCH


def test_missing_sidecar(tmp_path) -> None:
    result = make_archive(tmp_path)
    result.checksum_path.unlink()
    assert archive.verify_checksum(result.path) is ChecksumStatus.MISSING


def test_list_archives_sorted_by_name(tmp_path) -> None:
    backup_dir = tmp_path / 'backups'
    backup_dir.mkdir()
    names = [
        'yubikey_2_20250102_000000.tar.gz',
        'yubikey_1_20250101_000000.tar.gz',
        'yubikey_1_20241231_235959.tar.gz',
    ]
    for name in names:
        (backup_dir / name).write_bytes(b'')
    (backup_dir / 'yubikey_1_20250101_000000.tar.gz.sha256').write_text('x')
    (backup_dir / 'notes.txt').write_text('x')

    listed = [p.name for p in archive.list_archives(backup_dir)]
    assert listed == sorted(names)


def test_list_archives_missing_directory(tmp_path) -> None:
    assert archive.list_archives(tmp_path / 'nowhere') == []


def add_member(tar: tarfile.TarFile, name: str, content: bytes = b'x',
               kind: bytes = tarfile.REGTYPE) -> None:
    info = tarfile.TarInfo(name)
    info.type = kind
    if kind == tarfile.REGTYPE:
        info.size = len(content)
        tar.addfile(info, io.BytesIO(content))
    else:
        info.linkname = '/etc/passwd'
        tar.addfile(info)


def test_extract_skips_unsafe_entries(tmp_path) -> None:
    path = tmp_path / 'crafted.tar.gz'
    with tarfile.open(path, 'w:gz') as tar:
        add_member(tar, 'slot_5FC101.json', b'{}')
        add_member(tar, '../escape.json')
        add_member(tar, 'nested/slot_5FC102.json')
        add_member(tar, 'link.json', kind=tarfile.SYMTYPE)

    destination = tmp_path / 'out'
    destination.mkdir()
    extracted = archive.extract_archive(path, destination)

    assert extracted == [destination / 'slot_5FC101.json']
    assert sorted(p.name for p in destination.iterdir()) == ['slot_5FC101.json']
    assert not (tmp_path / 'escape.json').exists()


def test_extract_corrupt_archive(tmp_path) -> None:
    path = tmp_path / 'corrupt.tar.gz'
    path.write_bytes(b'not a gzip stream')
    destination = tmp_path / 'out'
    destination.mkdir()
    with pytest.raises(ArchiveError):
        archive.extract_archive(path, destination)


def test_inspect_archive(tmp_path) -> None:
    from ykpm import envelope

    slots = {
        '5FC101': envelope.wrap_bytes(b'\x01\x02\x03', '5FC101', SERIAL, 'T'),
        '5FC102': envelope.wrap_bytes(b'{"share_id": 2}', '5FC102', SERIAL, 'T'),
        '5FC103': b'not json',
    }
    result = make_archive(tmp_path, slots)

    out = archive.inspect_archive(result.path)
    assert out['archive'] == NAME
    assert out['checksum'] == 'ok'
    assert 'YubiKey Backup Manifest' in out['manifest']

    by_slot = {s['slot']: s for s in out['slots']}
    assert by_slot['5FC101']['format'] == 'raw'
    assert by_slot['5FC101']['payload_size'] == 3
    assert by_slot['5FC101']['backup_timestamp'] == 'T'
    assert by_slot['5FC102']['format'] == 'json'
    assert by_slot['5FC102']['backup_timestamp'] == 'T'
    assert 'error' in by_slot['5FC103']


def test_inspect_archive_with_non_object_metadata(tmp_path) -> None:
    slots = {
        '5FC101': b'{"share": 1, "metadata": ["not", "an", "object"]}\n',
        '5FC102': b'{"share": 2, "metadata": "text"}\n',
    }
    result = make_archive(tmp_path, slots)

    out = archive.inspect_archive(result.path)

    by_slot = {s['slot']: s for s in out['slots']}
    for slot in ('5FC101', '5FC102'):
        assert by_slot[slot]['format'] == 'json'
        assert by_slot[slot]['backup_timestamp'] is None
        assert 'error' not in by_slot[slot]
