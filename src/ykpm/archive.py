# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

"""
Backup archives and their checksum sidecars.

An archive is a gzip-compressed tar file named

    yubikey_<serial>_<YYYYmmdd_HHMMSS>.tar.gz

holding one `slot_<SLOT>.json` envelope per backed-up slot plus a
`MANIFEST.txt`. Next to it, `<archive>.sha256` holds a single line in the
format understood by `sha256sum -c`:

    <hex digest>  <archive basename>
"""

from __future__ import annotations

import datetime
import getpass
import hashlib
import logging
import os
import re
import socket
import tarfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable

from ykpm import envelope
from ykpm.constants import (
    ARCHIVE_PREFIX,
    ARCHIVE_SUFFIX,
    CHECKSUM_SUFFIX,
    CHUNK_SIZE,
    MANIFEST_NAME,
    SLOT_FILE_PREFIX,
    SLOT_FILE_SUFFIX,
    TIMESTAMP_FORMAT,
)
from ykpm.errors import ArchiveError

logger = logging.getLogger(__name__)

SLOT_FILE_RE = re.compile(
    rf'^{re.escape(SLOT_FILE_PREFIX)}([0-9A-Fa-f]+){re.escape(SLOT_FILE_SUFFIX)}$'
)


class ChecksumStatus(Enum):
    OK = 'ok'
    MISMATCH = 'mismatch'
    MISSING = 'missing'


@dataclass
class ArchiveResult:
    """Outcome of a successful archive creation."""
    path: Path
    checksum_path: Path
    digest: str
    size: int


# === NAMING ===================================================================

def slot_file_name(slot: str) -> str:
    return f'{SLOT_FILE_PREFIX}{slot}{SLOT_FILE_SUFFIX}'


def slot_from_file_name(name: str) -> str | None:
    """Return the slot id encoded in a staged file name, or None."""
    match = SLOT_FILE_RE.match(name)
    if match is None:
        return None
    return match.group(1).upper()


def archive_name(serial: int, when: datetime.datetime) -> str:
    return f'{ARCHIVE_PREFIX}{serial}_{when.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}'


def checksum_path(archive: Path) -> Path:
    return archive.with_name(archive.name + CHECKSUM_SUFFIX)


def format_size(size: int) -> str:
    """Human-readable size, like `du -h`."""
    value = float(size)
    for unit in ('B', 'K', 'M', 'G'):
        if value < 1024 or unit == 'G':
            return f'{value:.0f}{unit}' if unit == 'B' else f'{value:.1f}{unit}'
        value /= 1024
    return f'{size}B'


# === MANIFEST =================================================================

def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return 'unknown'


def build_manifest(
    staging_dir: Path,
    serial: int,
    archive: str,
    when: datetime.datetime,
    slots: Iterable[str],
) -> str:
    """
    Build the descriptive manifest stored in every archive.

    The slot status section reflects which slot files are staged at the
    time of the call; the manifest is never read back for control flow.
    """
    lines = [
        'YubiKey Backup Manifest',
        '=======================',
        f'Backup Date: {when.strftime("%a %b %d %H:%M:%S %Y")}',
        f'YubiKey Serial: {serial}',
        f'Backup File: {archive}',
        f'Created By: {_current_user()}',
        f'Hostname: {socket.gethostname()}',
        '',
        'Contents:',
    ]
    for entry in sorted(staging_dir.iterdir()):
        if entry.is_file():
            lines.append(f'  {entry.stat().st_size:>8}  {entry.name}')
    lines += ['', 'Slot Status:']
    for slot in slots:
        if (staging_dir / slot_file_name(slot)).is_file():
            lines.append(f'✓ {slot}: Backed up')
        else:
            lines.append(f'○ {slot}: Empty or not accessible')
    lines.append('')
    return '\n'.join(lines) + '\n'


# === CREATE ===================================================================

def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def create_archive(
    staging_dir: Path,
    backup_dir: Path,
    serial: int,
    when: datetime.datetime,
    slots: Iterable[str],
) -> ArchiveResult:
    """
    Write the manifest, archive the staging directory and write the sidecar.

    The archive is created exclusively: an existing file with the same name
    (two runs for the same serial in the same second) is an error, never
    overwritten. The sidecar is written only once the archive is complete;
    on failure the partial archive is removed and no sidecar exists.

    Raises:
        ArchiveError: If the archive or its sidecar cannot be written
    """
    name = archive_name(serial, when)
    path = backup_dir / name

    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ArchiveError(f"Cannot create backup directory {backup_dir}: {e}") from e

    try:
        manifest = build_manifest(staging_dir, serial, name, when, slots)
        (staging_dir / MANIFEST_NAME).write_text(manifest, encoding='utf-8')
    except OSError as e:
        raise ArchiveError(f"Failed to write manifest: {e}") from e

    try:
        with open(path, 'xb') as f:
            with tarfile.open(fileobj=f, mode='w:gz') as tar:
                for entry in sorted(staging_dir.iterdir()):
                    if entry.is_file():
                        tar.add(entry, arcname=entry.name, recursive=False)
    except FileExistsError as e:
        raise ArchiveError(f"Backup archive already exists: {path}") from e
    except (OSError, tarfile.TarError) as e:
        path.unlink(missing_ok=True)
        raise ArchiveError(f"Failed to create backup archive {path}: {e}") from e

    digest = sha256_file(path)
    sidecar = checksum_path(path)
    try:
        sidecar.write_text(f'{digest}  {name}\n', encoding='utf-8')
    except OSError as e:
        raise ArchiveError(f"Failed to write checksum file {sidecar}: {e}") from e

    return ArchiveResult(path=path, checksum_path=sidecar, digest=digest,
                         size=path.stat().st_size)


# === LIST & VERIFY ============================================================

def list_archives(backup_dir: Path) -> list[Path]:
    """Archives in the backup directory, sorted by file name."""
    if not backup_dir.is_dir():
        return []
    return sorted(
        (p for p in backup_dir.iterdir()
         if p.is_file() and p.name.endswith(ARCHIVE_SUFFIX)),
        key=lambda p: p.name,
    )


def verify_checksum(archive: Path) -> ChecksumStatus:
    """
    Check an archive against its sidecar, like `sha256sum -c`.

    A sidecar naming a different file, or malformed, counts as a mismatch.
    """
    sidecar = checksum_path(archive)
    if not sidecar.is_file():
        return ChecksumStatus.MISSING

    line = sidecar.read_text(encoding='utf-8', errors='replace').strip()
    parts = line.split(None, 1)
    if len(parts) != 2:
        logger.warning(f"Malformed checksum file: {sidecar}")
        return ChecksumStatus.MISMATCH

    expected, name = parts[0].lower(), parts[1].lstrip('*')
    if name != archive.name:
        logger.warning(f"Checksum file {sidecar.name} refers to {name}")
        return ChecksumStatus.MISMATCH

    if sha256_file(archive) != expected:
        return ChecksumStatus.MISMATCH
    return ChecksumStatus.OK


# === EXTRACT & INSPECT ========================================================

def _safe_member_name(member: tarfile.TarInfo) -> str | None:
    name = os.path.normpath(member.name)
    if name in ('.', '') or os.path.isabs(name):
        return None
    if name.startswith('..') or os.sep in name or (os.altsep and os.altsep in name):
        return None
    return name


def extract_archive(archive: Path, destination: Path) -> list[Path]:
    """
    Extract the flat, regular-file entries of an archive.

    Directories are ignored; links, devices, nested or absolute paths are
    skipped with a warning.

    Raises:
        ArchiveError: If the archive cannot be read
    """
    extracted = []
    try:
        with tarfile.open(archive, mode='r:gz') as tar:
            for member in tar.getmembers():
                if member.isdir():
                    continue
                name = _safe_member_name(member)
                if name is None or not member.isfile():
                    logger.warning(f"Skipping unsafe archive entry: {member.name}")
                    continue
                source = tar.extractfile(member)
                if source is None:
                    continue
                target = destination / name
                with source, open(target, 'wb') as f:
                    for chunk in iter(lambda: source.read(CHUNK_SIZE), b''):
                        f.write(chunk)
                extracted.append(target)
    except (OSError, EOFError, tarfile.TarError) as e:
        raise ArchiveError(f"Failed to extract {archive}: {e}") from e
    return sorted(extracted)


def inspect_archive(archive: Path) -> dict:
    """
    Describe an archive without extracting it to disk.

    Returns:
        Dictionary with the checksum status, the slot entries and their
        envelope metadata, and the manifest text.
    """
    slots = []
    manifest = None
    try:
        with tarfile.open(archive, mode='r:gz') as tar:
            for member in tar.getmembers():
                name = _safe_member_name(member)
                if name is None or not member.isfile():
                    continue
                source = tar.extractfile(member)
                if source is None:
                    continue
                content = source.read()
                if name == MANIFEST_NAME:
                    manifest = content.decode('utf-8', errors='replace')
                    continue
                slot = slot_from_file_name(name)
                if slot is None:
                    continue
                entry = {'slot': slot, 'file': name, 'size': member.size}
                try:
                    doc = envelope.loads(content)
                    entry['format'] = 'raw' if envelope.is_raw(doc) else 'json'
                    entry['payload_size'] = len(envelope.unwrap(doc))
                    metadata = doc.get('metadata')
                    if not isinstance(metadata, dict):
                        metadata = {}
                    entry['backup_timestamp'] = (
                        doc.get('backup_timestamp') or metadata.get('backup_timestamp')
                    )
                except ValueError as e:
                    entry['error'] = str(e)
                slots.append(entry)
    except (OSError, EOFError, tarfile.TarError) as e:
        raise ArchiveError(f"Failed to read {archive}: {e}") from e

    return {
        'archive': archive.name,
        'size': archive.stat().st_size,
        'checksum': verify_checksum(archive).value,
        'slots': sorted(slots, key=lambda s: s['slot']),
        'manifest': manifest,
    }
