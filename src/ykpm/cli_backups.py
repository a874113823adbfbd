# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

import logging
from datetime import datetime
from pathlib import Path

import click

from ykpm.archive import ChecksumStatus, format_size, list_archives, verify_checksum

logger = logging.getLogger(__name__)

STATUS_MARKS = {
    ChecksumStatus.OK: '✓',
    ChecksumStatus.MISMATCH: '✗',
    ChecksumStatus.MISSING: '?',
}


# === BACKUPS ==================================================================


@click.command(
    'backups',
    help='''List the backup archives, numbered as in the restore prompt.

        \b
        Each entry shows the following fields:

          - Index used by `ykpm restore`
          - Size of the archive
          - Modification time (YYYY-MM-DD HH:MM)
          - Archive name''',
)
@click.pass_context
def cli_backups(ctx) -> None:
    ''''''

    config = ctx.obj['config']
    archives = list_archives(config.backup_dir)
    if not archives:
        click.echo('No backups found')
        return

    for i, archive in enumerate(archives, start=1):
        stat = archive.stat()
        size_str = format_size(stat.st_size).rjust(7)
        date = datetime.fromtimestamp(stat.st_mtime).strftime('%Y-%m-%d %H:%M').ljust(16)
        click.echo(f'{i:3} {size_str} {date} {archive.name}')


# === VERIFY ===================================================================


@click.command(
    'verify',
    help='''
        Verify backup archives against their SHA-256 checksum files.

        Without ARCHIVES, every archive of the backup directory is checked.
        Exits with an error if any archive does not match its checksum.
    ''',
)
@click.argument('archives', nargs=-1, type=str)
@click.pass_context
def cli_verify(ctx, archives: tuple[str, ...]) -> None:
    ''''''

    config = ctx.obj['config']

    if archives:
        paths = []
        for name in archives:
            path = Path(name)
            if not path.is_file():
                path = config.backup_dir / name
            if not path.is_file():
                raise click.ClickException(f'Archive not found: {name}')
            paths.append(path)
    else:
        paths = list_archives(config.backup_dir)
        if not paths:
            raise click.ClickException(f'No backups found in {config.backup_dir}')

    failures = 0
    for path in paths:
        status = verify_checksum(path)
        click.echo(f'{STATUS_MARKS[status]} {path.name}: {status.value}')
        if status is ChecksumStatus.MISMATCH:
            failures += 1
            logger.error(f'✗ Backup verification failed: {path.name}')
        else:
            logger.info(f'Verified {path.name}: {status.value}')

    if failures:
        raise click.ClickException(f'{failures} archive(s) failed verification')
