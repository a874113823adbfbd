# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

import logging

import click

from ykpm import orchestrator
from ykpm.archive import ChecksumStatus, format_size
from ykpm.auxiliaries import check_tool, normalize_slot, open_session
from ykpm.constants import DEFAULT_SLOTS, OBJECT_SLOTS
from ykpm.errors import YkpmError

logger = logging.getLogger(__name__)


def parse_slots(ctx, param, values):
    try:
        return tuple(normalize_slot(v, OBJECT_SLOTS) for v in values)
    except click.BadParameter as e:
        e.param = param
        raise


def echo_backup_report(report: orchestrator.BackupReport) -> None:
    """Print the outcome of a backup for the operator."""
    for result in report.slots:
        if result.outcome is orchestrator.SlotOutcome.BACKED_UP:
            click.echo(f'  ✓ Slot {result.slot} backed up ({result.size} bytes)')
        elif result.outcome is orchestrator.SlotOutcome.TIMEOUT:
            click.secho(f'  ✗ Slot {result.slot} timed out', fg='red')
        else:
            click.echo(f'  ○ Slot {result.slot} empty or not accessible')

    click.echo(f'Backed up {report.backed_up} of {len(report.slots)} slots')
    if report.backed_up == 0:
        click.secho('Warning: No data found in any slot', fg='yellow')

    archive = report.archive
    click.secho('✓ Backup completed successfully!', fg='green')
    click.echo(f'  Backup file: {archive.path}')
    click.echo(f'  Size: {format_size(archive.size)}')
    click.echo(f'  SHA256: {archive.digest}')
    click.echo(f'  Checksum file: {archive.checksum_path}')

    if report.verification is ChecksumStatus.OK:
        click.secho('✓ Backup verification successful', fg='green')
    else:
        click.secho('✗ Backup verification failed!', fg='red')


# === BACKUP ===================================================================


@click.command(
    'backup',
    help='''
        Back up the PIV data objects of a YubiKey.

        Each slot is exported with ykman; empty or unreadable slots are
        skipped. The exports are wrapped in JSON envelopes, archived with a
        manifest into the backup directory, and a SHA-256 checksum file is
        written next to the archive.

        By default the key-share objects 5FC101..5FC108 are backed up.
    ''',
)
@click.option(
    '--slot', 'slots',
    multiple=True,
    callback=parse_slots,
    help='Slot to back up (repeatable), e.g. --slot 5FC101.',
)
@click.option(
    '--all-slots',
    is_flag=True,
    default=False,
    help='Back up the retired key history objects (5FC10D..5FC120) too.',
)
@click.pass_context
def cli_backup(ctx, slots: tuple, all_slots: bool) -> None:
    ''''''

    config = ctx.obj['config']

    if slots and all_slots:
        raise click.ClickException('Cannot use both --slot and --all-slots')
    if all_slots:
        slots = OBJECT_SLOTS
    elif not slots:
        slots = DEFAULT_SLOTS

    check_tool(ctx)
    click.secho('=== YubiKey Backup Utility ===', fg='yellow')

    try:
        session = open_session(ctx)
        click.echo(f'Backing up YubiKey: {session.serial}')
        report = orchestrator.run_backup(session, config.backup_dir, slots)
    except YkpmError as e:
        logger.error(f'ERROR: {e}')
        raise click.ClickException(str(e)) from e

    echo_backup_report(report)
    if report.verification is not ChecksumStatus.OK:
        raise click.ClickException(f'Backup verification failed: {report.archive.path}')
    logger.info('Backup process completed successfully')
