# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

import logging
from pathlib import Path

import click

from ykpm import orchestrator
from ykpm.archive import ChecksumStatus
from ykpm.auxiliaries import DeviceSession, check_tool, open_session
from ykpm.errors import SelectionError, YkpmError

logger = logging.getLogger(__name__)


# === PROMPTS ==================================================================


def prompt_archive(archives: list[Path]) -> str:
    click.echo('Available backups:')
    for i, archive in enumerate(archives, start=1):
        click.echo(f'{i:6}\t{archive}')
    click.echo('')
    return click.prompt('Select backup number', default='', show_default=False)


def confirm_mismatch(archive: Path) -> bool:
    click.secho('✗ Checksum verification failed!', fg='red')
    return click.confirm('Continue anyway?', default=False)


def prompt_session(ctx) -> DeviceSession:
    """
    Ask for the target serial unless --serial was given.

    An empty answer detects the connected YubiKey (asking which one if
    several are connected).
    """
    serial = ctx.obj.get('serial')
    if serial is None:
        answer = click.prompt(
            'Enter YubiKey serial (or press Enter to detect)',
            default='', show_default=False,
        ).strip()
        if answer:
            if not answer.isdigit():
                raise SelectionError(f'Invalid serial number: {answer!r}')
            serial = int(answer)
    return open_session(ctx, serial=serial)


def echo_restore_report(report: orchestrator.RestoreReport) -> None:
    if report.checksum is ChecksumStatus.OK:
        click.secho('✓ Checksum verified', fg='green')
    elif report.checksum is ChecksumStatus.MISSING:
        click.echo('No checksum file, archive not verified')
    click.echo(f'Restoring to YubiKey: {report.serial}')
    if not report.slots:
        click.echo('No slot files in this backup.')
    for result in report.slots:
        if result.outcome is orchestrator.SlotOutcome.RESTORED:
            click.secho(f'  ✓ Restored slot {result.slot}', fg='green')
        else:
            click.secho(f'  ✗ Failed to restore slot {result.slot}: {result.error}', fg='red')
    click.echo(f'Restored {report.restored} slots, {report.failed} failed')
    click.secho('Restore complete!', fg='green')


# === RESTORE ==================================================================


@click.command(
    'restore',
    help='''
        Restore PIV data objects from a backup archive.

        Lists the archives of the backup directory and asks which one to
        restore. When a checksum file exists the archive is verified first;
        on mismatch the restore only proceeds after explicit confirmation.
        Each slot file of the archive is then imported with ykman; a failed
        slot does not stop the others.
    ''',
)
@click.option(
    '-a', '--archive',
    type=str,
    default=None,
    help='Archive file name in the backup directory (skips the selection prompt).',
)
@click.pass_context
def cli_restore(ctx, archive: str | None) -> None:
    ''''''

    config = ctx.obj['config']
    check_tool(ctx)

    def pick_archive(archives: list[Path]) -> str:
        if archive is None:
            return prompt_archive(archives)
        for i, path in enumerate(archives, start=1):
            if path.name == Path(archive).name:
                return str(i)
        raise SelectionError(f'No backup named {archive} in {config.backup_dir}')

    try:
        report = orchestrator.run_restore(
            config.backup_dir,
            pick_archive=pick_archive,
            confirm_mismatch=confirm_mismatch,
            open_session=lambda: prompt_session(ctx),
        )
    except YkpmError as e:
        logger.error(f'ERROR: {e}')
        raise click.ClickException(str(e)) from e

    echo_restore_report(report)
