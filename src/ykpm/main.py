#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

import sys
from pathlib import Path

import click
from click.shell_completion import CompletionItem

from ykpm.auxiliaries import validate_management_key
from ykpm.cli_backup import cli_backup
from ykpm.cli_backups import cli_backups, cli_verify
from ykpm.cli_console import cli_console
from ykpm.cli_devices import cli_devices
from ykpm.cli_inspect import cli_inspect
from ykpm.cli_restore import cli_restore
from ykpm.config import Config
from ykpm.constants import (
    DEFAULT_BACKUP_DIR,
    DEFAULT_LOG_FILE,
    DEFAULT_SHARES_DIR,
    DEFAULT_TIMEOUT,
    DEFAULT_YKMAN,
)
from ykpm.device import HardwareDevice
from ykpm.log import setup_logging

# === Helper Functions =========================================================


def complete_serial(ctx, param, incomplete):
    """Shell completion for --serial option.

    Returns a list of serial numbers from connected YubiKeys.
    """
    try:
        serials = HardwareDevice(timeout=5).list_serials()
    except Exception:
        # No ykman, no devices, ...: nothing to complete
        return []

    incomplete = incomplete or ""
    return [
        CompletionItem(str(serial))
        for serial in serials
        if str(serial).startswith(incomplete)
    ]


def management_key_callback(ctx, param, value):
    if value is None:
        return None
    if value == '-':
        # Prompt for key (hidden input)
        value = click.prompt('Management key (48 hex chars)', hide_input=True, type=str)
    return validate_management_key(value)


# === Main CLI =================================================================


@click.group(
    help='''
        Manage, back up and restore the PIV application of YubiKeys.

        All device operations are delegated to ykman (YubiKey Manager). ykpm
        adds device selection, input validation, checksummed backup archives
        and an activity log.

        \b
        Backups export the PIV data objects 5FC101..5FC108 (key shares) into
        a .tar.gz archive with one JSON envelope per slot, a MANIFEST.txt and
        a SHA-256 checksum file:

        \b
          yubikey_<serial>_<YYYYmmdd_HHMMSS>.tar.gz
          yubikey_<serial>_<YYYYmmdd_HHMMSS>.tar.gz.sha256

        If multiple YubiKeys are connected, use --serial to select one,
        otherwise ykpm asks which one to use.

        Run `ykpm console` for the interactive menu.
    '''
)
@click.option(
    '-s', '--serial',
    type=int,
    required=False,
    shell_complete=complete_serial,
    help='YubiKey serial number (printed on device case)',
)
@click.option(
    '-k', '--key',
    type=str,
    default=None,
    callback=management_key_callback,
    help='Management key as 48-char hex string, or "-" to prompt. '
         'Needed for imports when the management key is not the default.',
)
@click.option(
    '--pin',
    type=str,
    default=None,
    help='YubiKey PIN (for non-interactive write operations)',
)
@click.option(
    '--backup-dir',
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_BACKUP_DIR,
    show_default=True,
    envvar='YKPM_BACKUP_DIR',
    help='Directory holding the backup archives.',
)
@click.option(
    '--shares-dir',
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_SHARES_DIR,
    show_default=True,
    envvar='YKPM_SHARES_DIR',
    help='Directory for generated test key shares.',
)
@click.option(
    '--log-file',
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_LOG_FILE,
    show_default=True,
    envvar='YKPM_LOG_FILE',
    help='Append-only activity log.',
)
@click.option(
    '--ykman',
    type=str,
    default=DEFAULT_YKMAN,
    show_default=True,
    envvar='YKPM_YKMAN',
    help='ykman executable.',
)
@click.option(
    '--timeout',
    type=click.FloatRange(min=0, min_open=True),
    default=DEFAULT_TIMEOUT,
    show_default=True,
    envvar='YKPM_TIMEOUT',
    help='Timeout in seconds for each ykman invocation.',
)
@click.option(
    '-v', '--verbose',
    is_flag=True,
    default=False,
    help='Echo every log line to stderr.',
)
@click.pass_context
def cli(
    ctx,
    serial: int | None,
    key: str | None,
    pin: str | None,
    backup_dir: Path,
    shares_dir: Path,
    log_file: Path,
    ykman: str,
    timeout: float,
    verbose: bool,
) -> None:
    """YubiKey PIV manager."""

    config = Config(
        backup_dir=backup_dir,
        shares_dir=shares_dir,
        log_file=log_file,
        ykman=ykman,
        timeout=timeout,
    )
    try:
        setup_logging(config.log_file, verbose=verbose)
    except OSError as e:
        raise click.ClickException(f'Cannot open log file {config.log_file}: {e}') from e

    ctx.ensure_object(dict)  # Ensure ctx.obj is a dict
    ctx.obj['config'] = config
    # A device backend may be injected (tests); default to real hardware
    if ctx.obj.get('tool') is None:
        ctx.obj['tool'] = HardwareDevice(ykman=config.ykman, timeout=config.timeout)
    ctx.obj['serial'] = serial
    ctx.obj['management_key'] = key
    ctx.obj['pin'] = pin


cli.add_command(cli_backup)
cli.add_command(cli_backups)
cli.add_command(cli_console)
cli.add_command(cli_devices)
cli.add_command(cli_inspect)
cli.add_command(cli_restore)
cli.add_command(cli_verify)


# === Standalone utilities =====================================================


def standalone_args(command: str, args: list[str]) -> list[str]:
    """
    Build the `ykpm` argument list for a standalone utility.

    `ykpm-backup --serial 123 --slot 5FC101` becomes
    `ykpm --serial 123 backup --slot 5FC101`: the group options (serial,
    key, directories, ...) are moved in front of the command name, together
    with their values, and everything else is passed to the command.
    """
    takes_value = {}
    for param in cli.params:
        if isinstance(param, click.Option):
            for opt in param.opts + param.secondary_opts:
                takes_value[opt] = not param.is_flag

    group_args: list[str] = []
    command_args: list[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == '--':
            command_args += args[i:]
            break
        name = arg.split('=', 1)[0] if arg.startswith('--') else arg
        if name in takes_value:
            group_args.append(arg)
            if takes_value[name] and name == arg and i + 1 < len(args):
                group_args.append(args[i + 1])
                i += 1
        elif arg[:2] in takes_value and not arg.startswith('--') and takes_value[arg[:2]]:
            # Short option with an attached value (-s12345678)
            group_args.append(arg)
        else:
            command_args.append(arg)
        i += 1
    return group_args + [command] + command_args


def backup_main() -> None:
    """Entry point of the standalone `ykpm-backup` utility."""
    cli.main(args=standalone_args('backup', sys.argv[1:]), prog_name='ykpm-backup')


def restore_main() -> None:
    """Entry point of the standalone `ykpm-restore` utility."""
    cli.main(args=standalone_args('restore', sys.argv[1:]), prog_name='ykpm-restore')


if __name__ == "__main__":
    cli()
