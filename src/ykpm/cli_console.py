# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

import click

from ykpm.auxiliaries import check_tool
from ykpm.console import Console


# === CONSOLE ==================================================================


@click.command(
    'console',
    help='''
        Run the interactive menu.

        \b
        The menu gives access to:
          - YubiKey listing and device info
          - PIV reset
          - PIN, PUK and management key changes
          - key share objects (import, export, test shares)
          - key generation, certificates and signing requests
          - backup and restore
          - the activity log
    ''',
)
@click.pass_context
def cli_console(ctx) -> None:
    ''''''

    check_tool(ctx)
    console = Console(
        ctx.obj['tool'],
        ctx.obj['config'],
        management_key=ctx.obj.get('management_key'),
        pin=ctx.obj.get('pin'),
    )
    try:
        console.run()
    except OSError as e:
        raise click.ClickException(str(e)) from e
