# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

import click
import yaml

from ykpm.auxiliaries import check_tool, summarize_info
from ykpm.errors import DeviceError

# === DEVICES ==================================================================


@click.command(
    "devices",
    help="""
    List the YubiKeys connected to the system, with their device type and
    firmware version.
    """,
)
@click.pass_context
def cli_devices(ctx) -> None:
    check_tool(ctx)
    tool = ctx.obj['tool']
    try:
        serials = tool.list_serials()
    except DeviceError as e:
        raise click.ClickException(str(e)) from e

    devices = []
    for serial in serials:
        try:
            summary = summarize_info(tool.info(serial))
        except DeviceError as e:
            summary = [f'unavailable: {e}']
        devices.append({'serial': serial, 'info': summary})
    print(yaml.dump(devices, sort_keys=False, allow_unicode=True))
