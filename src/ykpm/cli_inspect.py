# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

from pathlib import Path

import click
import yaml

from ykpm.archive import inspect_archive
from ykpm.errors import ArchiveError


# === INSPECT ==================================================================

@click.command(
    'inspect',
    help='''
        Display the content of a backup archive without restoring it.

        Shows the checksum status, each slot entry with its envelope format
        (raw or json), payload size and backup time, followed by the
        manifest.
    ''',
)
@click.argument('archive', type=str)
@click.pass_context
def cli_inspect(ctx, archive: str) -> None:
    """Dumps the contents of a backup archive."""

    config = ctx.obj['config']
    path = Path(archive)
    if not path.is_file():
        path = config.backup_dir / archive
    if not path.is_file():
        raise click.ClickException(f'Archive not found: {archive}')

    try:
        out = inspect_archive(path)
    except ArchiveError as e:
        raise click.ClickException(str(e)) from e

    manifest = out.pop('manifest')
    print(f"{yaml.dump(out, indent=2, sort_keys=False, allow_unicode=True)}")
    if manifest is not None:
        print('---\n')
        print(manifest)
