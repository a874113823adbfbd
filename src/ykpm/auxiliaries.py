# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Sequence, TypeVar

import click

from ykpm.constants import (
    KNOWN_SLOTS,
    MANAGEMENT_KEY_HEX_LENGTH,
    PIN_MAX_LENGTH,
    PIN_MIN_LENGTH,
)
from ykpm.device import DeviceInterface
from ykpm.errors import (
    DeviceError,
    NoDeviceError,
    SelectionError,
    ToolNotFoundError,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


# === DEVICE SESSION ===========================================================

@dataclass
class DeviceSession:
    """The selected YubiKey and the credentials used to write to it."""
    tool: DeviceInterface
    serial: int
    management_key: str | None = None
    pin: str | None = None


# === VALIDATION ===============================================================

def validate_management_key(key: str) -> str:
    """Validate and normalize management key.

    Args:
        key: Hex string of management key

    Returns:
        Normalized hex string (lowercase, no spaces)

    Raises:
        click.BadParameter: If key is invalid
    """
    # Remove spaces and dashes for user convenience
    key = key.replace(' ', '').replace('-', '').lower()

    try:
        bytes.fromhex(key)
    except ValueError:
        raise click.BadParameter(
            'Management key must be a hex string (0-9, a-f)'
        )

    # 24 bytes = 48 hex chars
    if len(key) != MANAGEMENT_KEY_HEX_LENGTH:
        raise click.BadParameter(
            f'Management key must be {MANAGEMENT_KEY_HEX_LENGTH} hex characters '
            f'(24 bytes), got {len(key)}'
        )

    return key


def validate_pin(value: str, label: str = 'PIN') -> str:
    """Check PIN/PUK length (6-8 characters)."""
    if not PIN_MIN_LENGTH <= len(value) <= PIN_MAX_LENGTH:
        raise click.BadParameter(
            f'{label} must be {PIN_MIN_LENGTH}-{PIN_MAX_LENGTH} characters'
        )
    return value


def normalize_slot(value: str, allowed: Sequence[str] = KNOWN_SLOTS) -> str:
    """
    Normalize a slot identifier ('0x5fc101' -> '5FC101') and check it.

    Raises:
        click.BadParameter: If the slot is not in `allowed`
    """
    slot = value.strip().upper()
    if slot.startswith('0X'):
        slot = slot[2:]
    if slot not in allowed:
        raise click.BadParameter(
            f'Unknown slot {value!r}. Expected one of: {", ".join(allowed)}'
        )
    return slot


# === SELECTION ================================================================

def parse_selection(text: str, count: int) -> int:
    """
    Parse a 1-based menu selection.

    Returns:
        The 1-based index

    Raises:
        SelectionError: If the text is not a number between 1 and count
    """
    text = text.strip()
    if not text.isdigit():
        raise SelectionError(f'Invalid selection: {text!r}')
    index = int(text)
    if not 1 <= index <= count:
        raise SelectionError(f'Invalid selection: {index} (expected 1-{count})')
    return index


def choose(items: Sequence[T], text: str) -> T:
    """Return the item picked by a 1-based selection."""
    return items[parse_selection(text, len(items)) - 1]


def select_device(
    tool: DeviceInterface,
    serial: int | None = None,
    chooser: Callable[[list[int]], str] | None = None,
) -> int:
    """
    Pick the YubiKey to work with.

    Args:
        tool: Device interface used for enumeration
        serial: Serial requested by the operator (must be connected)
        chooser: Called with the serial list when several YubiKeys are
                 connected; returns the operator's 1-based answer

    Returns:
        The selected serial number

    Raises:
        NoDeviceError: If no YubiKey (or not the requested one) is connected
        SelectionError: If several are connected and the answer is invalid
    """
    try:
        serials = tool.list_serials()
    except DeviceError as e:
        raise NoDeviceError(f'Cannot enumerate YubiKeys: {e}') from e

    if serial is not None:
        if serial not in serials:
            available = ', '.join(str(s) for s in serials) or 'none'
            raise NoDeviceError(
                f'No YubiKey found with serial {serial}. Available: {available}'
            )
        return serial

    if len(serials) == 0:
        raise NoDeviceError('No YubiKey detected. Please insert a YubiKey.')

    if len(serials) == 1:
        logger.info(f'Found single YubiKey: {serials[0]}')
        return serials[0]

    if chooser is None:
        device_list = '\n'.join(f'  - Serial {s}' for s in serials)
        raise SelectionError(
            'Multiple YubiKeys are connected:\n'
            f'{device_list}\n\n'
            'Use --serial to select one.'
        )

    answer = chooser(serials)
    index = parse_selection(answer, len(serials))
    logger.info(f'Selected YubiKey {index}: {serials[index - 1]}')
    return serials[index - 1]


def prompt_device_choice(serials: list[int]) -> str:
    """Numbered device prompt used by the backup and restore commands."""
    click.secho('Multiple YubiKeys detected:', fg='yellow', err=True)
    for i, serial in enumerate(serials, start=1):
        click.echo(f'{i:6}\t{serial}', err=True)
    click.echo('', err=True)
    return click.prompt(f'Select YubiKey number (1-{len(serials)})',
                        default='', show_default=False, err=True)


# === DEVICE INFO ==============================================================

def summarize_info(info: str, limit: int = 2) -> list[str]:
    """Pick the 'Device ...' / '... Version ...' lines of `ykman info`."""
    picked = []
    for line in info.splitlines():
        if re.search(r'Device|Version', line, re.IGNORECASE):
            picked.append(line.strip())
            if len(picked) == limit:
                break
    return picked


# === TEMPORARY DIRECTORIES ====================================================

def _raise_on_termination(signum, frame) -> None:
    raise SystemExit(128 + signum)


@contextmanager
def temporary_directory(prefix: str) -> Iterator[Path]:
    """
    Create a per-process temporary directory and always remove it.

    The directory name includes the process id plus a random suffix, so
    concurrent runs never share one. SIGTERM is turned into SystemExit for
    the duration of the block so that termination also runs the cleanup
    (SIGINT already raises KeyboardInterrupt).
    """
    path = Path(tempfile.mkdtemp(prefix=f'{prefix}{os.getpid()}_'))
    previous = None
    in_main_thread = threading.current_thread() is threading.main_thread()
    if in_main_thread:
        previous = signal.signal(signal.SIGTERM, _raise_on_termination)
    try:
        yield path
    finally:
        try:
            shutil.rmtree(path)
            logger.info(f'Cleaned up temporary directory: {path}')
        except OSError as e:
            logger.warning(f'Could not remove temporary directory {path}: {e}')
        if in_main_thread and previous is not None:
            signal.signal(signal.SIGTERM, previous)


# === CLICK CONTEXT ============================================================

def check_tool(ctx) -> None:
    """
    Fail early when ykman is missing.

    Raises:
        click.ClickException: If the device backend is not available
    """
    try:
        ctx.obj['tool'].check_available()
    except ToolNotFoundError as e:
        logger.error(f'ERROR: {e}')
        raise click.ClickException(str(e)) from e


def open_session(
    ctx,
    serial: int | None = None,
    chooser: Callable[[list[int]], str] | None = prompt_device_choice,
) -> DeviceSession:
    """
    Select the YubiKey for a command and bundle it with the credentials.

    Args:
        ctx: Click context holding 'tool', 'serial', 'management_key', 'pin'
        serial: Overrides the --serial global option
        chooser: Prompt used when several YubiKeys are connected

    Raises:
        NoDeviceError, SelectionError: Left to the caller to report
    """
    tool = ctx.obj['tool']
    if serial is None:
        serial = ctx.obj.get('serial')
    selected = select_device(tool, serial=serial, chooser=chooser)
    return DeviceSession(
        tool=tool,
        serial=selected,
        management_key=ctx.obj.get('management_key'),
        pin=ctx.obj.get('pin'),
    )
