# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

"""
Interactive menu console.

Wraps the device operations (listing, info, reset, credential changes,
key-share objects, certificates, backup and restore) behind numbered
menus. Every menu re-prompts on an invalid choice; every operation is
written to the activity log.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
import sys
from pathlib import Path

import click

from ykpm import orchestrator
from ykpm.archive import format_size, list_archives
from ykpm.auxiliaries import (
    DeviceSession,
    normalize_slot,
    prompt_device_choice,
    select_device,
    summarize_info,
    validate_management_key,
    validate_pin,
)
from ykpm.cli_backup import echo_backup_report
from ykpm.cli_restore import confirm_mismatch, echo_restore_report, prompt_archive
from ykpm.config import Config
from ykpm.constants import (
    CERTIFICATE_SLOT_NAMES,
    CERTIFICATE_SLOTS,
    DEFAULT_KEY_ALGORITHM,
    DEFAULT_MANAGEMENT_KEY,
    DEFAULT_PIN,
    DEFAULT_PUK,
    DEFAULT_SLOTS,
    KEY_ALGORITHMS,
    LOG_TAIL_LINES,
    OBJECT_SLOTS,
    PIN_MAX_LENGTH,
    PIN_MIN_LENGTH,
    SHARE_RANDOM_BYTES,
    SHARE_THRESHOLD,
)
from ykpm.device import Credential, DeviceInterface
from ykpm.envelope import backup_timestamp
from ykpm.errors import DeviceError, DeviceTimeout, NoDeviceError, SelectionError, YkpmError
from ykpm.log import tail
from ykpm.x509_subject import describe_certificate, load_certificate, to_rfc4514, verify_x509_subject

logger = logging.getLogger(__name__)


def _subject_proc(value: str) -> str:
    try:
        verify_x509_subject(value)
    except ValueError as e:
        raise click.BadParameter(str(e))
    return value.strip()


def share_file_name(index: int) -> str:
    return f'key_share_{index:02d}.json'


def build_test_share(index: int, total: int, serial: int, slot: str) -> dict:
    """A randomly filled key share document, for exercising the share slots."""
    return {
        'share_id': index,
        'yubikey_serial': str(serial),
        'slot': slot,
        'timestamp': backup_timestamp(),
        'data': base64.b64encode(secrets.token_bytes(SHARE_RANDOM_BYTES)).decode('ascii'),
        'metadata': {
            'purpose': 'test_share',
            'threshold': SHARE_THRESHOLD,
            'total_shares': total,
        },
    }


class Console:
    """Numbered-menu front end over a DeviceInterface."""

    def __init__(
        self,
        tool: DeviceInterface,
        config: Config,
        management_key: str | None = None,
        pin: str | None = None,
        interactive: bool | None = None,
    ):
        self.tool = tool
        self.config = config
        self.management_key = management_key
        self.pin = pin
        if interactive is None:
            interactive = sys.stdin.isatty() and sys.stdout.isatty()
        # Arrow-key selection and screen clearing need a terminal
        self.interactive = interactive

    # --- helpers --------------------------------------------------------------

    def header(self) -> None:
        if self.interactive:
            click.clear()
        click.secho('╔════════════════════════════════════════╗', fg='blue')
        click.secho('║         YubiKey PIV Manager            ║', fg='blue')
        click.secho('╚════════════════════════════════════════╝', fg='blue')
        click.echo('')

    def pause(self) -> None:
        click.prompt('Press Enter to continue', default='', show_default=False)

    def menu(self, title: str, entries: list[str]) -> str:
        click.secho(f'\n{title}:', fg='yellow')
        for i, entry in enumerate(entries, start=1):
            click.echo(f'{i}. {entry}')
        return click.prompt('Select option', default='', show_default=False).strip()

    def invalid(self) -> None:
        click.secho('Invalid option!', fg='red')

    def failure(self, what: str, error: Exception) -> None:
        click.secho(f'✗ {what} failed: {error}', fg='red')
        logger.error(f'{what} failed: {error}')

    def choose_device(self, serials: list[int]) -> str:
        if self.interactive:
            from ykpm.yubikey_selector import select_yubikey_interactively

            index = select_yubikey_interactively(serials)
            if index is None:
                raise SelectionError('Selection cancelled')
            return str(index)
        return prompt_device_choice(serials)

    def select_serial(self) -> int | None:
        """Pick the YubiKey to work on; None (after a message) if impossible."""
        try:
            serial = select_device(self.tool, chooser=self.choose_device)
        except (NoDeviceError, SelectionError) as e:
            click.secho(str(e), fg='red')
            return None
        click.secho(f'Selected YubiKey: {serial}', fg='green')
        return serial

    def session(self, serial: int) -> DeviceSession:
        return DeviceSession(self.tool, serial, self.management_key, self.pin)

    # --- main loop ------------------------------------------------------------

    def run(self) -> None:
        self.config.backup_dir.mkdir(parents=True, exist_ok=True)
        self.config.shares_dir.mkdir(parents=True, exist_ok=True)
        logger.info('=== YubiKey Manager started ===')

        actions = {
            '1': self.list_yubikeys,
            '2': self.show_info,
            '3': self.reset_piv,
            '4': self.change_access_codes,
            '5': self.manage_key_shares,
            '6': self.manage_certificates,
            '7': self.backup_restore,
            '8': self.view_log,
        }
        while True:
            self.header()
            choice = self.menu('Main Menu', [
                'List YubiKeys',
                'Show YubiKey info',
                'Reset YubiKey PIV',
                'Change PIN / PUK / management key',
                'Manage key shares',
                'Manage certificates',
                'Backup / restore',
                'View log',
                'Exit',
            ])
            if choice == '9':
                click.secho('Goodbye!', fg='green')
                logger.info('=== YubiKey Manager exited ===')
                return
            action = actions.get(choice)
            if action is None:
                self.invalid()
                continue
            action()

    # --- 1. list --------------------------------------------------------------

    def echo_devices(self) -> list[int]:
        try:
            serials = self.tool.list_serials()
        except DeviceError as e:
            self.failure('Listing YubiKeys', e)
            return []
        if not serials:
            click.secho('No YubiKeys found!', fg='red')
            return []

        click.secho('Connected YubiKeys:', fg='green')
        for i, serial in enumerate(serials, start=1):
            click.echo(f'{i}. Serial: {serial}')
            try:
                for line in summarize_info(self.tool.info(serial)):
                    click.echo(f'   {line}')
            except DeviceError as e:
                click.echo(f'   (info unavailable: {e})')
        return serials

    def list_yubikeys(self) -> None:
        serials = self.echo_devices()
        logger.info(f'Listed {len(serials)} YubiKey(s)')
        self.pause()

    # --- 2. info --------------------------------------------------------------

    def show_info(self) -> None:
        serial = self.select_serial()
        if serial is not None:
            try:
                click.secho(f'\n=== YubiKey {serial} ===', fg='blue')
                click.echo(self.tool.info(serial))
                click.secho('=== PIV ===', fg='blue')
                click.echo(self.tool.piv_info(serial))
                logger.info(f'Displayed info for YubiKey {serial}')
            except DeviceError as e:
                self.failure(f'Reading info of YubiKey {serial}', e)
        self.pause()

    # --- 3. reset -------------------------------------------------------------

    def reset_piv(self) -> None:
        click.secho('WARNING: This will delete all PIV keys and certificates!', fg='red')
        serial = self.select_serial()
        if serial is not None:
            if click.confirm(f'Reset PIV on YubiKey {serial}?', default=False):
                try:
                    self.tool.reset(serial)
                    click.secho('✓ PIV application reset', fg='green')
                    click.echo(f'Default PIN: {DEFAULT_PIN}, PUK: {DEFAULT_PUK}, '
                               'management key: default')
                    logger.info(f'Reset PIV on YubiKey {serial}')
                except DeviceError as e:
                    self.failure(f'Resetting YubiKey {serial}', e)
            else:
                click.echo('Reset cancelled')
                logger.info(f'Reset of YubiKey {serial} cancelled')
        self.pause()

    # --- 4. access codes ------------------------------------------------------

    def change_access_codes(self) -> None:
        serial = self.select_serial()
        if serial is None:
            self.pause()
            return

        while True:
            choice = self.menu(f'Access codes of YubiKey {serial}', [
                'Change PIN',
                'Change PUK',
                'Change management key',
                'Back',
            ])
            if choice == '1':
                self.change_code(serial, Credential.PIN, 'PIN')
            elif choice == '2':
                self.change_code(serial, Credential.PUK, 'PUK')
            elif choice == '3':
                self.change_management_key(serial)
            elif choice == '4':
                return
            else:
                self.invalid()

    def change_code(self, serial: int, kind: Credential, label: str) -> None:
        current = click.prompt(f'Current {label}', hide_input=True)
        new = click.prompt(
            f'New {label} ({PIN_MIN_LENGTH}-{PIN_MAX_LENGTH} characters)',
            hide_input=True, confirmation_prompt=True,
            value_proc=lambda v: validate_pin(v, label),
        )
        try:
            self.tool.change_credential(serial, kind, current, new)
        except DeviceError as e:
            self.failure(f'Changing {label} on YubiKey {serial}', e)
            return
        click.secho(f'✓ {label} changed', fg='green')
        logger.info(f'Changed {label} on YubiKey {serial}')

    def change_management_key(self, serial: int) -> None:
        current = click.prompt(
            'Current management key (Enter for default)',
            default=self.management_key or DEFAULT_MANAGEMENT_KEY,
            show_default=False, hide_input=True,
            value_proc=validate_management_key,
        )
        choice = self.menu('New management key', ['Generate random key', 'Enter key'])
        if choice == '1':
            new = secrets.token_hex(24)
        elif choice == '2':
            new = click.prompt(
                'New management key (48 hex chars)', hide_input=True,
                confirmation_prompt=True, value_proc=validate_management_key,
            )
        else:
            self.invalid()
            return

        try:
            self.tool.change_credential(serial, Credential.MANAGEMENT_KEY, current, new)
        except DeviceError as e:
            self.failure(f'Changing management key on YubiKey {serial}', e)
            return
        self.management_key = new
        click.secho('✓ Management key changed', fg='green')
        if choice == '1':
            click.secho('Record the new management key now, it is not shown again:',
                        fg='yellow')
            click.echo(f'  {new}')
        logger.info(f'Changed management key on YubiKey {serial}')

    # --- 5. key shares --------------------------------------------------------

    def prompt_object_slot(self) -> str:
        click.echo(f'Key share slots: {", ".join(DEFAULT_SLOTS)}')
        return click.prompt(
            'Slot', value_proc=lambda v: normalize_slot(v, OBJECT_SLOTS)
        )

    def manage_key_shares(self) -> None:
        serial = self.select_serial()
        if serial is None:
            self.pause()
            return

        while True:
            choice = self.menu(f'Key shares on YubiKey {serial}', [
                'Import key share from file',
                'Export key share to file',
                'List slots holding data',
                'Generate test shares',
                'Back',
            ])
            if choice == '1':
                self.import_share(serial)
            elif choice == '2':
                self.export_share(serial)
            elif choice == '3':
                self.list_shares(serial)
            elif choice == '4':
                self.generate_test_shares(serial)
            elif choice == '5':
                return
            else:
                self.invalid()

    def import_share(self, serial: int) -> None:
        slot = self.prompt_object_slot()
        path = click.prompt('Share file', type=click.Path(dir_okay=False, path_type=Path))
        if not path.is_file():
            click.secho(f'File not found: {path}', fg='red')
            return
        session = self.session(serial)
        try:
            self.tool.import_object(
                serial, slot, path.read_bytes(),
                management_key=session.management_key, pin=session.pin,
            )
        except DeviceError as e:
            self.failure(f'Importing {path} into slot {slot}', e)
            return
        click.secho(f'✓ Imported {path} into slot {slot}', fg='green')
        logger.info(f'Imported key share {path} into slot {slot} of YubiKey {serial}')

    def export_share(self, serial: int) -> None:
        slot = self.prompt_object_slot()
        path = click.prompt(
            'Output file',
            default=str(self.config.shares_dir / f'slot_{slot}.bin'),
            type=click.Path(dir_okay=False, path_type=Path),
        )
        try:
            data = self.tool.export_object(serial, slot)
        except DeviceError as e:
            self.failure(f'Exporting slot {slot}', e)
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        click.secho(f'✓ Exported slot {slot} to {path} ({len(data)} bytes)', fg='green')
        logger.info(f'Exported slot {slot} of YubiKey {serial} to {path}')

    def list_shares(self, serial: int) -> None:
        click.secho('Slot contents:', fg='green')
        for slot in DEFAULT_SLOTS:
            try:
                data = self.tool.export_object(serial, slot)
            except DeviceTimeout:
                click.secho(f'  {slot}: timed out', fg='red')
                continue
            except DeviceError:
                data = b''
            if data:
                click.echo(f'  {slot}: {format_size(len(data))}')
            else:
                click.echo(f'  {slot}: empty')
        logger.info(f'Listed key share slots of YubiKey {serial}')

    def generate_test_shares(self, serial: int) -> None:
        total = click.prompt(
            'Number of shares', type=click.IntRange(1, len(DEFAULT_SLOTS)),
            default=5,
        )
        self.config.shares_dir.mkdir(parents=True, exist_ok=True)
        for index in range(1, total + 1):
            share = build_test_share(index, total, serial, DEFAULT_SLOTS[index - 1])
            path = self.config.shares_dir / share_file_name(index)
            path.write_text(json.dumps(share, indent=2) + '\n', encoding='utf-8')
            click.echo(f'  ✓ {path}')
        click.secho(f'Generated {total} test shares in {self.config.shares_dir}',
                    fg='green')
        logger.info(f'Generated {total} test shares in {self.config.shares_dir}')

    # --- 6. certificates ------------------------------------------------------

    def prompt_certificate_slot(self) -> str:
        for slot in CERTIFICATE_SLOTS:
            click.echo(f'  {slot}: {CERTIFICATE_SLOT_NAMES[slot]}')
        return click.prompt(
            'Slot', value_proc=lambda v: normalize_slot(v, CERTIFICATE_SLOTS)
        )

    def manage_certificates(self) -> None:
        serial = self.select_serial()
        if serial is None:
            self.pause()
            return

        while True:
            choice = self.menu(f'Certificates on YubiKey {serial}', [
                'Generate key and self-signed certificate',
                'Generate key and certificate signing request',
                'Import certificate',
                'List certificates',
                'Back',
            ])
            try:
                if choice == '1':
                    self.self_signed_certificate(serial)
                elif choice == '2':
                    self.certificate_request(serial)
                elif choice == '3':
                    self.import_certificate(serial)
                elif choice == '4':
                    self.list_certificates(serial)
                elif choice == '5':
                    return
                else:
                    self.invalid()
            except DeviceError as e:
                self.failure('Certificate operation', e)

    def generate_key(self, serial: int, slot: str) -> bytes | None:
        algorithm = click.prompt(
            'Algorithm', type=click.Choice(KEY_ALGORITHMS), default=DEFAULT_KEY_ALGORITHM,
        )
        if not click.confirm(f'This replaces the key in slot {slot}. Continue?',
                             default=False):
            click.echo('Cancelled')
            return None
        session = self.session(serial)
        public_key = self.tool.generate_key(
            serial, slot, algorithm,
            management_key=session.management_key, pin=session.pin,
        )
        logger.info(f'Generated {algorithm} key in slot {slot} of YubiKey {serial}')
        return public_key

    def self_signed_certificate(self, serial: int) -> None:
        slot = self.prompt_certificate_slot()
        subject = click.prompt('Subject (e.g. /CN=John Doe/O=Company)',
                               value_proc=_subject_proc)
        public_key = self.generate_key(serial, slot)
        if public_key is None:
            return
        session = self.session(serial)
        self.tool.generate_certificate(
            serial, slot, public_key, to_rfc4514(subject),
            management_key=session.management_key, pin=session.pin,
        )
        click.secho(f'✓ Self-signed certificate stored in slot {slot}', fg='green')
        logger.info(f'Generated self-signed certificate {subject} in slot {slot} '
                    f'of YubiKey {serial}')

    def certificate_request(self, serial: int) -> None:
        slot = self.prompt_certificate_slot()
        subject = click.prompt('Subject (e.g. /CN=John Doe/O=Company)',
                               value_proc=_subject_proc)
        path = click.prompt(
            'Output file', default=f'slot_{slot}.csr',
            type=click.Path(dir_okay=False, path_type=Path),
        )
        public_key = self.generate_key(serial, slot)
        if public_key is None:
            return
        csr = self.tool.request_certificate(
            serial, slot, public_key, to_rfc4514(subject), pin=self.pin,
        )
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(csr)
        click.secho(f'✓ Certificate signing request written to {path}', fg='green')
        logger.info(f'Created CSR {subject} for slot {slot} of YubiKey {serial}: {path}')

    def import_certificate(self, serial: int) -> None:
        slot = self.prompt_certificate_slot()
        path = click.prompt('Certificate file',
                            type=click.Path(dir_okay=False, path_type=Path))
        if not path.is_file():
            click.secho(f'File not found: {path}', fg='red')
            return
        data = path.read_bytes()
        try:
            load_certificate(data)
        except ValueError as e:
            click.secho(f'Not a certificate: {e}', fg='red')
            return
        session = self.session(serial)
        self.tool.import_certificate(
            serial, slot, data,
            management_key=session.management_key, pin=session.pin,
        )
        click.secho(f'✓ Imported certificate into slot {slot}', fg='green')
        logger.info(f'Imported certificate {path} into slot {slot} of YubiKey {serial}')

    def list_certificates(self, serial: int) -> None:
        click.secho('Certificates:', fg='green')
        for slot in CERTIFICATE_SLOTS:
            label = f'  {slot} ({CERTIFICATE_SLOT_NAMES[slot]})'
            try:
                data = self.tool.export_certificate(serial, slot)
            except DeviceTimeout:
                click.secho(f'{label}: timed out', fg='red')
                continue
            except DeviceError:
                click.echo(f'{label}: empty')
                continue
            try:
                click.echo(f'{label}: {describe_certificate(data)}')
            except ValueError:
                click.echo(f'{label}: unreadable certificate')
        logger.info(f'Listed certificates of YubiKey {serial}')

    # --- 7. backup / restore --------------------------------------------------

    def backup_restore(self) -> None:
        choice = self.menu('Backup / restore', [
            'Create backup',
            'Restore backup',
            'List backups',
            'Back',
        ])
        if choice == '1':
            self.create_backup()
        elif choice == '2':
            self.restore_backup()
        elif choice == '3':
            self.list_backups()
        elif choice == '4':
            return
        else:
            self.invalid()
        self.pause()

    def create_backup(self) -> None:
        serial = self.select_serial()
        if serial is None:
            return
        try:
            report = orchestrator.run_backup(self.session(serial), self.config.backup_dir)
        except YkpmError as e:
            self.failure('Backup', e)
            return
        echo_backup_report(report)

    def restore_backup(self) -> None:
        def open_session() -> DeviceSession:
            serial = select_device(self.tool, chooser=self.choose_device)
            return self.session(serial)

        try:
            report = orchestrator.run_restore(
                self.config.backup_dir,
                pick_archive=prompt_archive,
                confirm_mismatch=confirm_mismatch,
                open_session=open_session,
            )
        except YkpmError as e:
            self.failure('Restore', e)
            return
        echo_restore_report(report)

    def list_backups(self) -> None:
        archives = list_archives(self.config.backup_dir)
        if not archives:
            click.echo('No backups found')
            return
        click.secho(f'Backups in {self.config.backup_dir}:', fg='green')
        for i, archive in enumerate(archives, start=1):
            click.echo(f'{i:3} {format_size(archive.stat().st_size):>7} {archive.name}')

    # --- 8. log ---------------------------------------------------------------

    def view_log(self) -> None:
        lines = tail(self.config.log_file, LOG_TAIL_LINES)
        if not lines:
            click.echo('Log is empty')
        for line in lines:
            click.echo(line)
        self.pause()
