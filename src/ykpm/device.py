# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

from __future__ import annotations

import datetime
import shutil
import subprocess
from abc import ABC, abstractmethod
from enum import Enum

from ykpm.constants import (
    DEFAULT_KEY_ALGORITHM,
    DEFAULT_MANAGEMENT_KEY,
    DEFAULT_PIN,
    DEFAULT_PUK,
    DEFAULT_TIMEOUT,
    DEFAULT_YKMAN,
)
from ykpm.errors import DeviceError, DeviceTimeout, ToolNotFoundError


class Credential(Enum):
    """PIV credentials that can be changed through `ykman piv access`."""
    PIN = 'pin'
    PUK = 'puk'
    MANAGEMENT_KEY = 'management-key'


class DeviceInterface(ABC):
    """
    Abstract interface for the YubiKey operations delegated to ykman.

    Concrete implementations:
    - HardwareDevice: Real YubiKeys through the ykman command-line tool
    - EmulatedDevice: In-memory emulation for testing

    Slots are upper-case hex strings (e.g. '5FC101', '9A'). Every method
    except list_serials() addresses one device by serial number.
    """

    def check_available(self) -> str:
        """
        Make sure the backend can be used; return a description of it.

        Raises:
            ToolNotFoundError: If the backend is missing.
        """
        return type(self).__name__

    @abstractmethod
    def list_serials(self) -> list[int]:
        """
        Return the serial numbers of the connected YubiKeys.

        Raises:
            DeviceError: If enumeration fails.
        """
        pass

    @abstractmethod
    def info(self, serial: int) -> str:
        """Return the general device information text."""
        pass

    @abstractmethod
    def piv_info(self, serial: int) -> str:
        """Return the PIV application information text."""
        pass

    @abstractmethod
    def export_object(self, serial: int, slot: str) -> bytes:
        """
        Read the raw content of a PIV data object.

        Returns:
            The object bytes (possibly empty).

        Raises:
            DeviceError: If the export fails (missing object, I/O error).
            DeviceTimeout: If the tool does not answer in time.
        """
        pass

    @abstractmethod
    def import_object(
        self,
        serial: int,
        slot: str,
        data: bytes,
        management_key: str | None = None,
        pin: str | None = None,
    ) -> None:
        """
        Write raw bytes into a PIV data object.

        Raises:
            DeviceError: If the import fails.
            DeviceTimeout: If the tool does not answer in time.
        """
        pass

    @abstractmethod
    def reset(self, serial: int) -> None:
        """Reset the PIV application (deletes all keys and certificates)."""
        pass

    @abstractmethod
    def change_credential(
        self,
        serial: int,
        kind: Credential,
        current: str,
        new: str,
    ) -> None:
        """Change the PIN, the PUK or the management key."""
        pass

    @abstractmethod
    def generate_key(
        self,
        serial: int,
        slot: str,
        algorithm: str = DEFAULT_KEY_ALGORITHM,
        management_key: str | None = None,
        pin: str | None = None,
    ) -> bytes:
        """Generate a key pair in a key slot and return the PEM public key."""
        pass

    @abstractmethod
    def generate_certificate(
        self,
        serial: int,
        slot: str,
        public_key: bytes,
        subject: str,
        valid_days: int = 365,
        management_key: str | None = None,
        pin: str | None = None,
    ) -> None:
        """Create and store a self-signed certificate for a key slot."""
        pass

    @abstractmethod
    def request_certificate(
        self,
        serial: int,
        slot: str,
        public_key: bytes,
        subject: str,
        pin: str | None = None,
    ) -> bytes:
        """Create a PEM certificate signing request for a key slot."""
        pass

    @abstractmethod
    def import_certificate(
        self,
        serial: int,
        slot: str,
        data: bytes,
        management_key: str | None = None,
        pin: str | None = None,
    ) -> None:
        """Store a certificate (PEM or DER) in a key slot."""
        pass

    @abstractmethod
    def export_certificate(self, serial: int, slot: str) -> bytes:
        """
        Return the PEM certificate stored in a key slot.

        Raises:
            DeviceError: If the slot holds no certificate.
        """
        pass


class HardwareDevice(DeviceInterface):
    """
    Hardware implementation running the ykman command-line tool.

    Every invocation is a blocking subprocess bounded by `timeout` seconds.
    Data is streamed through stdin/stdout ('-' file arguments), so no
    temporary files are needed for single-object transfers.
    """

    def __init__(self, ykman: str = DEFAULT_YKMAN, timeout: float = DEFAULT_TIMEOUT):
        self.ykman = ykman
        self.timeout = timeout

    def check_available(self) -> str:
        """Return the resolved path of the ykman executable."""
        path = shutil.which(self.ykman)
        if path is None:
            raise ToolNotFoundError(
                f"{self.ykman} (YubiKey Manager) is not installed. "
                "Please install it from: https://developers.yubico.com/yubikey-manager/"
            )
        return path

    def _run(
        self,
        args: list[str],
        serial: int | None = None,
        input: bytes | None = None,
    ) -> bytes:
        cmd = [self.ykman]
        if serial is not None:
            cmd += ['--device', str(serial)]
        cmd += args

        try:
            out = subprocess.run(
                cmd,
                input=input,
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise ToolNotFoundError(f"{self.ykman} not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise DeviceTimeout(
                f"ykman {' '.join(args[:3])} timed out after {self.timeout:g}s"
            ) from e
        except subprocess.CalledProcessError as e:
            error_msg = e.stderr.decode(errors='replace').strip()
            raise DeviceError(
                f"ykman {' '.join(args[:3])} failed: {error_msg or f'exit status {e.returncode}'}"
            ) from e
        return out.stdout

    @staticmethod
    def _auth_args(management_key: str | None, pin: str | None) -> list[str]:
        args = []
        if management_key is not None:
            args += ['--management-key', management_key]
        if pin is not None:
            args += ['--pin', pin]
        return args

    def list_serials(self) -> list[int]:
        out = self._run(['list', '--serials'])
        serials = []
        for line in out.decode().splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                serials.append(int(line))
            except ValueError as e:
                raise DeviceError(f'Unexpected ykman list output: {line!r}') from e
        return serials

    def info(self, serial: int) -> str:
        return self._run(['info'], serial=serial).decode(errors='replace')

    def piv_info(self, serial: int) -> str:
        return self._run(['piv', 'info'], serial=serial).decode(errors='replace')

    def export_object(self, serial: int, slot: str) -> bytes:
        return self._run(['piv', 'objects', 'export', slot, '-'], serial=serial)

    def import_object(
        self,
        serial: int,
        slot: str,
        data: bytes,
        management_key: str | None = None,
        pin: str | None = None,
    ) -> None:
        args = ['piv', 'objects', 'import']
        args += self._auth_args(management_key, pin)
        args += [slot, '-']
        self._run(args, serial=serial, input=data)

    def reset(self, serial: int) -> None:
        self._run(['piv', 'reset', '--force'], serial=serial)

    def change_credential(
        self,
        serial: int,
        kind: Credential,
        current: str,
        new: str,
    ) -> None:
        if kind is Credential.PIN:
            args = ['piv', 'access', 'change-pin', '--pin', current, '--new-pin', new]
        elif kind is Credential.PUK:
            args = ['piv', 'access', 'change-puk', '--puk', current, '--new-puk', new]
        else:
            args = [
                'piv', 'access', 'change-management-key',
                '--management-key', current,
                '--new-management-key', new,
                '--force',
            ]
        self._run(args, serial=serial)

    def generate_key(
        self,
        serial: int,
        slot: str,
        algorithm: str = DEFAULT_KEY_ALGORITHM,
        management_key: str | None = None,
        pin: str | None = None,
    ) -> bytes:
        args = ['piv', 'keys', 'generate', '--algorithm', algorithm]
        args += self._auth_args(management_key, pin)
        args += [slot, '-']
        return self._run(args, serial=serial)

    def generate_certificate(
        self,
        serial: int,
        slot: str,
        public_key: bytes,
        subject: str,
        valid_days: int = 365,
        management_key: str | None = None,
        pin: str | None = None,
    ) -> None:
        args = [
            'piv', 'certificates', 'generate',
            '--subject', subject,
            '--valid-days', str(valid_days),
        ]
        args += self._auth_args(management_key, pin)
        args += [slot, '-']
        self._run(args, serial=serial, input=public_key)

    def request_certificate(
        self,
        serial: int,
        slot: str,
        public_key: bytes,
        subject: str,
        pin: str | None = None,
    ) -> bytes:
        args = ['piv', 'certificates', 'request', '--subject', subject]
        if pin is not None:
            args += ['--pin', pin]
        args += [slot, '-', '-']
        return self._run(args, serial=serial, input=public_key)

    def import_certificate(
        self,
        serial: int,
        slot: str,
        data: bytes,
        management_key: str | None = None,
        pin: str | None = None,
    ) -> None:
        args = ['piv', 'certificates', 'import']
        args += self._auth_args(management_key, pin)
        args += [slot, '-']
        self._run(args, serial=serial, input=data)

    def export_certificate(self, serial: int, slot: str) -> bytes:
        return self._run(['piv', 'certificates', 'export', slot, '-'], serial=serial)


class EmulatedDevice(DeviceInterface):
    """
    In-memory emulation of ykman operations for testing.

    Does not require physical YubiKey hardware. Key generation and
    certificates use real `cryptography` objects so that certificate
    listings can be parsed like hardware output.
    """

    class EmulatedKey:
        """Represents a single emulated YubiKey."""

        def __init__(self, serial: int, version: str):
            self.serial = serial
            self.version = version
            # PIV data objects: slot -> bytes
            self.objects: dict[str, bytes] = {}
            # Key slots: slot -> private key / PEM certificate
            self.keys: dict = {}
            self.certificates: dict[str, bytes] = {}
            self.pin = DEFAULT_PIN
            self.puk = DEFAULT_PUK
            self.management_key = DEFAULT_MANAGEMENT_KEY
            # Fault injection: slot -> 'fail' | 'timeout'
            self.faults: dict[str, str] = {}
            self.import_log: list[str] = []

    def __init__(self):
        # Map serial -> EmulatedKey
        self._devices: dict[int, EmulatedDevice.EmulatedKey] = {}

    def add_device(self, serial: int, version: str = '5.7.1') -> EmulatedKey:
        """Add an emulated YubiKey and return it."""
        device = EmulatedDevice.EmulatedKey(serial, version)
        self._devices[serial] = device
        return device

    def device(self, serial: int) -> EmulatedKey:
        if serial not in self._devices:
            raise DeviceError(f"Failed connecting to a YubiKey with serial: {serial}")
        return self._devices[serial]

    def _check_fault(self, device: EmulatedKey, slot: str) -> None:
        fault = device.faults.get(slot)
        if fault == 'timeout':
            raise DeviceTimeout(f"Emulated timeout on slot {slot}")
        if fault == 'fail':
            raise DeviceError(f"Emulated failure on slot {slot}")

    def _authorize(self, device: EmulatedKey, management_key: str | None) -> None:
        key = management_key if management_key is not None else DEFAULT_MANAGEMENT_KEY
        if key.lower() != device.management_key.lower():
            raise DeviceError("Authentication with management key failed.")

    def list_serials(self) -> list[int]:
        return list(self._devices)

    def info(self, serial: int) -> str:
        device = self.device(serial)
        return (
            'Device type: YubiKey 5 NFC\n'
            f'Serial number: {device.serial}\n'
            f'Firmware version: {device.version}\n'
            'Form factor: Keychain (USB-A)\n'
        )

    def piv_info(self, serial: int) -> str:
        device = self.device(serial)
        lines = ['PIV version:              ' + device.version]
        for slot in sorted(device.certificates):
            lines.append(f'Slot {slot}: certificate present')
        return '\n'.join(lines) + '\n'

    def export_object(self, serial: int, slot: str) -> bytes:
        device = self.device(serial)
        self._check_fault(device, slot)
        if slot not in device.objects:
            raise DeviceError(f"No data available in object {slot}")
        return device.objects[slot]

    def import_object(
        self,
        serial: int,
        slot: str,
        data: bytes,
        management_key: str | None = None,
        pin: str | None = None,
    ) -> None:
        device = self.device(serial)
        self._check_fault(device, slot)
        self._authorize(device, management_key)
        device.objects[slot] = data
        device.import_log.append(slot)

    def reset(self, serial: int) -> None:
        device = self.device(serial)
        device.objects.clear()
        device.keys.clear()
        device.certificates.clear()
        device.pin = DEFAULT_PIN
        device.puk = DEFAULT_PUK
        device.management_key = DEFAULT_MANAGEMENT_KEY

    def change_credential(
        self,
        serial: int,
        kind: Credential,
        current: str,
        new: str,
    ) -> None:
        device = self.device(serial)
        if kind is Credential.PIN:
            if current != device.pin:
                raise DeviceError("Changing the PIN failed: wrong PIN")
            device.pin = new
        elif kind is Credential.PUK:
            if current != device.puk:
                raise DeviceError("Changing the PUK failed: wrong PUK")
            device.puk = new
        else:
            self._authorize(device, current)
            device.management_key = new

    def generate_key(
        self,
        serial: int,
        slot: str,
        algorithm: str = DEFAULT_KEY_ALGORITHM,
        management_key: str | None = None,
        pin: str | None = None,
    ) -> bytes:
        from cryptography.hazmat.primitives import serialization
        from cryptography.hazmat.primitives.asymmetric import ec

        device = self.device(serial)
        self._authorize(device, management_key)
        if algorithm != DEFAULT_KEY_ALGORITHM:
            raise DeviceError(f"Emulation only supports {DEFAULT_KEY_ALGORITHM}")
        private_key = ec.generate_private_key(ec.SECP256R1())
        device.keys[slot] = private_key
        return private_key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def _private_key(self, device: EmulatedKey, slot: str):
        if slot not in device.keys:
            raise DeviceError(f"No private key in slot {slot}")
        return device.keys[slot]

    def generate_certificate(
        self,
        serial: int,
        slot: str,
        public_key: bytes,
        subject: str,
        valid_days: int = 365,
        management_key: str | None = None,
        pin: str | None = None,
    ) -> None:
        from cryptography import x509
        from cryptography.hazmat.primitives import hashes, serialization

        device = self.device(serial)
        self._authorize(device, management_key)
        private_key = self._private_key(device, slot)
        name = x509.Name.from_rfc4514_string(subject)
        now = datetime.datetime.now(datetime.timezone.utc)
        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(serialization.load_pem_public_key(public_key))
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=valid_days))
            .sign(private_key, hashes.SHA256())
        )
        device.certificates[slot] = certificate.public_bytes(serialization.Encoding.PEM)

    def request_certificate(
        self,
        serial: int,
        slot: str,
        public_key: bytes,
        subject: str,
        pin: str | None = None,
    ) -> bytes:
        from cryptography import x509
        from cryptography.hazmat.primitives import hashes, serialization

        device = self.device(serial)
        private_key = self._private_key(device, slot)
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name.from_rfc4514_string(subject))
            .sign(private_key, hashes.SHA256())
        )
        return csr.public_bytes(serialization.Encoding.PEM)

    def import_certificate(
        self,
        serial: int,
        slot: str,
        data: bytes,
        management_key: str | None = None,
        pin: str | None = None,
    ) -> None:
        device = self.device(serial)
        self._authorize(device, management_key)
        device.certificates[slot] = data

    def export_certificate(self, serial: int, slot: str) -> bytes:
        device = self.device(serial)
        if slot not in device.certificates:
            raise DeviceError(f"No certificate found in slot {slot}")
        return device.certificates[slot]
