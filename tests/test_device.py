# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

"""
HardwareDevice with a fake subprocess.run, and EmulatedDevice semantics.
"""

from __future__ import annotations

import subprocess

import pytest

from ykpm import device as device_module
from ykpm.auxiliaries import select_device
from ykpm.device import Credential, EmulatedDevice, HardwareDevice
from ykpm.errors import DeviceError, DeviceTimeout, NoDeviceError, ToolNotFoundError


class FakeRun:
    """Records the ykman command lines and plays back a canned result."""

    def __init__(self, stdout: bytes = b'', error: Exception | None = None):
        self.stdout = stdout
        self.error = error
        self.calls = []

    def __call__(self, cmd, input=None, check=False, stdout=None, stderr=None, timeout=None):
        self.calls.append({'cmd': cmd, 'input': input, 'timeout': timeout})
        if self.error is not None:
            raise self.error
        return subprocess.CompletedProcess(cmd, 0, stdout=self.stdout, stderr=b'')


@pytest.fixture
def fake_run(monkeypatch):
    def install(**kwargs) -> FakeRun:
        fake = FakeRun(**kwargs)
        monkeypatch.setattr(device_module.subprocess, 'run', fake)
        return fake
    return install


def test_list_serials(fake_run) -> None:
    fake = fake_run(stdout=b'12345678\n87654321\n\n')
    assert HardwareDevice().list_serials() == [12345678, 87654321]
    assert fake.calls[0]['cmd'] == ['ykman', 'list', '--serials']


def test_list_serials_rejects_unexpected_output(fake_run) -> None:
    fake_run(stdout=b'12345678\nWARNING: no PC/SC\n')
    with pytest.raises(DeviceError, match='Unexpected ykman list output'):
        HardwareDevice().list_serials()

    with pytest.raises(NoDeviceError, match='Cannot enumerate'):
        select_device(HardwareDevice())


def test_export_object_command(fake_run) -> None:
    fake = fake_run(stdout=b'payload')
    tool = HardwareDevice(ykman='/opt/ykman', timeout=7)
    assert tool.export_object(123, '5FC101') == b'payload'
    call = fake.calls[0]
    assert call['cmd'] == [
        '/opt/ykman', '--device', '123', 'piv', 'objects', 'export', '5FC101', '-',
    ]
    assert call['timeout'] == 7


def test_import_object_streams_stdin(fake_run) -> None:
    fake = fake_run()
    HardwareDevice().import_object(123, '5FC102', b'data', management_key='ab' * 24, pin='123456')
    call = fake.calls[0]
    assert call['cmd'] == [
        'ykman', '--device', '123', 'piv', 'objects', 'import',
        '--management-key', 'ab' * 24, '--pin', '123456', '5FC102', '-',
    ]
    assert call['input'] == b'data'


def test_change_pin_command(fake_run) -> None:
    fake = fake_run()
    HardwareDevice().change_credential(123, Credential.PIN, '123456', '654321')
    assert fake.calls[0]['cmd'][3:] == [
        'piv', 'access', 'change-pin', '--pin', '123456', '--new-pin', '654321',
    ]


def test_timeout_is_reported_as_device_timeout(fake_run) -> None:
    fake_run(error=subprocess.TimeoutExpired(['ykman'], 30))
    with pytest.raises(DeviceTimeout, match='timed out'):
        HardwareDevice().export_object(123, '5FC101')


def test_failure_carries_stderr(fake_run) -> None:
    fake_run(error=subprocess.CalledProcessError(
        1, ['ykman'], output=b'', stderr=b'ERROR: No data available\n'))
    with pytest.raises(DeviceError, match='No data available') as excinfo:
        HardwareDevice().export_object(123, '5FC101')
    assert not isinstance(excinfo.value, DeviceTimeout)


def test_missing_binary(fake_run) -> None:
    fake_run(error=FileNotFoundError(2, 'No such file or directory'))
    with pytest.raises(ToolNotFoundError):
        HardwareDevice().list_serials()


def test_check_available(monkeypatch) -> None:
    monkeypatch.setattr(device_module.shutil, 'which', lambda name: None)
    with pytest.raises(ToolNotFoundError, match='not installed'):
        HardwareDevice().check_available()

    monkeypatch.setattr(device_module.shutil, 'which', lambda name: f'/usr/bin/{name}')
    assert HardwareDevice().check_available() == '/usr/bin/ykman'


# === EMULATION ================================================================

def test_emulated_objects_and_faults() -> None:
    tool = EmulatedDevice()
    key = tool.add_device(111)
    key.objects['5FC101'] = b'x'
    key.faults['5FC102'] = 'timeout'

    assert tool.list_serials() == [111]
    assert tool.export_object(111, '5FC101') == b'x'
    with pytest.raises(DeviceError):
        tool.export_object(111, '5FC103')
    with pytest.raises(DeviceTimeout):
        tool.export_object(111, '5FC102')
    with pytest.raises(DeviceError):
        tool.info(999)


def test_emulated_credentials() -> None:
    tool = EmulatedDevice()
    key = tool.add_device(111)

    with pytest.raises(DeviceError):
        tool.change_credential(111, Credential.PIN, '000000', '654321')
    tool.change_credential(111, Credential.PIN, '123456', '654321')
    assert key.pin == '654321'

    new_key = 'ab' * 24
    tool.change_credential(111, Credential.MANAGEMENT_KEY, key.management_key, new_key)
    with pytest.raises(DeviceError):
        tool.import_object(111, '5FC101', b'x')
    tool.import_object(111, '5FC101', b'x', management_key=new_key)

    tool.reset(111)
    assert key.pin == '123456'
    assert key.objects == {}


def test_emulated_certificates() -> None:
    from cryptography import x509

    tool = EmulatedDevice()
    tool.add_device(111)

    public_key = tool.generate_key(111, '9A')
    assert public_key.startswith(b'-----BEGIN PUBLIC KEY-----')
    tool.generate_certificate(111, '9A', public_key, 'O=Example,CN=Test')

    cert = x509.load_pem_x509_certificate(tool.export_certificate(111, '9A'))
    assert cert.subject.rfc4514_string() == 'O=Example,CN=Test'

    csr = x509.load_pem_x509_csr(tool.request_certificate(111, '9A', public_key, 'CN=Test'))
    assert csr.is_signature_valid

    with pytest.raises(DeviceError):
        tool.export_certificate(111, '9C')
