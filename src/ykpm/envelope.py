# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

"""
JSON envelopes for exported PIV objects.

An exported object is either already a JSON document (key shares are
usually stored that way) or opaque bytes. Both are stored in the backup
archive as a JSON envelope carrying the slot, the device serial and the
backup time:

    Structured payload -> the document itself, with a merged `metadata`
                          object (backup_timestamp, slot, serial,
                          payload_format: "json")
    Raw payload        -> {"slot", "serial", "backup_timestamp",
                           "data": <base64>, "data_encoding": "base64",
                           "metadata": {"original_format": "raw",
                                        "payload_format": "raw", ...}}

The variant is told apart by `metadata.payload_format`, which wrap() always
sets (overriding any value carried by the document). Archives written
without it fall back to `metadata.original_format == "raw"`.

unwrap() reverses the transformation; for raw payloads the original bytes
are recovered exactly.
"""

from __future__ import annotations

import base64
import binascii
import datetime
import json
from dataclasses import dataclass
from typing import Any, Union

from ykpm.constants import BACKUP_FORMAT_VERSION

FORMAT_KEY = 'payload_format'
FORMAT_JSON = 'json'
FORMAT_RAW = 'raw'


@dataclass(frozen=True)
class RawPayload:
    """Opaque object content."""
    data: bytes


@dataclass(frozen=True)
class StructuredPayload:
    """Object content that is a JSON object."""
    document: dict[str, Any]


Payload = Union[RawPayload, StructuredPayload]


def backup_timestamp(when: datetime.datetime | None = None) -> str:
    """ISO-8601 timestamp with second resolution and UTC offset."""
    if when is None:
        when = datetime.datetime.now().astimezone()
    elif when.tzinfo is None:
        when = when.astimezone()
    return when.isoformat(timespec='seconds')


def classify(data: bytes) -> Payload:
    """
    Decide whether exported bytes are a JSON document.

    Only content starting with '{' that parses as a JSON object is treated
    as structured; anything else (including malformed JSON) is kept raw so
    that no byte is lost.
    """
    if data[:1] == b'{':
        try:
            document = json.loads(data.decode('utf-8'))
        except (UnicodeDecodeError, ValueError):
            return RawPayload(data)
        if isinstance(document, dict):
            return StructuredPayload(document)
    return RawPayload(data)


def wrap(payload: Payload, slot: str, serial: int, timestamp: str) -> dict[str, Any]:
    """Build the envelope stored in the archive for one slot."""
    if isinstance(payload, StructuredPayload):
        envelope = dict(payload.document)
        metadata = envelope.get('metadata')
        metadata = dict(metadata) if isinstance(metadata, dict) else {}
        metadata['backup_timestamp'] = timestamp
        metadata['slot'] = slot
        metadata['serial'] = str(serial)
        metadata[FORMAT_KEY] = FORMAT_JSON
        envelope['metadata'] = metadata
        return envelope

    return {
        'slot': slot,
        'serial': str(serial),
        'backup_timestamp': timestamp,
        'data': base64.b64encode(payload.data).decode('ascii'),
        'data_encoding': 'base64',
        'metadata': {
            'original_format': 'raw',
            FORMAT_KEY: FORMAT_RAW,
            'backup_version': BACKUP_FORMAT_VERSION,
        },
    }


def dumps(envelope: dict[str, Any]) -> bytes:
    """Serialize an envelope the way it is written into archives."""
    return (json.dumps(envelope, indent=2, ensure_ascii=False) + '\n').encode('utf-8')


def wrap_bytes(data: bytes, slot: str, serial: int, timestamp: str) -> bytes:
    """classify() + wrap() + dumps() in one step."""
    return dumps(wrap(classify(data), slot, serial, timestamp))


def is_raw(envelope: dict[str, Any]) -> bool:
    """True for envelopes built around opaque bytes."""
    metadata = envelope.get('metadata')
    if not isinstance(metadata, dict):
        return False
    if FORMAT_KEY in metadata:
        return metadata[FORMAT_KEY] == FORMAT_RAW
    return metadata.get('original_format') == 'raw'


def unwrap(envelope: dict[str, Any]) -> bytes:
    """
    Return the bytes to import back into the slot.

    Raises:
        ValueError: If a base64 envelope is corrupt or uses an unknown encoding
    """
    if not is_raw(envelope):
        # Structured payload, imported as the JSON document (metadata included)
        return json.dumps(envelope, indent=2, ensure_ascii=False).encode('utf-8')
    encoding = envelope.get('data_encoding')
    if encoding != 'base64':
        raise ValueError(f"Unsupported data encoding: {encoding!r}")
    data = envelope.get('data')
    if not isinstance(data, str):
        raise ValueError("Envelope has no 'data' field")
    try:
        return base64.b64decode(data, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Corrupt base64 data: {e}") from e


def loads(raw: bytes) -> dict[str, Any]:
    """
    Parse an envelope file.

    Raises:
        ValueError: If the content is not a JSON object
    """
    envelope = json.loads(raw.decode('utf-8'))
    if not isinstance(envelope, dict):
        raise ValueError("Envelope is not a JSON object")
    return envelope
