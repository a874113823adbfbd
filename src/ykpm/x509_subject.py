# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

from cryptography import x509
from cryptography.x509.oid import NameOID

# Allowed RDN attribute types in OpenSSL slash style
VALID_ATTRS = {
    'CN': NameOID.COMMON_NAME,
    'O': NameOID.ORGANIZATION_NAME,
    'OU': NameOID.ORGANIZATIONAL_UNIT_NAME,
    'C': NameOID.COUNTRY_NAME,
    'L': NameOID.LOCALITY_NAME,
    'ST': NameOID.STATE_OR_PROVINCE_NAME,
    'emailAddress': NameOID.EMAIL_ADDRESS,
}


# Note: accepts the legacy syntax (e.g. /CN=John Doe/OU=Security/O=Company)
def verify_x509_subject(subject: str) -> list:
    """
    Validates a subject string in OpenSSL slash-delimited format.
    Returns list of (key, value) tuples if valid.
    Raises ValueError if invalid.
    """
    subject = subject.strip()
    if not subject.startswith('/'):
        raise ValueError("Subject must start with '/'")

    # A trailing slash is tolerated
    parts = subject.rstrip('/').split('/')[1:]
    if not parts:
        raise ValueError("Subject has no attribute")

    rdn_list = []
    for part in parts:
        if '=' not in part:
            raise ValueError(f"Missing '=' in RDN: {part}")
        key, value = part.split('=', 1)

        if key not in VALID_ATTRS:
            raise ValueError(f"Invalid RDN attribute: {key}")
        if not value.strip():
            raise ValueError(f"Empty value for {key}")
        if key == 'C' and len(value) != 2:
            raise ValueError(f"Country code must be 2 letters: {value}")

        rdn_list.append((key, value))

    return rdn_list


def to_x509_name(subject: str) -> x509.Name:
    """Build a cryptography Name from a slash-delimited subject."""
    return x509.Name([
        x509.NameAttribute(VALID_ATTRS[key], value)
        for key, value in verify_x509_subject(subject)
    ])


def load_certificate(data: bytes) -> x509.Certificate:
    """
    Parse a PEM or DER certificate.

    Raises:
        ValueError: If the data is not a certificate
    """
    if data.lstrip().startswith(b'-----BEGIN'):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def describe_certificate(data: bytes) -> str:
    """One-line summary: subject and expiry date."""
    cert = load_certificate(data)
    expiry = cert.not_valid_after_utc.strftime('%Y-%m-%d')
    return f'{cert.subject.rfc4514_string()} (expires {expiry})'


def to_rfc4514(subject: str) -> str:
    """
    Convert '/CN=John Doe/O=Company' to the RFC 4514 form ykman expects
    ('O=Company,CN=John Doe'), escaping special characters.
    """
    return to_x509_name(subject).rfc4514_string()
