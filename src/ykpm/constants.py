# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

# === SLOTS ====================================================================

# Data objects used for key shares, backed up by default
DEFAULT_SLOTS = (
    '5FC101', '5FC102', '5FC103', '5FC104',
    '5FC105', '5FC106', '5FC107', '5FC108',
)

# Retired key management history objects (5FC10D..5FC120)
RETIRED_SLOTS = tuple(f'{0x5FC10D + i:06X}' for i in range(20))

# Standard key slots, certificate operations only
CERTIFICATE_SLOTS = ('9A', '9C', '9D', '9E')
CERTIFICATE_SLOT_NAMES = {
    '9A': 'PIV Authentication',
    '9C': 'Digital Signature',
    '9D': 'Key Management',
    '9E': 'Card Authentication',
}

OBJECT_SLOTS = DEFAULT_SLOTS + RETIRED_SLOTS
KNOWN_SLOTS = OBJECT_SLOTS + CERTIFICATE_SLOTS

KEY_ALGORITHMS = ('ECCP256', 'ECCP384', 'RSA2048')
DEFAULT_KEY_ALGORITHM = 'ECCP256'


# === CREDENTIALS ==============================================================

DEFAULT_PIN = '123456'
DEFAULT_PUK = '12345678'
DEFAULT_MANAGEMENT_KEY = '010203040506070801020304050607080102030405060708'
PIN_MIN_LENGTH = 6
PIN_MAX_LENGTH = 8
MANAGEMENT_KEY_HEX_LENGTH = 48


# === ARCHIVES =================================================================

ARCHIVE_PREFIX = 'yubikey_'
ARCHIVE_SUFFIX = '.tar.gz'
CHECKSUM_SUFFIX = '.sha256'
TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
SLOT_FILE_PREFIX = 'slot_'
SLOT_FILE_SUFFIX = '.json'
MANIFEST_NAME = 'MANIFEST.txt'
BACKUP_FORMAT_VERSION = '1.0'
CHUNK_SIZE = 64 * 1024

STAGING_PREFIX = 'yubikey_backup_'
RESTORE_PREFIX = 'yubikey_restore_'


# === CONFIGURATION DEFAULTS ===================================================

DEFAULT_BACKUP_DIR = './yubikey_backups'
DEFAULT_SHARES_DIR = './yubikey_shares'
DEFAULT_LOG_FILE = './yubikey_manager.log'
DEFAULT_YKMAN = 'ykman'
DEFAULT_TIMEOUT = 30.0
LOG_TAIL_LINES = 50

SHARE_THRESHOLD = 3
SHARE_RANDOM_BYTES = 32
