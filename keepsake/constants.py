# Header material
SALT_SIZE = 32
IV_SIZE = 16
KEY_SIZE = 32

# HKDF expansion of the passphrase-derived master key
HKDF_INFO = b"Backup Export"
DERIVED_SECRET_SIZE = 64

# Every frame and every streamed payload carries a truncated HMAC-SHA256 tag
MAC_SIZE = 10

# [4-byte big-endian length] prefixes each frame
LENGTH_PREFIX_SIZE = 4
MAX_HEADER_LENGTH = 1024
INT32_MAX = 0x7FFFFFFF

STREAM_BUFFER_SIZE = 8192

# Import emits a progress event every N frames
IMPORT_PROGRESS_INTERVAL = 100

# Export progress estimate
DATABASE_VERSION_RECORD_COUNT = 1
TABLE_RECORD_COUNT_MULTIPLIER = 3
FINAL_MESSAGE_COUNT = 1

# Local attachment files
PART_RANDOM_SIZE = 32
CLASSIC_IV_SIZE = 16
CLASSIC_MAC_SIZE = 20

BACKUP_SUFFIX = ".backup"
