"""
Keepsake: streaming, authenticated, encrypted backups of an application profile.

Features:

- One-pass export of a relational database, typed settings, flat preferences and
  encrypted attachment/sticker/avatar blobs into a single byte stream.
- Every frame is AES-256-CTR encrypted under a counter-derived IV and carries a
  truncated HMAC-SHA256; blobs are streamed with their own tag after their frame.
- Passphrase keys via Argon2id (or the legacy iterated SHA-512 derivation) and HKDF.
- Atomic import: the database and settings store commit together or not at all;
  a blob that fails authentication is dropped without aborting the restore.

Programmatic API lives in keepsake.exporter (export/export_to_stream/transfer)
and keepsake.importer (import_file/import_stream); the CLI is keepsake.cli.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "errors",
    "frames",
    "framing",
    "cryptor",
    "exporter",
    "importer",
    "policy",
    "profile",
]
