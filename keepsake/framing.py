from __future__ import annotations

import logging
import os
import struct
from typing import BinaryIO, Optional

from . import tlv
from .constants import (
    INT32_MAX,
    IV_SIZE,
    LENGTH_PREFIX_SIZE,
    MAC_SIZE,
    MAX_HEADER_LENGTH,
    SALT_SIZE,
)
from .cryptor import CipherSession, read_exact
from .errors import InvalidBackupStreamError, StructuralIOError
from .frames import (
    Attachment,
    Avatar,
    BackupFrame,
    DatabaseVersion,
    End,
    Header,
    KeyValue,
    SharedPreference,
    SqlStatement,
    Sticker,
)
from .kdf import DEFAULT_KDF


logger = logging.getLogger(__name__)

# Frame layout on the wire:
#   [u32 BE length][ciphertext][10-byte truncated MAC]    length = len(ciphertext) + 10
# The header frame alone is written in clear: [u32 BE length][serialized Header]
_LENGTH = struct.Struct(">I")


def _narrow_length(size: int, what: str) -> int:
    if size < 0 or size > INT32_MAX:
        logger.warning("Unable to write %s to backup: length %d does not fit in int32", what, size)
        raise InvalidBackupStreamError(f"{what} length out of range: {size}")
    return size


class BackupFrameWriter:
    """Streaming writer that encrypts and authenticates every frame it emits."""

    def __init__(self, output: BinaryIO, passphrase: str, kdf=DEFAULT_KDF, *, close_output: bool = True):
        self.output = output
        self.close_output = close_output
        salt = os.urandom(SALT_SIZE)
        iv = os.urandom(IV_SIZE)
        self.session = CipherSession.from_master_key(kdf.derive(passphrase, salt), iv)
        header = tlv.dumps_frame(Header(iv=iv, salt=salt))
        self.output.write(_LENGTH.pack(len(header)))
        self.output.write(header)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def write(self, frame: BackupFrame) -> None:
        body = self.session.encrypt_frame(tlv.dumps_frame(frame))
        self.output.write(_LENGTH.pack(len(body)))
        self.output.write(body)

    def write_database_version(self, version: int) -> None:
        self.write(DatabaseVersion(version=version))

    def write_statement(self, statement: SqlStatement) -> None:
        self.write(statement)

    def write_preference(self, preference: SharedPreference) -> None:
        self.write(preference)

    def write_key_value(self, key_value: KeyValue) -> None:
        self.write(key_value)

    def write_attachment(self, row_id: int, attachment_id: int, source: BinaryIO, size: int) -> int:
        length = _narrow_length(size, f"attachment {row_id}/{attachment_id}")
        self.write(Attachment(row_id=row_id, attachment_id=attachment_id, length=length))
        return self.session.encrypt_stream(source, self.output, length)

    def write_sticker(self, row_id: int, source: BinaryIO, size: int) -> int:
        length = _narrow_length(size, f"sticker {row_id}")
        self.write(Sticker(row_id=row_id, length=length))
        return self.session.encrypt_stream(source, self.output, length)

    def write_avatar(self, recipient_id: str, source: BinaryIO, size: int) -> int:
        length = _narrow_length(size, f"avatar {recipient_id}")
        self.write(Avatar(recipient_id=recipient_id, length=length))
        return self.session.encrypt_stream(source, self.output, length)

    def write_end(self) -> None:
        self.write(End())

    def close(self) -> None:
        self.output.flush()
        if self.close_output:
            self.output.close()


class BackupFrameReader:
    """Reads the cleartext header, then decrypts and authenticates frames in order."""

    def __init__(self, source: BinaryIO, passphrase: str, kdf=DEFAULT_KDF):
        self.source = source
        self.header = self._read_header()
        self.session = CipherSession.from_master_key(kdf.derive(passphrase, self.header.salt), self.header.iv)

    def _read_length(self) -> int:
        (length,) = _LENGTH.unpack(read_exact(self.source, LENGTH_PREFIX_SIZE))
        return length

    def _read_header(self) -> Header:
        length = self._read_length()
        if length == 0 or length > MAX_HEADER_LENGTH:
            raise StructuralIOError(f"Bad header length: {length}")
        try:
            frame = tlv.loads_frame(read_exact(self.source, length))
        except ValueError as exc:
            raise StructuralIOError(f"Malformed header frame: {exc}") from exc
        if not isinstance(frame, Header):
            raise StructuralIOError("Backup stream does not start with a header frame")
        if len(frame.iv) != IV_SIZE or len(frame.salt) != SALT_SIZE:
            raise StructuralIOError("Header carries IV or salt of unexpected size")
        return frame

    def read_frame(self) -> Optional[BackupFrame]:
        """Return the next frame, or None for a frame of an unknown variant."""
        length = self._read_length()
        if length < MAC_SIZE:
            raise StructuralIOError(f"Bad frame length: {length}")
        plaintext = self.session.decrypt_frame(read_exact(self.source, length))
        try:
            return tlv.loads_frame(plaintext)
        except ValueError as exc:
            raise StructuralIOError(f"Malformed frame: {exc}") from exc

    def read_stream_to(self, sink: BinaryIO, length: int) -> None:
        self.session.decrypt_stream(self.source, sink, length)

    def skip_stream(self, length: int) -> None:
        self.session.decrypt_stream(self.source, _NullSink(), length)


class _NullSink:
    def write(self, data: bytes) -> int:
        return len(data)
