"""Encrypted on-disk attachment files ("parts").

Two generations of file format exist and both must stay readable:

- modern: AES-256-CTR (zero IV) under HMAC-SHA256(modern_key, random), where
  ``random`` is a 32-byte per-file nonce kept in the owning database row, or
  prefixed to the file itself when written ``inline`` (avatars).
- classic: IV(16) || AES-256-CBC/PKCS7 ciphertext || HMAC-SHA1(IV || ct)(20),
  used before per-row nonces existed.

The decryptor for a row is chosen once from its stored nonce by
``select_part_decryptor``.
"""

from __future__ import annotations

import hmac
import json
import os
from dataclasses import dataclass
from typing import BinaryIO, Optional

from Cryptodome.Cipher import AES
from Cryptodome.Hash import HMAC, SHA1, SHA256
from Cryptodome.Util.Padding import pad, unpad

from .constants import CLASSIC_IV_SIZE, CLASSIC_MAC_SIZE, KEY_SIZE, PART_RANDOM_SIZE, STREAM_BUFFER_SIZE
from .cryptor import read_exact
from .errors import AuthenticationError, StructuralIOError


@dataclass(frozen=True)
class AttachmentSecret:
    classic_cipher_key: bytes
    classic_mac_key: bytes
    modern_key: bytes

    @classmethod
    def generate(cls) -> "AttachmentSecret":
        return cls(os.urandom(KEY_SIZE), os.urandom(KEY_SIZE), os.urandom(KEY_SIZE))

    def to_json(self) -> str:
        return json.dumps(
            {
                "classic_cipher_key": self.classic_cipher_key.hex(),
                "classic_mac_key": self.classic_mac_key.hex(),
                "modern_key": self.modern_key.hex(),
            }
        )

    @classmethod
    def from_json(cls, text: str) -> "AttachmentSecret":
        doc = json.loads(text)
        return cls(
            bytes.fromhex(doc["classic_cipher_key"]),
            bytes.fromhex(doc["classic_mac_key"]),
            bytes.fromhex(doc["modern_key"]),
        )


def _modern_cipher(secret: AttachmentSecret, random: bytes):
    key = HMAC.new(secret.modern_key, random, digestmod=SHA256).digest()
    return AES.new(key, AES.MODE_CTR, nonce=b"", initial_value=bytes(AES.block_size))


def plaintext_length(file_length: int, inline: bool = False) -> int:
    return file_length - PART_RANDOM_SIZE if inline else file_length


class _PartReader:
    """Buffered plaintext view over an encrypted file; subclasses yield decrypted chunks."""

    def __init__(self, fh: BinaryIO):
        self._fh = fh
        self._pending = bytearray()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _next_chunk(self) -> bytes:
        raise NotImplementedError

    def read(self, size: int = -1) -> bytes:
        while size is None or size < 0 or len(self._pending) < size:
            chunk = self._next_chunk()
            if not chunk:
                break
            self._pending += chunk
        if size is None or size < 0:
            size = len(self._pending)
        out = bytes(self._pending[:size])
        del self._pending[:size]
        return out

    def close(self) -> None:
        self._fh.close()


class _ModernReader(_PartReader):
    def __init__(self, fh: BinaryIO, cipher):
        super().__init__(fh)
        self._cipher = cipher

    def _next_chunk(self) -> bytes:
        data = self._fh.read(STREAM_BUFFER_SIZE)
        return self._cipher.decrypt(data) if data else b""


class _ClassicReader(_PartReader):
    def __init__(self, fh: BinaryIO, cipher, ciphertext_len: int):
        super().__init__(fh)
        self._cipher = cipher
        self._remaining = ciphertext_len

    def _next_chunk(self) -> bytes:
        if self._remaining == 0:
            return b""
        # Hold back the final block until the end so its padding can be stripped
        if self._remaining > AES.block_size:
            n = min(STREAM_BUFFER_SIZE, self._remaining - AES.block_size)
            self._remaining -= n
            return self._cipher.decrypt(read_exact(self._fh, n))
        last = self._cipher.decrypt(read_exact(self._fh, self._remaining))
        self._remaining = 0
        try:
            return unpad(last, AES.block_size)
        except ValueError as exc:
            raise StructuralIOError(f"Bad padding in classic part: {exc}") from exc


class ModernPartDecryptor:
    def __init__(self, secret: AttachmentSecret, random: bytes):
        self.secret = secret
        self.random = random

    def open(self, path: str) -> _PartReader:
        return _ModernReader(open(path, "rb"), _modern_cipher(self.secret, self.random))


class ClassicPartDecryptor:
    def __init__(self, secret: AttachmentSecret):
        self.secret = secret

    def open(self, path: str) -> _PartReader:
        file_length = os.path.getsize(path)
        ciphertext_len = file_length - CLASSIC_IV_SIZE - CLASSIC_MAC_SIZE
        if ciphertext_len < AES.block_size or ciphertext_len % AES.block_size:
            raise StructuralIOError(f"Classic part has impossible length: {file_length}")
        fh = open(path, "rb")
        try:
            self._verify_mac(fh, file_length)
            fh.seek(0)
            iv = read_exact(fh, CLASSIC_IV_SIZE)
        except BaseException:
            fh.close()
            raise
        cipher = AES.new(self.secret.classic_cipher_key, AES.MODE_CBC, iv=iv)
        return _ClassicReader(fh, cipher, ciphertext_len)

    def _verify_mac(self, fh: BinaryIO, file_length: int) -> None:
        mac = HMAC.new(self.secret.classic_mac_key, digestmod=SHA1)
        remaining = file_length - CLASSIC_MAC_SIZE
        while remaining > 0:
            data = read_exact(fh, min(STREAM_BUFFER_SIZE, remaining))
            mac.update(data)
            remaining -= len(data)
        their_mac = read_exact(fh, CLASSIC_MAC_SIZE)
        if not hmac.compare_digest(mac.digest(), their_mac):
            raise AuthenticationError("MAC doesn't match on classic part")


def select_part_decryptor(secret: AttachmentSecret, random: Optional[bytes]):
    if random is not None and len(random) == PART_RANDOM_SIZE:
        return ModernPartDecryptor(secret, random)
    return ClassicPartDecryptor(secret)


def open_inline_part(secret: AttachmentSecret, path: str) -> _PartReader:
    """Open a modern part whose nonce is stored as the file's first bytes."""
    fh = open(path, "rb")
    try:
        random = read_exact(fh, PART_RANDOM_SIZE)
    except BaseException:
        fh.close()
        raise
    return _ModernReader(fh, _modern_cipher(secret, random))


class ModernPartWriter:
    """Encrypts plaintext written to it into ``path`` under a fresh random nonce."""

    def __init__(self, secret: AttachmentSecret, path: str, *, inline: bool = False):
        self.path = path
        self.random = os.urandom(PART_RANDOM_SIZE)
        self._cipher = _modern_cipher(secret, self.random)
        self._fh = open(path, "wb")
        if inline:
            self._fh.write(self.random)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def write(self, data: bytes) -> int:
        self._fh.write(self._cipher.encrypt(data))
        return len(data)

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()


class ClassicPartWriter:
    """Writes IV, AES-CBC-PKCS7 ciphertext and an HMAC-SHA1 tag over both (the legacy part format)."""

    def __init__(self, secret: AttachmentSecret, path: str):
        self.path = path
        iv = os.urandom(CLASSIC_IV_SIZE)
        self._cipher = AES.new(secret.classic_cipher_key, AES.MODE_CBC, iv=iv)
        self._mac = HMAC.new(secret.classic_mac_key, iv, digestmod=SHA1)
        self._buffer = bytearray()
        self._fh = open(path, "wb")
        self._fh.write(iv)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _emit(self, ciphertext: bytes) -> None:
        self._mac.update(ciphertext)
        self._fh.write(ciphertext)

    def write(self, data: bytes) -> int:
        self._buffer += data
        full = len(self._buffer) - len(self._buffer) % AES.block_size
        if full:
            self._emit(self._cipher.encrypt(bytes(self._buffer[:full])))
            del self._buffer[:full]
        return len(data)

    def close(self) -> None:
        if self._fh.closed:
            return
        self._emit(self._cipher.encrypt(pad(bytes(self._buffer), AES.block_size)))
        self._fh.write(self._mac.digest())
        self._fh.close()
