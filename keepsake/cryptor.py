"""Symmetric primitives shared by backup frames and streamed payloads.

Every encryption operation in a session uses AES-256-CTR under the session's
cipher key with a counter-derived IV: the leading four IV bytes are replaced
by a big-endian uint32 counter that advances by one per frame and per streamed
payload, the remaining twelve bytes stay fixed. Authentication is
HMAC-SHA256 under a separate key, truncated to ``MAC_SIZE`` bytes.
"""

from __future__ import annotations

import hmac
from typing import BinaryIO, Tuple

from Cryptodome.Cipher import AES
from Cryptodome.Hash import HMAC, SHA256
from Cryptodome.Protocol.KDF import HKDF

from .constants import (
    DERIVED_SECRET_SIZE,
    HKDF_INFO,
    IV_SIZE,
    KEY_SIZE,
    MAC_SIZE,
    STREAM_BUFFER_SIZE,
)
from .errors import AuthenticationError, BadMacError, SizeMismatchError, StructuralIOError


def read_exact(f: BinaryIO, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        b = f.read(n - len(buf))
        if not b:
            raise StructuralIOError("Unexpected EOF")
        buf += b
    return bytes(buf)


def derive_secrets(master_key: bytes, info: bytes = HKDF_INFO) -> Tuple[bytes, bytes]:
    """Expand a master key into (cipher_key, mac_key) with HKDF-SHA256."""
    cipher_key, mac_key = HKDF(
        master_key,
        DERIVED_SECRET_SIZE // 2,
        None,
        SHA256,
        num_keys=2,
        context=info,
    )
    return cipher_key, mac_key


def truncated_mac(mac) -> bytes:
    return mac.digest()[:MAC_SIZE]


class CipherSession:
    """Cipher and MAC state for one export or import operation. Not shareable."""

    def __init__(self, cipher_key: bytes, mac_key: bytes, iv: bytes):
        if len(cipher_key) != KEY_SIZE or len(mac_key) != KEY_SIZE:
            raise ValueError("cipher and MAC keys must be 32 bytes")
        if len(iv) != IV_SIZE:
            raise ValueError("IV must be 16 bytes")
        self.cipher_key = cipher_key
        self.mac_key = mac_key
        self._iv = bytearray(iv)
        self.counter = int.from_bytes(iv[:4], "big")

    @classmethod
    def from_master_key(cls, master_key: bytes, iv: bytes) -> "CipherSession":
        cipher_key, mac_key = derive_secrets(master_key)
        return cls(cipher_key, mac_key, iv)

    @property
    def iv(self) -> bytes:
        return bytes(self._iv)

    def next_iv(self) -> bytes:
        """Stamp the current counter into the IV, then advance the counter."""
        self._iv[0:4] = self.counter.to_bytes(4, "big")
        self.counter = (self.counter + 1) & 0xFFFFFFFF
        return bytes(self._iv)

    def _cipher(self, iv: bytes):
        return AES.new(self.cipher_key, AES.MODE_CTR, nonce=b"", initial_value=iv)

    def _mac(self):
        return HMAC.new(self.mac_key, digestmod=SHA256)

    # -------- Whole frames --------

    def encrypt_frame(self, plaintext: bytes) -> bytes:
        """Return ciphertext || truncated MAC(ciphertext)."""
        ciphertext = self._cipher(self.next_iv()).encrypt(plaintext)
        mac = self._mac()
        mac.update(ciphertext)
        return ciphertext + truncated_mac(mac)

    def decrypt_frame(self, body: bytes) -> bytes:
        if len(body) < MAC_SIZE:
            raise StructuralIOError(f"Frame too short: {len(body)} bytes")
        ciphertext, their_mac = body[:-MAC_SIZE], body[-MAC_SIZE:]
        mac = self._mac()
        mac.update(ciphertext)
        if not hmac.compare_digest(truncated_mac(mac), their_mac):
            raise AuthenticationError("Bad MAC")
        return self._cipher(self.next_iv()).decrypt(ciphertext)

    # -------- Streamed payloads --------

    def encrypt_stream(self, source: BinaryIO, sink: BinaryIO, size: int, buffer_size: int = STREAM_BUFFER_SIZE) -> int:
        """Encrypt exactly ``size`` plaintext bytes from ``source`` into ``sink``.

        Writes ciphertext followed by the truncated MAC over IV || ciphertext.
        A source that yields more than ``size`` bytes fails before the excess
        is written; one that yields fewer fails after the trailer.
        """
        iv = self.next_iv()
        cipher = self._cipher(iv)
        mac = self._mac()
        mac.update(iv)
        total = 0
        while True:
            chunk = source.read(buffer_size)
            if not chunk:
                break
            if total + len(chunk) > size:
                raise SizeMismatchError(size, total + len(chunk))
            ciphertext = cipher.encrypt(chunk)
            sink.write(ciphertext)
            mac.update(ciphertext)
            total += len(chunk)
        sink.write(truncated_mac(mac))
        if total != size:
            raise SizeMismatchError(size, total)
        return total

    def decrypt_stream(self, source: BinaryIO, sink: BinaryIO, length: int, buffer_size: int = STREAM_BUFFER_SIZE) -> None:
        """Decrypt ``length`` bytes plus trailer from ``source`` into ``sink``.

        The payload and its trailer are always consumed in full before the MAC
        is checked, so a BadMacError leaves ``source`` at the next frame.
        """
        iv = self.next_iv()
        cipher = self._cipher(iv)
        mac = self._mac()
        mac.update(iv)
        remaining = length
        while remaining > 0:
            chunk = source.read(min(buffer_size, remaining))
            if not chunk:
                raise StructuralIOError("File ended early!")
            mac.update(chunk)
            sink.write(cipher.decrypt(chunk))
            remaining -= len(chunk)
        their_mac = read_exact(source, MAC_SIZE)
        if not hmac.compare_digest(truncated_mac(mac), their_mac):
            raise BadMacError("Bad MAC on streamed payload")
