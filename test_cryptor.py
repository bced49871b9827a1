from __future__ import annotations

import io
import os
import random
import unittest

from keepsake.constants import MAC_SIZE
from keepsake.cryptor import CipherSession, read_exact
from keepsake.errors import AuthenticationError, BadMacError, SizeMismatchError, StructuralIOError


def _pair(iv: bytes | None = None):
    cipher_key, mac_key = os.urandom(32), os.urandom(32)
    iv = iv if iv is not None else os.urandom(16)
    return CipherSession(cipher_key, mac_key, iv), CipherSession(cipher_key, mac_key, iv)


class _ShortReads(io.RawIOBase):
    """Returns at most ``step`` bytes per read."""

    def __init__(self, data: bytes, step: int):
        self._buf = io.BytesIO(data)
        self._step = step

    def readable(self):
        return True

    def read(self, n=-1):
        if n is None or n < 0:
            n = self._step
        return self._buf.read(min(n, self._step))


class CipherSessionTests(unittest.TestCase):
    def test_frame_roundtrip(self):
        enc, dec = _pair()
        for size in (0, 1, 15, 16, 17, 1000):
            plaintext = os.urandom(size)
            body = enc.encrypt_frame(plaintext)
            self.assertEqual(size + MAC_SIZE, len(body))
            self.assertEqual(plaintext, dec.decrypt_frame(body))

    def test_first_operation_uses_initial_iv(self):
        iv = bytes.fromhex("00000005") + os.urandom(12)
        enc, _ = _pair(iv)
        self.assertEqual(iv, enc.next_iv())
        self.assertEqual(6, enc.counter)

    def test_counter_advances_once_per_frame_and_payload(self):
        enc, _ = _pair()
        start = enc.counter
        seen = set()
        sink = io.BytesIO()
        for i in range(50):
            if i % 3 == 0:
                enc.encrypt_stream(io.BytesIO(os.urandom(20000)), sink, 20000)
            else:
                enc.encrypt_frame(b"frame %d" % i)
            self.assertEqual((start + i + 1) & 0xFFFFFFFF, enc.counter)
            seen.add(enc.iv)
        self.assertEqual(50, len(seen))

    def test_counter_wraps(self):
        iv = b"\xff\xff\xff\xff" + bytes(12)
        enc, dec = _pair(iv)
        a = enc.encrypt_frame(b"a")
        b = enc.encrypt_frame(b"b")
        self.assertEqual(1, enc.counter)
        self.assertEqual(b"a", dec.decrypt_frame(a))
        self.assertEqual(b"b", dec.decrypt_frame(b))

    def test_tampered_frame_fails_authentication(self):
        iv = os.urandom(16)
        enc, _ = _pair(iv)
        body = enc.encrypt_frame(b"some frame content")
        for pos in range(len(body)):
            tampered = bytearray(body)
            tampered[pos] ^= 0x01
            dec = CipherSession(enc.cipher_key, enc.mac_key, iv)
            with self.assertRaises(AuthenticationError):
                dec.decrypt_frame(bytes(tampered))
            self.assertEqual(int.from_bytes(iv[:4], "big"), dec.counter)

    def test_short_frame_is_structural(self):
        enc, _ = _pair()
        with self.assertRaises(StructuralIOError):
            enc.decrypt_frame(b"\x00" * (MAC_SIZE - 1))

    def test_stream_roundtrip_exact_length(self):
        enc, dec = _pair()
        rng = random.Random(7)
        for size in (0, 1, 8191, 8192, 8193, 50000):
            data = bytes(rng.getrandbits(8) for _ in range(size))
            wire = io.BytesIO()
            self.assertEqual(size, enc.encrypt_stream(_ShortReads(data, 777), wire, size))
            self.assertEqual(size + MAC_SIZE, len(wire.getvalue()))
            wire.seek(0)
            out = io.BytesIO()
            dec.decrypt_stream(wire, out, size)
            self.assertEqual(data, out.getvalue())
            self.assertEqual(wire.tell(), len(wire.getvalue()))

    def test_stream_source_longer_than_declared(self):
        enc, _ = _pair()
        sink = io.BytesIO()
        with self.assertRaises(SizeMismatchError) as ctx:
            enc.encrypt_stream(io.BytesIO(b"x" * 100), sink, 99)
        self.assertEqual(99, ctx.exception.expected)
        self.assertLessEqual(len(sink.getvalue()), 99)

    def test_stream_source_shorter_than_declared(self):
        enc, _ = _pair()
        with self.assertRaises(SizeMismatchError) as ctx:
            enc.encrypt_stream(io.BytesIO(b"x" * 10), io.BytesIO(), 11)
        self.assertEqual((11, 10), (ctx.exception.expected, ctx.exception.actual))

    def test_bad_payload_mac_consumes_payload(self):
        enc, dec = _pair()
        wire = io.BytesIO()
        enc.encrypt_stream(io.BytesIO(b"payload bytes"), wire, 13)
        after = enc.encrypt_frame(b"next frame")
        data = bytearray(wire.getvalue())
        data[3] ^= 0x80
        stream = io.BytesIO(bytes(data) + after)
        with self.assertRaises(BadMacError):
            dec.decrypt_stream(stream, io.BytesIO(), 13)
        self.assertEqual(b"next frame", dec.decrypt_frame(stream.read()))

    def test_truncated_payload_is_structural(self):
        enc, dec = _pair()
        wire = io.BytesIO()
        enc.encrypt_stream(io.BytesIO(b"abcdef"), wire, 6)
        with self.assertRaises(StructuralIOError):
            dec.decrypt_stream(io.BytesIO(wire.getvalue()[:3]), io.BytesIO(), 6)

    def test_read_exact(self):
        self.assertEqual(b"abcd", read_exact(_ShortReads(b"abcdef", 1), 4))
        with self.assertRaises(StructuralIOError):
            read_exact(io.BytesIO(b"ab"), 3)


if __name__ == "__main__":
    unittest.main()
