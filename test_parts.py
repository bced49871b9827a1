from __future__ import annotations

import os
import struct
import tempfile
import unittest
from pathlib import Path

from keepsake.constants import PART_RANDOM_SIZE
from keepsake.errors import AuthenticationError, StructuralIOError
from keepsake.frames import ValueType
from keepsake.keyvalue import KeyValueStore
from keepsake.parts import (
    AttachmentSecret,
    ClassicPartDecryptor,
    ClassicPartWriter,
    ModernPartDecryptor,
    ModernPartWriter,
    open_inline_part,
    plaintext_length,
    select_part_decryptor,
)
from keepsake.preferences import PreferenceStore
from keepsake.storage import BlobStore


def _write_modern(secret: AttachmentSecret, path: Path, data: bytes, *, inline: bool = False) -> bytes:
    with ModernPartWriter(secret, str(path), inline=inline) as w:
        for i in range(0, len(data), 1000):
            w.write(data[i : i + 1000])
    return w.random


def _write_classic(secret: AttachmentSecret, path: Path, data: bytes) -> None:
    with ClassicPartWriter(secret, str(path)) as w:
        for i in range(0, len(data), 333):
            w.write(data[i : i + 333])


class PartTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_modern_roundtrip(self):
        def scenario(tmp: Path):
            secret = AttachmentSecret.generate()
            for size in (0, 1, 8192, 20001):
                data = os.urandom(size)
                random = _write_modern(secret, tmp / "p", data)
                self.assertEqual(size, os.path.getsize(tmp / "p"))
                with ModernPartDecryptor(secret, random).open(str(tmp / "p")) as r:
                    self.assertEqual(data, r.read())

        self.run_with_tmpdir(scenario)

    def test_inline_nonce(self):
        def scenario(tmp: Path):
            secret = AttachmentSecret.generate()
            data = os.urandom(5000)
            _write_modern(secret, tmp / "a", data, inline=True)
            self.assertEqual(len(data), plaintext_length(os.path.getsize(tmp / "a"), inline=True))
            with open_inline_part(secret, str(tmp / "a")) as r:
                self.assertEqual(data[:10], r.read(10))
                self.assertEqual(data[10:], r.read())

        self.run_with_tmpdir(scenario)

    def test_classic_roundtrip(self):
        def scenario(tmp: Path):
            secret = AttachmentSecret.generate()
            for size in (0, 15, 16, 17, 9000):
                data = os.urandom(size)
                _write_classic(secret, tmp / "c", data)
                decryptor = select_part_decryptor(secret, None)
                self.assertIsInstance(decryptor, ClassicPartDecryptor)
                with decryptor.open(str(tmp / "c")) as r:
                    out = bytearray()
                    while True:
                        chunk = r.read(100)
                        if not chunk:
                            break
                        out += chunk
                self.assertEqual(data, bytes(out))

        self.run_with_tmpdir(scenario)

    def test_classic_mac_checked_on_open(self):
        def scenario(tmp: Path):
            secret = AttachmentSecret.generate()
            _write_classic(secret, tmp / "c", b"legacy attachment")
            raw = bytearray((tmp / "c").read_bytes())
            raw[20] ^= 1
            (tmp / "c").write_bytes(bytes(raw))
            with self.assertRaises(AuthenticationError):
                ClassicPartDecryptor(secret).open(str(tmp / "c"))
            (tmp / "short").write_bytes(b"x" * 20)
            with self.assertRaises(StructuralIOError):
                ClassicPartDecryptor(secret).open(str(tmp / "short"))

        self.run_with_tmpdir(scenario)

    def test_decryptor_selection(self):
        secret = AttachmentSecret.generate()
        self.assertIsInstance(select_part_decryptor(secret, os.urandom(32)), ModernPartDecryptor)
        self.assertIsInstance(select_part_decryptor(secret, os.urandom(16)), ClassicPartDecryptor)
        self.assertIsInstance(select_part_decryptor(secret, None), ClassicPartDecryptor)

    def test_secret_json(self):
        secret = AttachmentSecret.generate()
        self.assertEqual(secret, AttachmentSecret.from_json(secret.to_json()))

    def test_missing_file(self):
        secret = AttachmentSecret.generate()
        with self.assertRaises(FileNotFoundError):
            ModernPartDecryptor(secret, os.urandom(32)).open("/nonexistent/part")


class StoreTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_blob_store_avatars(self):
        def scenario(tmp: Path):
            secret = AttachmentSecret.generate()
            blobs = BlobStore(str(tmp))
            with blobs.avatar_writer("7", secret) as w:
                w.write(b"avatar image")
            with blobs.avatar_writer("3", secret) as w:
                w.write(b"")
            avatars = list(blobs.avatars())
            self.assertEqual(["3", "7"], [a.recipient_id for a in avatars])
            self.assertEqual([0, 12], [a.length for a in avatars])
            self.assertEqual(2, blobs.avatar_count())
            with blobs.open_avatar(avatars[1], secret) as r:
                self.assertEqual(b"avatar image", r.read())
            with self.assertRaises(ValueError):
                blobs.avatar_path("../escape")

        self.run_with_tmpdir(scenario)

    def test_short_avatar_files_are_not_listed(self):
        def scenario(tmp: Path):
            secret = AttachmentSecret.generate()
            blobs = BlobStore(str(tmp))
            with blobs.avatar_writer("1", secret) as w:
                w.write(b"ok")
            Path(blobs.avatar_path("2")).write_bytes(b"")
            Path(blobs.avatar_path("3")).write_bytes(os.urandom(PART_RANDOM_SIZE - 1))
            with self.assertLogs("keepsake.storage", level="WARNING"):
                self.assertEqual(["1"], [a.recipient_id for a in blobs.avatars()])
            self.assertEqual(1, blobs.avatar_count())

        self.run_with_tmpdir(scenario)

    def test_float_settings_hold_four_byte_precision(self):
        def scenario(tmp: Path):
            store = KeyValueStore.open(str(tmp / "kv.db"))
            try:
                store.put("ratio", 0.1, ValueType.FLOAT)
                narrowed = struct.unpack(">f", struct.pack(">f", 0.1))[0]
                self.assertEqual(narrowed, store.get("ratio"))
                self.assertEqual(ValueType.FLOAT, store.get_type("ratio"))
                store.put("half", 0.5)
                self.assertEqual(0.5, store.get("half"))
                self.assertEqual(ValueType.FLOAT, store.get_type("half"))
            finally:
                store.close()

        self.run_with_tmpdir(scenario)

    def test_new_blob_files_are_unique(self):
        def scenario(tmp: Path):
            blobs = BlobStore(str(tmp))
            a, b = blobs.new_attachment_file(), blobs.new_attachment_file()
            self.assertNotEqual(a, b)
            self.assertTrue(a.startswith(blobs.parts_dir))
            self.assertTrue(blobs.new_sticker_file().startswith(blobs.stickers_dir))
            self.assertTrue(BlobStore.delete(a))
            self.assertFalse(BlobStore.delete(a))

        self.run_with_tmpdir(scenario)

    def test_preferences(self):
        def scenario(tmp: Path):
            prefs = PreferenceStore(str(tmp / "shared_prefs"))
            prefs.put("app", "flag", True)
            prefs.put("app", "name", "x")
            prefs.put("app", "set", {"b", "a"})
            self.assertTrue(prefs.contains("app", "flag"))
            self.assertFalse(prefs.contains("other", "flag"))
            self.assertIs(True, prefs.get("app", "flag"))
            self.assertEqual(frozenset({"a", "b"}), prefs.get("app", "set"))
            prefs.remove("app", "name")
            self.assertEqual("dflt", prefs.get("app", "name", "dflt"))
            with self.assertRaises(ValueError):
                prefs.put("../evil", "k", "v")

        self.run_with_tmpdir(scenario)


if __name__ == "__main__":
    unittest.main()
