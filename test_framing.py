from __future__ import annotations

import io
import os
import struct
import unittest

from keepsake import tlv
from keepsake.constants import MAC_SIZE
from keepsake.errors import AuthenticationError, InvalidBackupStreamError, StructuralIOError
from keepsake.frames import (
    Attachment,
    Avatar,
    DatabaseVersion,
    End,
    Header,
    SharedPreference,
    SqlStatement,
    Sticker,
)
from keepsake.framing import BackupFrameReader, BackupFrameWriter
from keepsake.kdf import Argon2Kdf, IteratedDigestKdf, normalize_passphrase


FAST_KDF = Argon2Kdf(time_cost=1, memory_cost_kib=8, parallelism=1)
PASSPHRASE = "correct horse battery staple"


def _write_sample(kdf=FAST_KDF, passphrase: str = PASSPHRASE):
    out = io.BytesIO()
    writer = BackupFrameWriter(out, passphrase, kdf, close_output=False)
    writer.write_database_version(7)
    writer.write_statement(SqlStatement("CREATE TABLE t (a, b)"))
    writer.write_statement(SqlStatement('INSERT INTO "t" VALUES (?,?)', (1, "x")))
    writer.write_attachment(1, 99, io.BytesIO(b"attachment data"), 15)
    writer.write_preference(SharedPreference("prefs", "k", "v"))
    writer.write_sticker(2, io.BytesIO(b"sticker"), 7)
    writer.write_avatar("5", io.BytesIO(b""), 0)
    writer.write_end()
    writer.close()
    return out.getvalue(), writer


class FramingTests(unittest.TestCase):
    def test_roundtrip(self):
        data, _ = _write_sample()
        reader = BackupFrameReader(io.BytesIO(data), PASSPHRASE, FAST_KDF)
        self.assertEqual(DatabaseVersion(7), reader.read_frame())
        self.assertEqual(SqlStatement("CREATE TABLE t (a, b)"), reader.read_frame())
        self.assertEqual(SqlStatement('INSERT INTO "t" VALUES (?,?)', (1, "x")), reader.read_frame())
        self.assertEqual(Attachment(1, 99, 15), reader.read_frame())
        sink = io.BytesIO()
        reader.read_stream_to(sink, 15)
        self.assertEqual(b"attachment data", sink.getvalue())
        self.assertEqual(SharedPreference("prefs", "k", "v"), reader.read_frame())
        self.assertEqual(Sticker(2, 7), reader.read_frame())
        reader.skip_stream(7)
        self.assertEqual(Avatar("5", 0), reader.read_frame())
        reader.skip_stream(0)
        self.assertEqual(End(), reader.read_frame())

    def test_header_is_cleartext_and_length_prefixed(self):
        data, writer = _write_sample()
        (length,) = struct.unpack(">I", data[:4])
        header = tlv.loads_frame(data[4 : 4 + length])
        self.assertIsInstance(header, Header)
        self.assertEqual(16, len(header.iv))
        self.assertEqual(32, len(header.salt))
        # Next frame: [len = ciphertext + MAC][body]
        (frame_len,) = struct.unpack(">I", data[4 + length : 8 + length])
        plaintext = tlv.dumps_frame(DatabaseVersion(7))
        self.assertEqual(len(plaintext) + MAC_SIZE, frame_len)

    def test_writer_counter_is_monotonic(self):
        data, writer = _write_sample()
        reader = BackupFrameReader(io.BytesIO(data), PASSPHRASE, FAST_KDF)
        start = reader.session.counter
        # 8 frames and 3 streamed payloads
        self.assertEqual((start + 11) & 0xFFFFFFFF, writer.session.counter)

    def test_reader_counter_tracks_writer(self):
        data, writer = _write_sample()
        reader = BackupFrameReader(io.BytesIO(data), PASSPHRASE, FAST_KDF)
        expected = reader.session.counter
        while True:
            frame = reader.read_frame()
            expected = (expected + 1) & 0xFFFFFFFF
            self.assertEqual(expected, reader.session.counter)
            if isinstance(frame, End):
                break
            if isinstance(frame, (Attachment, Sticker, Avatar)):
                reader.skip_stream(frame.length)
                expected = (expected + 1) & 0xFFFFFFFF
        self.assertEqual(writer.session.counter, reader.session.counter)

    def test_wrong_passphrase_fails_authentication(self):
        data, _ = _write_sample()
        reader = BackupFrameReader(io.BytesIO(data), "not the passphrase", FAST_KDF)
        with self.assertRaises(AuthenticationError):
            reader.read_frame()

    def test_passphrase_spacing_is_ignored(self):
        data, _ = _write_sample()
        reader = BackupFrameReader(io.BytesIO(data), PASSPHRASE.replace(" ", ""), FAST_KDF)
        self.assertEqual(DatabaseVersion(7), reader.read_frame())
        self.assertEqual(b"abcd", normalize_passphrase("ab cd"))

    def test_bad_header_length(self):
        for length in (0, 1025):
            with self.subTest(length=length):
                with self.assertRaises(StructuralIOError):
                    BackupFrameReader(io.BytesIO(struct.pack(">I", length) + bytes(2000)), PASSPHRASE, FAST_KDF)

    def test_header_must_be_header_frame(self):
        body = tlv.dumps_frame(End())
        with self.assertRaises(StructuralIOError):
            BackupFrameReader(io.BytesIO(struct.pack(">I", len(body)) + body), PASSPHRASE, FAST_KDF)

    def test_header_with_wrong_iv_size(self):
        body = tlv.dumps_frame(Header(iv=os.urandom(12), salt=os.urandom(32)))
        with self.assertRaises(StructuralIOError):
            BackupFrameReader(io.BytesIO(struct.pack(">I", len(body)) + body), PASSPHRASE, FAST_KDF)

    def test_truncated_stream(self):
        data, _ = _write_sample()
        reader = BackupFrameReader(io.BytesIO(data[:-5]), PASSPHRASE, FAST_KDF)
        with self.assertRaises(StructuralIOError):
            while True:
                frame = reader.read_frame()
                if isinstance(frame, (Attachment, Sticker, Avatar)):
                    reader.skip_stream(frame.length)

    def test_frame_length_shorter_than_mac(self):
        data, _ = _write_sample()
        (hlen,) = struct.unpack(">I", data[:4])
        broken = data[: 4 + hlen] + struct.pack(">I", MAC_SIZE - 1) + data[8 + hlen :]
        reader = BackupFrameReader(io.BytesIO(broken), PASSPHRASE, FAST_KDF)
        with self.assertRaises(StructuralIOError):
            reader.read_frame()

    def test_unknown_frame_reads_as_none(self):
        out = io.BytesIO()
        writer = BackupFrameWriter(out, PASSPHRASE, FAST_KDF, close_output=False)
        body = writer.session.encrypt_frame(tlv._tlv(42, b""))
        out.write(struct.pack(">I", len(body)) + body)
        writer.write_end()
        reader = BackupFrameReader(io.BytesIO(out.getvalue()), PASSPHRASE, FAST_KDF)
        self.assertIsNone(reader.read_frame())
        self.assertEqual(End(), reader.read_frame())

    def test_oversized_payload_rejected_before_frame(self):
        out = io.BytesIO()
        writer = BackupFrameWriter(out, PASSPHRASE, FAST_KDF, close_output=False)
        before = len(out.getvalue())
        counter = writer.session.counter
        with self.assertRaises(InvalidBackupStreamError):
            writer.write_attachment(1, 1, io.BytesIO(b""), 1 << 31)
        self.assertEqual(before, len(out.getvalue()))
        self.assertEqual(counter, writer.session.counter)

    def test_close_closes_output_by_default(self):
        out = io.BytesIO()
        with BackupFrameWriter(out, PASSPHRASE, FAST_KDF) as writer:
            writer.write_end()
        self.assertTrue(out.closed)

    def test_legacy_digest_kdf(self):
        kdf = IteratedDigestKdf(rounds=10)
        salt = os.urandom(32)
        self.assertEqual(32, len(kdf.derive(PASSPHRASE, salt)))
        self.assertEqual(kdf.derive(PASSPHRASE, salt), kdf.derive(PASSPHRASE.replace(" ", ""), salt))
        self.assertNotEqual(kdf.derive(PASSPHRASE, salt), kdf.derive(PASSPHRASE, os.urandom(32)))
        data, _ = _write_sample(kdf=kdf)
        reader = BackupFrameReader(io.BytesIO(data), PASSPHRASE, kdf)
        self.assertEqual(DatabaseVersion(7), reader.read_frame())


if __name__ == "__main__":
    unittest.main()
