from __future__ import annotations

import os
import unittest

from keepsake import tlv
from keepsake.errors import UnknownTypeError
from keepsake.frames import (
    Attachment,
    Avatar,
    DatabaseVersion,
    End,
    Header,
    KeyValue,
    SharedPreference,
    SqlStatement,
    Sticker,
    ValueType,
)


class FrameSerializationTests(unittest.TestCase):
    def test_every_variant_survives(self):
        frames = [
            Header(iv=os.urandom(16), salt=os.urandom(32)),
            DatabaseVersion(version=183),
            SqlStatement(
                text='INSERT INTO "t" VALUES (?,?,?,?,?)',
                parameters=("héllo", -(1 << 62), 2.5, b"\x00\xff", None),
            ),
            SharedPreference(file="prefs", key="flag", value=True),
            SharedPreference(file="prefs", key="name", value="alice"),
            SharedPreference(file="prefs", key="tags", value=frozenset({"b", "a"})),
            SharedPreference(file="prefs", key="empty_set", value=frozenset()),
            KeyValue(key="blob", value=b"\x01\x02", kind=ValueType.BLOB),
            KeyValue(key="int", value=-7, kind=ValueType.INTEGER),
            KeyValue(key="long", value=1 << 40, kind=ValueType.LONG),
            KeyValue(key="float", value=0.5, kind=ValueType.FLOAT),
            KeyValue(key="bool", value=False, kind=ValueType.BOOLEAN),
            KeyValue(key="str", value="", kind=ValueType.STRING),
            Attachment(row_id=12, attachment_id=1700000000000, length=4096),
            Sticker(row_id=3, length=0),
            Avatar(recipient_id="42", length=100),
            Avatar(recipient_id=None, length=5, name="+15550100"),
            End(),
        ]
        for frame in frames:
            with self.subTest(frame=type(frame).__name__):
                self.assertEqual(frame, tlv.loads_frame(tlv.dumps_frame(frame)))

    def test_statement_parameter_types_are_preserved(self):
        frame = tlv.loads_frame(tlv.dumps_frame(SqlStatement("x", (1, 1.0, "1", b"1", None))))
        self.assertEqual([int, float, str, bytes, type(None)], [type(p) for p in frame.parameters])

    def test_unknown_top_level_tag_decodes_to_none(self):
        data = tlv._tlv(99, tlv._tlv(1, b"future field"))
        self.assertIsNone(tlv.loads_frame(data))

    def test_multiple_variants_rejected(self):
        data = tlv.dumps_frame(End()) + tlv.dumps_frame(DatabaseVersion(1))
        with self.assertRaises(ValueError):
            tlv.loads_frame(data)

    def test_empty_frame_rejected(self):
        with self.assertRaises(ValueError):
            tlv.loads_frame(b"")

    def test_truncated_frame_rejected(self):
        data = tlv.dumps_frame(SqlStatement("CREATE TABLE t (a)"))
        with self.assertRaises(ValueError):
            tlv.loads_frame(data[:-3])

    def test_key_value_with_two_values_rejected(self):
        payload = tlv._tlv(1, b"k") + tlv._tlv(3, b"\x01") + tlv._tlv(7, b"x")
        with self.assertRaises(ValueError):
            tlv.loads_frame(tlv._tlv(tlv.FRAME_KEY_VALUE, payload))

    def test_out_of_range_length_rejected(self):
        payload = tlv._tlv(1, tlv._zigzag_encode(1)) + tlv._tlv(2, tlv._varint_encode(1 << 31))
        with self.assertRaises(ValueError):
            tlv.loads_frame(tlv._tlv(tlv.FRAME_STICKER, payload))

    def test_unsupported_parameter_type(self):
        with self.assertRaises(UnknownTypeError):
            tlv.dumps_frame(SqlStatement("x", (object(),)))
        with self.assertRaises(UnknownTypeError):
            tlv.dumps_frame(SqlStatement("x", (True,)))

    def test_unsupported_frame_type(self):
        with self.assertRaises(UnknownTypeError):
            tlv.dumps_frame("not a frame")

    def test_key_value_kind_is_checked(self):
        with self.assertRaises(UnknownTypeError):
            KeyValue(key="k", value="text", kind=ValueType.LONG)
        with self.assertRaises(UnknownTypeError):
            KeyValue(key="k", value=True, kind=ValueType.INTEGER)


if __name__ == "__main__":
    unittest.main()
