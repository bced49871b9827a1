from __future__ import annotations

"""
Minimal TLV encoder/decoder for Keepsake backup frames.

Encoding
- TLV: varint(tag) || varint(length) || payload
- Unsigned integers: LEB128 varint
- Signed integers: zigzag, then LEB128 varint
- Doubles: 8-byte big-endian IEEE 754; floats: 4-byte big-endian
- Bytes: raw payload (length provided by TLV len)
- Strings: UTF-8 bytes (length provided by TLV len)

A serialized frame is exactly one top-level TLV; its tag selects the variant.

Top-level frame tags
- 1: header (container)
- 2: statement (container)
- 3: preference (container)
- 4: attachment (container)
- 5: version (container)
- 6: end (empty)
- 7: avatar (container)
- 8: sticker (container)
- 9: key_value (container)

Header (tag=1)
- 1: iv (bytes[16])
- 2: salt (bytes[32])

Statement (tag=2)
- 1: text (utf8)
- 2: parameter (container), repeats, in bind order

Parameter (within statement; tag=2), exactly one of
- 1: string (utf8)
- 2: integer (zigzag varint)
- 3: double (8 bytes)
- 4: blob (bytes)
- 5: null (empty)

Preference (tag=3)
- 1: file (utf8)
- 2: key (utf8)
- 3: string value (utf8, optional)
- 4: boolean value (varint 0/1, optional)
- 5: string set member (utf8), may repeat
- 6: is_string_set (varint 0/1)

Attachment (tag=4)
- 1: row_id (zigzag varint)
- 2: attachment_id (zigzag varint)
- 3: length (varint)

Version (tag=5)
- 1: version (zigzag varint)

Avatar (tag=7)
- 1: name (utf8, optional, legacy)
- 2: length (varint)
- 3: recipient_id (utf8, optional)

Sticker (tag=8)
- 1: row_id (zigzag varint)
- 2: length (varint)

KeyValue (tag=9)
- 1: key (utf8)
- 2..7: value, exactly one of blob / boolean / float / integer (int32) /
  long (int64) / string, tags in that order
"""

import struct
from typing import Dict, List, Optional, Tuple

from .errors import UnknownTypeError
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
    ValueType,
    check_sql_parameter,
)


FRAME_HEADER = 1
FRAME_STATEMENT = 2
FRAME_PREFERENCE = 3
FRAME_ATTACHMENT = 4
FRAME_VERSION = 5
FRAME_END = 6
FRAME_AVATAR = 7
FRAME_STICKER = 8
FRAME_KEY_VALUE = 9

_PARAM_STRING = 1
_PARAM_INTEGER = 2
_PARAM_DOUBLE = 3
_PARAM_BLOB = 4
_PARAM_NULL = 5

_KV_TAGS = {
    ValueType.BLOB: 2,
    ValueType.BOOLEAN: 3,
    ValueType.FLOAT: 4,
    ValueType.INTEGER: 5,
    ValueType.LONG: 6,
    ValueType.STRING: 7,
}
_KV_KINDS = {tag: kind for kind, tag in _KV_TAGS.items()}

_DOUBLE = struct.Struct(">d")
_FLOAT = struct.Struct(">f")

_INT32_MIN, _INT32_MAX = -(1 << 31), (1 << 31) - 1
_INT64_MIN, _INT64_MAX = -(1 << 63), (1 << 63) - 1


def _varint_encode(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint: negative not supported")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            break
    return bytes(out)


def _varint_decode(data: bytes, pos: int) -> Tuple[int, int]:
    shift = 0
    result = 0
    while True:
        if pos >= len(data):
            raise ValueError("varint: truncated")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint: too large")


def _zigzag_encode(n: int) -> bytes:
    if not (_INT64_MIN <= n <= _INT64_MAX):
        raise ValueError("integer out of int64 range")
    return _varint_encode((n << 1) ^ (n >> 63) if n < 0 else n << 1)


def _zigzag_decode(payload: bytes) -> int:
    n = _read_varint(payload)
    return (n >> 1) ^ -(n & 1)


def _read_varint(payload: bytes) -> int:
    n, pos = _varint_decode(payload, 0)
    if pos != len(payload):
        raise ValueError("varint: trailing bytes")
    return n


def _tlv(tag: int, payload: bytes) -> bytes:
    return _varint_encode(tag) + _varint_encode(len(payload)) + payload


def _encode_str(s: str) -> bytes:
    return s.encode("utf-8")


def _decode_str(b: bytes) -> str:
    return b.decode("utf-8")


def _iter_tlvs(data: bytes) -> List[Tuple[int, bytes]]:
    items: List[Tuple[int, bytes]] = []
    pos = 0
    n = len(data)
    while pos < n:
        tag, pos = _varint_decode(data, pos)
        ln, pos = _varint_decode(data, pos)
        if ln < 0 or pos + ln > n:
            raise ValueError("TLV length out of range")
        items.append((tag, data[pos : pos + ln]))
        pos += ln
    return items


def _fields(data: bytes) -> Dict[int, bytes]:
    # Last occurrence wins for scalar fields; repeated fields use _iter_tlvs directly
    return {tag: payload for tag, payload in _iter_tlvs(data)}


def _require(fields: Dict[int, bytes], tag: int, what: str) -> bytes:
    if tag not in fields:
        raise ValueError(f"{what}: missing field {tag}")
    return fields[tag]


def _check_range(value: int, lo: int, hi: int, what: str) -> int:
    if not (lo <= value <= hi):
        raise ValueError(f"{what} out of range: {value}")
    return value


# -------- Encoding --------

def _dumps_parameter(value) -> bytes:
    value = check_sql_parameter(value)
    if value is None:
        return _tlv(_PARAM_NULL, b"")
    if isinstance(value, str):
        return _tlv(_PARAM_STRING, _encode_str(value))
    if isinstance(value, float):
        return _tlv(_PARAM_DOUBLE, _DOUBLE.pack(value))
    if isinstance(value, int):
        return _tlv(_PARAM_INTEGER, _zigzag_encode(value))
    return _tlv(_PARAM_BLOB, bytes(value))


def _dumps_preference(pref: SharedPreference) -> bytes:
    out = bytearray()
    out += _tlv(1, _encode_str(pref.file))
    out += _tlv(2, _encode_str(pref.key))
    value = pref.value
    if value is None:
        pass
    elif isinstance(value, bool):
        out += _tlv(4, _varint_encode(1 if value else 0))
    elif isinstance(value, str):
        out += _tlv(3, _encode_str(value))
    elif isinstance(value, (set, frozenset)):
        for member in sorted(value):
            out += _tlv(5, _encode_str(member))
        out += _tlv(6, _varint_encode(1))
    else:
        raise UnknownTypeError(f"Unknown preference type: {type(value).__name__}")
    return bytes(out)


def _dumps_key_value(kv: KeyValue) -> bytes:
    out = bytearray(_tlv(1, _encode_str(kv.key)))
    tag = _KV_TAGS[kv.kind]
    if kv.kind == ValueType.BLOB:
        payload = bytes(kv.value)
    elif kv.kind == ValueType.BOOLEAN:
        payload = _varint_encode(1 if kv.value else 0)
    elif kv.kind == ValueType.FLOAT:
        payload = _FLOAT.pack(float(kv.value))
    elif kv.kind == ValueType.INTEGER:
        payload = _zigzag_encode(_check_range(int(kv.value), _INT32_MIN, _INT32_MAX, "integer value"))
    elif kv.kind == ValueType.LONG:
        payload = _zigzag_encode(int(kv.value))
    else:
        payload = _encode_str(kv.value)
    out += _tlv(tag, payload)
    return bytes(out)


def dumps_frame(frame: BackupFrame) -> bytes:
    if isinstance(frame, Header):
        return _tlv(FRAME_HEADER, _tlv(1, bytes(frame.iv)) + _tlv(2, bytes(frame.salt)))
    if isinstance(frame, DatabaseVersion):
        version = _check_range(frame.version, _INT32_MIN, _INT32_MAX, "database version")
        return _tlv(FRAME_VERSION, _tlv(1, _zigzag_encode(version)))
    if isinstance(frame, SqlStatement):
        payload = bytearray(_tlv(1, _encode_str(frame.text)))
        for param in frame.parameters:
            payload += _tlv(2, _dumps_parameter(param))
        return _tlv(FRAME_STATEMENT, bytes(payload))
    if isinstance(frame, SharedPreference):
        return _tlv(FRAME_PREFERENCE, _dumps_preference(frame))
    if isinstance(frame, KeyValue):
        return _tlv(FRAME_KEY_VALUE, _dumps_key_value(frame))
    if isinstance(frame, Attachment):
        payload = _tlv(1, _zigzag_encode(frame.row_id))
        payload += _tlv(2, _zigzag_encode(frame.attachment_id))
        payload += _tlv(3, _varint_encode(frame.length))
        return _tlv(FRAME_ATTACHMENT, payload)
    if isinstance(frame, Sticker):
        payload = _tlv(1, _zigzag_encode(frame.row_id)) + _tlv(2, _varint_encode(frame.length))
        return _tlv(FRAME_STICKER, payload)
    if isinstance(frame, Avatar):
        payload = bytearray()
        if frame.name is not None:
            payload += _tlv(1, _encode_str(frame.name))
        payload += _tlv(2, _varint_encode(frame.length))
        if frame.recipient_id is not None:
            payload += _tlv(3, _encode_str(frame.recipient_id))
        return _tlv(FRAME_AVATAR, bytes(payload))
    if isinstance(frame, End):
        return _tlv(FRAME_END, b"")
    raise UnknownTypeError(f"Unknown frame type: {type(frame).__name__}")


# -------- Decoding --------

def _loads_parameter(data: bytes):
    items = _iter_tlvs(data)
    if len(items) != 1:
        raise ValueError("parameter must carry exactly one value")
    tag, payload = items[0]
    if tag == _PARAM_STRING:
        return _decode_str(payload)
    if tag == _PARAM_INTEGER:
        return _zigzag_decode(payload)
    if tag == _PARAM_DOUBLE:
        if len(payload) != _DOUBLE.size:
            raise ValueError("double parameter must be 8 bytes")
        return _DOUBLE.unpack(payload)[0]
    if tag == _PARAM_BLOB:
        return bytes(payload)
    if tag == _PARAM_NULL:
        return None
    raise ValueError(f"unknown parameter tag {tag}")


def _loads_statement(data: bytes) -> SqlStatement:
    text: Optional[str] = None
    params = []
    for tag, payload in _iter_tlvs(data):
        if tag == 1:
            text = _decode_str(payload)
        elif tag == 2:
            params.append(_loads_parameter(payload))
    if text is None:
        raise ValueError("statement: missing text")
    return SqlStatement(text=text, parameters=tuple(params))


def _loads_preference(data: bytes) -> SharedPreference:
    file = key = None
    value = None
    members = []
    is_set = False
    for tag, payload in _iter_tlvs(data):
        if tag == 1:
            file = _decode_str(payload)
        elif tag == 2:
            key = _decode_str(payload)
        elif tag == 3:
            value = _decode_str(payload)
        elif tag == 4:
            value = bool(_read_varint(payload))
        elif tag == 5:
            members.append(_decode_str(payload))
        elif tag == 6:
            is_set = bool(_read_varint(payload))
    if file is None or key is None:
        raise ValueError("preference: missing file or key")
    if value is None and is_set:
        value = frozenset(members)
    return SharedPreference(file=file, key=key, value=value)


def _loads_key_value(data: bytes) -> KeyValue:
    fields = _fields(data)
    key = _decode_str(_require(fields, 1, "key_value"))
    present = [tag for tag in _KV_KINDS if tag in fields]
    if len(present) != 1:
        raise ValueError("key_value must carry exactly one value")
    kind = _KV_KINDS[present[0]]
    payload = fields[present[0]]
    if kind == ValueType.BLOB:
        value = bytes(payload)
    elif kind == ValueType.BOOLEAN:
        value = bool(_read_varint(payload))
    elif kind == ValueType.FLOAT:
        if len(payload) != _FLOAT.size:
            raise ValueError("float value must be 4 bytes")
        value = _FLOAT.unpack(payload)[0]
    elif kind == ValueType.INTEGER:
        value = _check_range(_zigzag_decode(payload), _INT32_MIN, _INT32_MAX, "integer value")
    elif kind == ValueType.LONG:
        value = _zigzag_decode(payload)
    else:
        value = _decode_str(payload)
    return KeyValue(key=key, value=value, kind=kind)


def _loads_length(fields: Dict[int, bytes], tag: int, what: str) -> int:
    return _check_range(_read_varint(_require(fields, tag, what)), 0, _INT32_MAX, f"{what} length")


def loads_frame(data: bytes) -> Optional[BackupFrame]:
    """Decode one serialized frame.

    Returns None when the frame's only variant is unknown to this version, so
    readers can skip frames written by newer producers.
    """
    items = _iter_tlvs(data)
    if len(items) != 1:
        raise ValueError(f"frame must carry exactly one variant, found {len(items)}")
    tag, payload = items[0]
    if tag == FRAME_HEADER:
        fields = _fields(payload)
        return Header(iv=bytes(_require(fields, 1, "header")), salt=bytes(_require(fields, 2, "header")))
    if tag == FRAME_VERSION:
        fields = _fields(payload)
        version = _zigzag_decode(_require(fields, 1, "version"))
        return DatabaseVersion(version=_check_range(version, _INT32_MIN, _INT32_MAX, "database version"))
    if tag == FRAME_STATEMENT:
        return _loads_statement(payload)
    if tag == FRAME_PREFERENCE:
        return _loads_preference(payload)
    if tag == FRAME_KEY_VALUE:
        return _loads_key_value(payload)
    if tag == FRAME_ATTACHMENT:
        fields = _fields(payload)
        return Attachment(
            row_id=_zigzag_decode(_require(fields, 1, "attachment")),
            attachment_id=_zigzag_decode(_require(fields, 2, "attachment")),
            length=_loads_length(fields, 3, "attachment"),
        )
    if tag == FRAME_STICKER:
        fields = _fields(payload)
        return Sticker(row_id=_zigzag_decode(_require(fields, 1, "sticker")), length=_loads_length(fields, 2, "sticker"))
    if tag == FRAME_AVATAR:
        fields = _fields(payload)
        return Avatar(
            recipient_id=_decode_str(fields[3]) if 3 in fields else None,
            length=_loads_length(fields, 2, "avatar"),
            name=_decode_str(fields[1]) if 1 in fields else None,
        )
    if tag == FRAME_END:
        return End()
    return None
