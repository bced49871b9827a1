from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import FrozenSet, Optional, Tuple, Union

from .errors import UnknownTypeError


# A column value snapshot. SQLite is dynamically typed per cell, so the Python
# type of each value is its tag: str, float, int (int64), bytes or None.
SqlParameter = Union[str, float, int, bytes, None]

PreferenceValue = Union[str, bool, FrozenSet[str], None]


class ValueType(IntEnum):
    BLOB = 1
    BOOLEAN = 2
    FLOAT = 3
    INTEGER = 4
    LONG = 5
    STRING = 6


_VALUE_PYTYPES = {
    ValueType.BLOB: (bytes,),
    ValueType.BOOLEAN: (bool,),
    ValueType.FLOAT: (float, int),
    ValueType.INTEGER: (int,),
    ValueType.LONG: (int,),
    ValueType.STRING: (str,),
}


def check_sql_parameter(value) -> SqlParameter:
    # bool is an int subclass but has no storage class of its own
    if value is None or isinstance(value, (str, float, bytes)):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    raise UnknownTypeError(f"unknown type? {type(value).__name__}")


@dataclass(frozen=True)
class Header:
    iv: bytes
    salt: bytes


@dataclass(frozen=True)
class DatabaseVersion:
    version: int


@dataclass(frozen=True)
class SqlStatement:
    text: str
    parameters: Tuple[SqlParameter, ...] = ()


@dataclass(frozen=True)
class SharedPreference:
    file: str
    key: str
    value: PreferenceValue = None


@dataclass(frozen=True)
class KeyValue:
    key: str
    value: Union[bytes, bool, float, int, str]
    kind: ValueType

    def __post_init__(self):
        expected = _VALUE_PYTYPES.get(self.kind)
        if expected is None:
            raise UnknownTypeError(f"Unknown type: {self.kind!r}")
        if not isinstance(self.value, expected) or (self.kind != ValueType.BOOLEAN and isinstance(self.value, bool)):
            raise UnknownTypeError(f"value for {self.key!r} is not a {self.kind.name}")


@dataclass(frozen=True)
class Attachment:
    row_id: int
    attachment_id: int
    length: int


@dataclass(frozen=True)
class Sticker:
    row_id: int
    length: int


@dataclass(frozen=True)
class Avatar:
    recipient_id: Optional[str]
    length: int
    name: Optional[str] = field(default=None)


@dataclass(frozen=True)
class End:
    pass


BackupFrame = Union[
    Header,
    DatabaseVersion,
    SqlStatement,
    SharedPreference,
    KeyValue,
    Attachment,
    Sticker,
    Avatar,
    End,
]

# Frames announcing a streamed payload that immediately follows them
STREAMED_FRAMES = (Attachment, Sticker, Avatar)
