from __future__ import annotations

import sqlite3
import struct
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

from .errors import UnknownTypeError
from .frames import ValueType


_SCHEMA = "CREATE TABLE IF NOT EXISTS key_value (key TEXT PRIMARY KEY, value BLOB, type INTEGER NOT NULL)"

# FLOAT settings travel as 4-byte floats; the store keeps only what that carries
_FLOAT32 = struct.Struct(">f")


def value_type_of(value: Any) -> ValueType:
    """Infer the storage type of a Python value; ints default to LONG."""
    if isinstance(value, bool):
        return ValueType.BOOLEAN
    if isinstance(value, (bytes, bytearray, memoryview)):
        return ValueType.BLOB
    if isinstance(value, float):
        return ValueType.FLOAT
    if isinstance(value, int):
        return ValueType.LONG
    if isinstance(value, str):
        return ValueType.STRING
    raise UnknownTypeError(f"Unknown type: {type(value).__name__}")


class KeyValueStore:
    """Typed key/value settings kept in their own SQLite database."""

    def __init__(self, connection: sqlite3.Connection):
        self.connection = connection
        self.connection.execute(_SCHEMA)
        if self.connection.in_transaction:
            self.connection.commit()

    @classmethod
    def open(cls, path: str) -> "KeyValueStore":
        return cls(sqlite3.connect(path))

    def close(self) -> None:
        self.connection.close()

    def contains(self, key: str) -> bool:
        return self.connection.execute("SELECT 1 FROM key_value WHERE key = ?", (key,)).fetchone() is not None

    def get_type(self, key: str) -> Optional[ValueType]:
        row = self.connection.execute("SELECT type FROM key_value WHERE key = ?", (key,)).fetchone()
        return ValueType(row[0]) if row else None

    def get(self, key: str, default: Any = None) -> Any:
        row = self.connection.execute("SELECT value, type FROM key_value WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        value, kind = row
        if value is None:
            return None
        kind = ValueType(kind)
        if kind == ValueType.BOOLEAN:
            return bool(value)
        if kind == ValueType.FLOAT:
            return float(value)
        if kind in (ValueType.INTEGER, ValueType.LONG):
            return int(value)
        if kind == ValueType.BLOB:
            return bytes(value)
        return str(value)

    def put(self, key: str, value: Any, kind: Optional[ValueType] = None) -> None:
        if kind is None:
            kind = value_type_of(value)
        if kind == ValueType.BOOLEAN:
            stored = 1 if value else 0
        elif kind == ValueType.FLOAT and value is not None:
            stored = _FLOAT32.unpack(_FLOAT32.pack(float(value)))[0]
        elif kind == ValueType.BLOB and value is not None:
            stored = bytes(value)
        else:
            stored = value
        with self._autocommit():
            self.connection.execute(
                "INSERT OR REPLACE INTO key_value (key, value, type) VALUES (?, ?, ?)", (key, stored, int(kind))
            )

    def remove(self, key: str) -> None:
        with self._autocommit():
            self.connection.execute("DELETE FROM key_value WHERE key = ?", (key,))

    def keys(self) -> List[str]:
        return [r[0] for r in self.connection.execute("SELECT key FROM key_value ORDER BY key")]

    def _autocommit(self):
        return _write_scope(self.connection)


@contextmanager
def _write_scope(connection: sqlite3.Connection) -> Iterator[None]:
    # Inside an explicit transaction (e.g. a running import) writes join it;
    # otherwise each write commits on its own.
    joined = connection.in_transaction
    try:
        yield
    except BaseException:
        if not joined and connection.in_transaction:
            connection.rollback()
        raise
    if not joined and connection.in_transaction:
        connection.commit()
