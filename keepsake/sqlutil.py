from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Iterator, List, Sequence, Tuple


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def table_exists(db: sqlite3.Connection, table: str) -> bool:
    row = db.execute("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)).fetchone()
    return row is not None


def get_version(db: sqlite3.Connection) -> int:
    return int(db.execute("PRAGMA user_version").fetchone()[0])


def set_version(db: sqlite3.Connection, version: int) -> None:
    # PRAGMA arguments cannot be bound
    db.execute(f"PRAGMA user_version = {int(version)}")


def count(db: sqlite3.Connection, query: str, args: Sequence = ()) -> int:
    row = db.execute(query, tuple(args)).fetchone()
    return int(row[0]) if row and row[0] is not None else 0


def schema_objects(db: sqlite3.Connection) -> List[Tuple[str, str, str]]:
    """(name, type, sql) for every schema object, in creation order."""
    return [tuple(r) for r in db.execute("SELECT name, type, sql FROM sqlite_master")]


@contextmanager
def exclusive_transaction(*connections: sqlite3.Connection) -> Iterator[None]:
    """Hold an exclusive transaction on every connection; commit all or roll back all."""
    unique: List[sqlite3.Connection] = []
    for conn in connections:
        if not any(conn is seen for seen in unique):
            unique.append(conn)
    saved = [conn.isolation_level for conn in unique]
    begun: List[sqlite3.Connection] = []
    try:
        for conn in unique:
            if conn.in_transaction:
                conn.commit()
            conn.isolation_level = None
            conn.execute("BEGIN EXCLUSIVE")
            begun.append(conn)
        yield
    except BaseException:
        for conn in reversed(begun):
            if conn.in_transaction:
                conn.execute("ROLLBACK")
        raise
    else:
        for conn in begun:
            conn.execute("COMMIT")
    finally:
        for conn, level in zip(unique, saved):
            conn.isolation_level = level
