"""
Full backup export.

One sequential pass over a profile that produces, in order: the database
version, the schema, the qualifying rows of every table (each attachment or
sticker row immediately followed by its blob), allow-listed preferences,
allow-listed key/values, avatars and a closing End frame.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

from .constants import (
    DATABASE_VERSION_RECORD_COUNT,
    FINAL_MESSAGE_COUNT,
    STREAM_BUFFER_SIZE,
    TABLE_RECORD_COUNT_MULTIPLIER,
)
from .errors import AuthenticationError, CancellationError, StructuralIOError
from .events import NEVER_CANCELED, BackupEvent, CancellationSignal, EventBus, EventType
from .frames import KeyValue, SharedPreference, SqlStatement, ValueType, check_sql_parameter
from .framing import BackupFrameWriter
from .kdf import DEFAULT_KDF
from .keyvalue import KeyValueStore
from .parts import AttachmentSecret, ModernPartDecryptor, select_part_decryptor
from .policy import DEFAULT_POLICY, BackupPolicy, MessageTable, ReferencingTable
from .preferences import PreferenceStore
from .sqlutil import count as _count, get_version, quote_identifier as _q, schema_objects, table_exists
from .storage import BlobStore


logger = logging.getLogger(__name__)

# Substituted for null non-blob/string key/values, as the settings store reads them
_KEY_VALUE_DEFAULTS = {
    ValueType.BOOLEAN: False,
    ValueType.FLOAT: 0.0,
    ValueType.INTEGER: 0,
    ValueType.LONG: 0,
}


@dataclass
class BackupContext:
    """Everything one export or import operates on."""

    database: sqlite3.Connection
    key_values: KeyValueStore
    preferences: PreferenceStore
    blobs: BlobStore
    attachment_secret: AttachmentSecret
    events: EventBus = field(default_factory=EventBus)
    policy: BackupPolicy = DEFAULT_POLICY
    kdf: Any = DEFAULT_KDF


class _Stopwatch:
    def __init__(self, title: str):
        self.title = title
        self._start = time.monotonic()
        self._splits: List[Tuple[str, float]] = []

    def split(self, label: str) -> None:
        self._splits.append((label, time.monotonic()))

    def stop(self) -> None:
        last = self._start
        parts = []
        for label, at in self._splits:
            parts.append(f"{label}: {(at - last) * 1000:.0f}ms")
            last = at
        logger.info("[%s] %s (total %.0fms)", self.title, ", ".join(parts), (last - self._start) * 1000)


def _non_expiring_clause(table: MessageTable, alias: str) -> str:
    clause = f"COALESCE({alias}.{_q(table.expires_column)}, 0) <= 0"
    if table.view_once_column:
        clause += f" AND COALESCE({alias}.{_q(table.view_once_column)}, 0) <= 0"
    return clause


class BackupExporter:
    def __init__(
        self,
        context: BackupContext,
        writer: BackupFrameWriter,
        cancellation_signal: CancellationSignal = NEVER_CANCELED,
        *,
        report_progress: bool = True,
    ):
        self.context = context
        self.writer = writer
        self.cancellation_signal = cancellation_signal
        self.report_progress = report_progress
        self.count = 0
        self.estimated_total = 0

    # -------- Bookkeeping --------

    def _progress(self) -> None:
        self.count += 1
        if self.report_progress:
            self.context.events.post(BackupEvent(EventType.PROGRESS, self.count, self.estimated_total))

    def _throw_if_canceled(self) -> None:
        if self.cancellation_signal.is_canceled():
            raise CancellationError("Backup canceled")

    # -------- Row eligibility --------

    def _owner_clause(self, ref: ReferencingTable, owner_name: Optional[str]) -> str:
        owner = self.context.policy.message_table(owner_name) if owner_name else None
        if owner is None or not table_exists(self.context.database, owner.name):
            return "0"
        return (
            f"EXISTS (SELECT 1 FROM {_q(owner.name)} AS m "
            f"WHERE m.{_q(owner.id_column)} = t.{_q(ref.message_column)} AND {_non_expiring_clause(owner, 'm')})"
        )

    def _row_filter(self, table: str) -> Optional[str]:
        """SQL condition over alias ``t`` selecting exportable rows, or None when no row is."""
        policy = self.context.policy
        message = policy.message_table(table)
        if message is not None:
            return _non_expiring_clause(message, "t")
        ref = policy.referencing_table(table)
        if ref is not None:
            clause = self._owner_clause(ref, ref.owner)
            if ref.selector_column:
                selector = f"t.{_q(ref.selector_column)}"
                alternate = self._owner_clause(ref, ref.alternate_owner)
                clause = f"(({selector} != 0 AND {clause}) OR (COALESCE({selector}, 0) = 0 AND {alternate}))"
            return clause
        if policy.sticker_table is not None and table == policy.sticker_table.name:
            return "1"
        if policy.attachment_table is not None and table == policy.attachment_table.name:
            return "1"
        if policy.is_denylisted(table):
            return None
        return "1"

    # -------- Phases --------

    def run(self) -> BackupEvent:
        db = self.context.database
        self.writer.write_database_version(get_version(db))
        self.count += DATABASE_VERSION_RECORD_COUNT

        tables = self._export_schema()
        self.count += len(tables) * TABLE_RECORD_COUNT_MULTIPLIER

        self.estimated_total = self._calculate_count(tables)

        stopwatch = _Stopwatch("Backup")
        for table in tables:
            self._throw_if_canceled()
            self._export_table(table)
            stopwatch.split("table::" + table)

        self._export_preferences()
        stopwatch.split("prefs")

        self._export_key_values()
        stopwatch.split("key_values")

        self._export_avatars()
        stopwatch.split("avatars")
        stopwatch.stop()

        self.writer.write_end()
        self.count += FINAL_MESSAGE_COUNT
        return BackupEvent(EventType.FINISHED, self.count, self.estimated_total)

    def _export_schema(self) -> List[str]:
        tables: List[str] = []
        for name, kind, sql in schema_objects(self.context.database):
            if sql is None:
                continue
            if self.context.policy.is_fts_shadow_table(name):
                continue
            if kind == "table":
                tables.append(name)
            self.writer.write_statement(SqlStatement(sql))
        return tables

    def _calculate_count(self, tables: List[str]) -> int:
        ctx = self.context
        total = DATABASE_VERSION_RECORD_COUNT + TABLE_RECORD_COUNT_MULTIPLIER * len(tables)
        for table in tables:
            clause = self._row_filter(table)
            if clause is not None:
                total += _count(ctx.database, f"SELECT COUNT(*) FROM {_q(table)} AS t WHERE {clause}")
        total += sum(1 for file, key in ctx.policy.preferences if ctx.preferences.contains(file, key))
        total += sum(1 for key in ctx.policy.key_values if ctx.key_values.contains(key))
        total += ctx.blobs.avatar_count()
        return total + FINAL_MESSAGE_COUNT

    def _export_table(self, table: str) -> None:
        clause = self._row_filter(table)
        if clause is None:
            return
        policy = self.context.policy
        is_attachment = policy.attachment_table is not None and table == policy.attachment_table.name
        is_sticker = policy.sticker_table is not None and table == policy.sticker_table.name

        cursor = self.context.database.execute(f"SELECT t.* FROM {_q(table)} AS t WHERE {clause}")
        columns = [d[0] for d in cursor.description]
        template = f"INSERT INTO {_q(table)} VALUES ({','.join('?' * len(columns))})"
        for row in cursor:
            self._throw_if_canceled()
            parameters = tuple(check_sql_parameter(value) for value in row)
            self._progress()
            self.writer.write_statement(SqlStatement(template, parameters))
            if is_attachment:
                self._export_attachment(dict(zip(columns, row)))
            elif is_sticker:
                self._export_sticker(dict(zip(columns, row)))

    def _export_attachment(self, row: Dict[str, Any]) -> None:
        layout = self.context.policy.attachment_table
        row_id = row[layout.row_id_column]
        unique_id = row[layout.unique_id_column]
        size = row.get(layout.size_column) or 0
        data = row.get(layout.data_column)
        decryptor = select_part_decryptor(self.context.attachment_secret, row.get(layout.random_column))

        if data:
            file_length = _file_length(data)
            if size <= 0 or file_length != size:
                db_length = size
                size = self._calculate_stream_length(decryptor, data)
                logger.warning(
                    "Needed size calculation! Manual: %d File: %d DB: %d ID: %s/%s",
                    size, file_length, db_length, row_id, unique_id,
                )

        self._progress()
        if data and size > 0:
            try:
                with decryptor.open(data) as source:
                    self.writer.write_attachment(row_id, unique_id, source, size)
            except FileNotFoundError as exc:
                logger.warning("Missing attachment: %s", exc)

    def _export_sticker(self, row: Dict[str, Any]) -> None:
        layout = self.context.policy.sticker_table
        row_id = row[layout.row_id_column]
        size = row.get(layout.length_column) or 0
        path = row.get(layout.path_column)
        if not path or size <= 0:
            return
        self._progress()
        decryptor = ModernPartDecryptor(self.context.attachment_secret, row.get(layout.random_column) or b"")
        try:
            with decryptor.open(path) as source:
                self.writer.write_sticker(row_id, source, size)
        except FileNotFoundError as exc:
            logger.warning("Missing sticker: %s", exc)

    @staticmethod
    def _calculate_stream_length(decryptor, path: str) -> int:
        # Very old rows recorded sizes that no longer match the stored file
        total = 0
        try:
            with decryptor.open(path) as source:
                while True:
                    chunk = source.read(STREAM_BUFFER_SIZE)
                    if not chunk:
                        break
                    total += len(chunk)
        except FileNotFoundError as exc:
            logger.warning("Missing attachment: %s", exc)
            return 0
        except (OSError, StructuralIOError, AuthenticationError):
            logger.warning("Failed to determine stream length for %s", path, exc_info=True)
            return 0
        return total

    def _export_preferences(self) -> None:
        ctx = self.context
        for file, key in ctx.policy.preferences:
            self._throw_if_canceled()
            if not ctx.preferences.contains(file, key):
                continue
            self._progress()
            self.writer.write_preference(SharedPreference(file=file, key=key, value=ctx.preferences.get(file, key)))

    def _export_key_values(self) -> None:
        store = self.context.key_values
        for key in self.context.policy.key_values:
            self._throw_if_canceled()
            if not store.contains(key):
                continue
            kind = store.get_type(key)
            value = store.get(key)
            if value is None:
                if kind in (ValueType.BLOB, ValueType.STRING):
                    logger.warning("Skipping storing null %s for key: %s", kind.name.lower(), key)
                    continue
                value = _KEY_VALUE_DEFAULTS[kind]
            self._progress()
            self.writer.write_key_value(KeyValue(key=key, value=value, kind=kind))

    def _export_avatars(self) -> None:
        ctx = self.context
        for avatar in ctx.blobs.avatars():
            self._throw_if_canceled()
            self._progress()
            with ctx.blobs.open_avatar(avatar, ctx.attachment_secret) as source:
                self.writer.write_avatar(avatar.recipient_id, source, avatar.length)


def _file_length(path: str) -> int:
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


def export_to_stream(
    context: BackupContext,
    stream: BinaryIO,
    passphrase: str,
    cancellation_signal: CancellationSignal = NEVER_CANCELED,
) -> BackupEvent:
    """Export into a caller-owned stream; the stream is flushed, not closed."""
    writer = BackupFrameWriter(stream, passphrase, context.kdf, close_output=False)
    try:
        return BackupExporter(context, writer, cancellation_signal).run()
    finally:
        writer.close()


def export(
    context: BackupContext,
    output_path: str,
    passphrase: str,
    cancellation_signal: CancellationSignal = NEVER_CANCELED,
) -> BackupEvent:
    """Export to ``output_path`` and return the terminal FINISHED event.

    On failure the partially written file is left in place; discarding it is
    up to the caller.
    """
    with open(output_path, "wb") as fh:
        return export_to_stream(context, fh, passphrase, cancellation_signal)


def transfer(context: BackupContext, stream: BinaryIO, passphrase: str) -> BackupEvent:
    """Synchronous export without incremental progress; posts one FINISHED event."""
    writer = BackupFrameWriter(stream, passphrase, context.kdf, close_output=False)
    try:
        event = BackupExporter(context, writer, NEVER_CANCELED, report_progress=False).run()
    finally:
        writer.close()
    context.events.post(event)
    return event
