from __future__ import annotations

import base64
import binascii
import logging
import sqlite3
from typing import BinaryIO, Callable, Dict, List, Optional

from .constants import IMPORT_PROGRESS_INTERVAL
from .errors import BadMacError, DowngradeError, StructuralIOError
from .events import BackupEvent, EventType
from .exporter import BackupContext
from .frames import (
    Attachment,
    Avatar,
    DatabaseVersion,
    End,
    KeyValue,
    SharedPreference,
    SqlStatement,
    Sticker,
    ValueType,
)
from .framing import BackupFrameReader
from .parts import ModernPartWriter
from .sqlutil import (
    exclusive_transaction,
    get_version,
    quote_identifier as _q,
    schema_objects,
    set_version,
    table_exists,
)
from .storage import BlobStore


logger = logging.getLogger(__name__)


class BackupImporter:
    """Applies a backup stream to a profile inside one transaction.

    Existing tables are dropped once the stream's DatabaseVersion has been
    accepted (or before the first other frame when the stream carries none),
    so a rejected downgrade leaves local data untouched.
    """

    def __init__(self, context: BackupContext, reader: BackupFrameReader):
        self.context = context
        self.reader = reader
        self.count = 0
        self._tables_dropped = False
        self._created_files: List[str] = []
        self._handlers: Dict[type, Callable] = {
            DatabaseVersion: self._process_version,
            SqlStatement: self._process_statement,
            SharedPreference: self._process_preference,
            KeyValue: self._process_key_value,
            Attachment: self._process_attachment,
            Sticker: self._process_sticker,
            Avatar: self._process_avatar,
        }

    def run(self) -> BackupEvent:
        ctx = self.context
        try:
            with exclusive_transaction(ctx.database, ctx.key_values.connection):
                while True:
                    frame = self.reader.read_frame()
                    if isinstance(frame, End):
                        break
                    handler = self._handlers.get(type(frame))
                    if handler is None:
                        logger.debug("Skipping frame with no known content: %r", frame)
                        continue
                    if self.count % IMPORT_PROGRESS_INTERVAL == 0:
                        ctx.events.post(BackupEvent(EventType.PROGRESS, self.count, 0))
                    self.count += 1
                    if not isinstance(frame, DatabaseVersion):
                        self._drop_tables_once()
                    handler(frame)
        except BaseException:
            self._discard_created_files()
            raise

        event = BackupEvent(EventType.FINISHED, self.count, 0)
        ctx.events.post(event)
        return event

    def _discard_created_files(self) -> None:
        for path in self._created_files:
            BlobStore.delete(path)
        self._created_files.clear()

    def _execute(self, sql: str, parameters=()) -> None:
        try:
            self.context.database.execute(sql, parameters)
        except sqlite3.Error as exc:
            raise StructuralIOError(f"Failed to apply statement {sql!r}: {exc}") from exc

    def _drop_tables_once(self) -> None:
        if self._tables_dropped:
            return
        self._tables_dropped = True
        for name in self.context.policy.tables_to_drop_first:
            self._execute(f"DROP TABLE IF EXISTS {_q(name)}")
        # Collect first: dropping a virtual table also removes its shadow tables
        existing = [(name, kind) for name, kind, _sql in schema_objects(self.context.database)]
        for name, kind in existing:
            if name.startswith("sqlite_"):
                continue
            if kind == "table":
                logger.info("Dropping table: %s", name)
                self._execute(f"DROP TABLE IF EXISTS {_q(name)}")
            elif kind == "view":
                logger.info("Dropping view: %s", name)
                self._execute(f"DROP VIEW IF EXISTS {_q(name)}")

    # -------- Handlers --------

    def _process_version(self, frame: DatabaseVersion) -> None:
        db = self.context.database
        current = get_version(db)
        if frame.version > current:
            raise DowngradeError(current, frame.version)
        self._drop_tables_once()
        set_version(db, frame.version)

    def _process_statement(self, frame: SqlStatement) -> None:
        if self.context.policy.is_ignored_statement(frame.text):
            logger.info("Ignoring import for statement: %s", frame.text)
            return
        self._execute(frame.text, frame.parameters)

    def _process_preference(self, frame: SharedPreference) -> None:
        ctx = self.context
        if frame.file == ctx.policy.legacy_identity_file:
            # Identity keys moved out of flat preferences; other keys of that file are obsolete
            target = ctx.policy.legacy_identity_target(frame.file, frame.key)
            if target is not None and isinstance(frame.value, str):
                try:
                    key_material = base64.b64decode(frame.value, validate=True)
                except binascii.Error as exc:
                    raise StructuralIOError(f"Malformed legacy identity key {frame.key!r}") from exc
                ctx.key_values.put(target, key_material, ValueType.BLOB)
            return
        if frame.value is None:
            return
        ctx.preferences.put(frame.file, frame.key, frame.value)

    def _process_key_value(self, frame: KeyValue) -> None:
        self.context.key_values.put(frame.key, frame.value, frame.kind)

    def _restore_blob(self, path: str, length: int) -> Optional[bytes]:
        """Re-encrypt the next streamed payload into ``path``; return its nonce, or None on a bad MAC."""
        self._created_files.append(path)
        writer = ModernPartWriter(self.context.attachment_secret, path)
        try:
            with writer:
                self.reader.read_stream_to(writer, length)
        except BadMacError:
            BlobStore.delete(path)
            return None
        return writer.random

    def _process_attachment(self, frame: Attachment) -> None:
        layout = self.context.policy.attachment_table
        if layout is None:
            logger.warning("No attachment table configured; discarding attachment %d", frame.attachment_id)
            self.reader.skip_stream(frame.length)
            return
        path = self.context.blobs.new_attachment_file()
        random = self._restore_blob(path, frame.length)
        if random is None:
            logger.warning("Bad MAC for attachment %d/%d! Can't restore it.", frame.row_id, frame.attachment_id)
            path = None
        self._execute(
            f"UPDATE {_q(layout.name)} SET {_q(layout.data_column)} = ?, {_q(layout.random_column)} = ? "
            f"WHERE {_q(layout.row_id_column)} = ? AND {_q(layout.unique_id_column)} = ?",
            (path, random, frame.row_id, frame.attachment_id),
        )

    def _process_sticker(self, frame: Sticker) -> None:
        layout = self.context.policy.sticker_table
        if layout is None:
            logger.warning("No sticker table configured; discarding sticker %d", frame.row_id)
            self.reader.skip_stream(frame.length)
            return
        path = self.context.blobs.new_sticker_file()
        random = self._restore_blob(path, frame.length)
        if random is None:
            logger.warning("Bad MAC for sticker %d! Can't restore it.", frame.row_id)
            path = None
        self._execute(
            f"UPDATE {_q(layout.name)} SET {_q(layout.path_column)} = ?, {_q(layout.length_column)} = ?, "
            f"{_q(layout.random_column)} = ? WHERE {_q(layout.row_id_column)} = ?",
            (path, frame.length, random, frame.row_id),
        )

    def _process_avatar(self, frame: Avatar) -> None:
        ctx = self.context
        if not frame.recipient_id:
            self._clear_legacy_avatar(frame.name)
            self.reader.skip_stream(frame.length)
            return
        try:
            writer = ctx.blobs.avatar_writer(frame.recipient_id, ctx.attachment_secret)
        except ValueError as exc:
            raise StructuralIOError(str(exc)) from exc
        self._created_files.append(writer.path)
        try:
            with writer:
                self.reader.read_stream_to(writer, frame.length)
        except BadMacError:
            logger.warning("Bad MAC for avatar of %s! Can't restore it.", frame.recipient_id)
            BlobStore.delete(writer.path)

    def _clear_legacy_avatar(self, name: Optional[str]) -> None:
        db = self.context.database
        if name:
            for ref in self.context.policy.legacy_avatar_columns:
                if table_exists(db, ref.table):
                    logger.warning(
                        "Avatar is missing a recipientId. Clearing %s.%s so it can be fetched later.",
                        ref.table, ref.column,
                    )
                    self._execute(
                        f"UPDATE {_q(ref.table)} SET {_q(ref.column)} = NULL WHERE {_q(ref.match_column)} = ?",
                        (name,),
                    )
                    return
        logger.warning("Avatar is missing a recipientId. Skipping avatar restore.")


def import_stream(context: BackupContext, stream: BinaryIO, passphrase: str) -> BackupEvent:
    reader = BackupFrameReader(stream, passphrase, context.kdf)
    return BackupImporter(context, reader).run()


def import_file(context: BackupContext, path: str, passphrase: str) -> BackupEvent:
    """Restore the backup at ``path`` into ``context``, replacing its tables."""
    with open(path, "rb") as fh:
        return import_stream(context, fh, passphrase)
