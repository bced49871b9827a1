from __future__ import annotations

import os
import sqlite3
from typing import Optional

from .events import EventBus
from .exporter import BackupContext
from .kdf import DEFAULT_KDF
from .keyvalue import KeyValueStore
from .parts import AttachmentSecret
from .policy import DEFAULT_POLICY, BackupPolicy
from .preferences import PreferenceStore
from .storage import BlobStore


APP_DB = "app.db"
KEY_VALUE_DB = "key_value.db"
PREFERENCES_DIR = "shared_prefs"
ATTACHMENT_SECRET_FILE = "attachment_secret.json"


def load_attachment_secret(root: str, *, create: bool = False) -> AttachmentSecret:
    path = os.path.join(root, ATTACHMENT_SECRET_FILE)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return AttachmentSecret.from_json(fh.read())
    except FileNotFoundError:
        if not create:
            raise
    secret = AttachmentSecret.generate()
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(secret.to_json())
    return secret


class Profile:
    """An application data directory: databases, preferences, blobs and the local attachment secret.

    Layout::

        app.db                  relational store (schema version in PRAGMA user_version)
        key_value.db            typed settings
        shared_prefs/           flat preference files
        parts/ stickers/ avatars/
        attachment_secret.json  keys for the encrypted blob files
    """

    def __init__(self, root: str, *, create: bool = False):
        self.root = os.path.abspath(root)
        if create:
            os.makedirs(self.root, exist_ok=True)
        elif not os.path.isfile(os.path.join(self.root, APP_DB)):
            raise FileNotFoundError(f"No profile database at {os.path.join(self.root, APP_DB)}")
        self.attachment_secret = load_attachment_secret(self.root, create=create)
        self.database = sqlite3.connect(os.path.join(self.root, APP_DB))
        self.key_values = KeyValueStore.open(os.path.join(self.root, KEY_VALUE_DB))
        self.preferences = PreferenceStore(os.path.join(self.root, PREFERENCES_DIR))
        self.blobs = BlobStore(self.root)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def context(
        self,
        events: Optional[EventBus] = None,
        policy: BackupPolicy = DEFAULT_POLICY,
        kdf=DEFAULT_KDF,
    ) -> BackupContext:
        return BackupContext(
            database=self.database,
            key_values=self.key_values,
            preferences=self.preferences,
            blobs=self.blobs,
            attachment_secret=self.attachment_secret,
            events=events if events is not None else EventBus(),
            policy=policy,
            kdf=kdf,
        )

    def close(self) -> None:
        self.database.close()
        self.key_values.close()
