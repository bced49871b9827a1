"""
Application schema knowledge consulted by export and import.

A ``BackupPolicy`` names the tables whose rows are filtered (messages that
expire, and the rows that hang off them), the tables that carry encrypted
blobs, what must never leave the device, and which settings travel with a
backup. The empty policy exports every non-internal table unfiltered;
``DEFAULT_POLICY`` describes the messenger database this format was built for.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class MessageTable:
    """Rows qualify when neither the expiry timer nor the view-once marker is set."""

    name: str
    id_column: str = "_id"
    expires_column: str = "expires_in"
    view_once_column: Optional[str] = None


@dataclass(frozen=True)
class ReferencingTable:
    """Rows qualify when the message they point at qualifies.

    With ``selector_column`` set, a non-zero selector means the row points into
    ``owner`` and zero means it points into ``alternate_owner``.
    """

    name: str
    message_column: str
    owner: str
    selector_column: Optional[str] = None
    alternate_owner: Optional[str] = None


@dataclass(frozen=True)
class AttachmentTable:
    name: str = "part"
    row_id_column: str = "_id"
    unique_id_column: str = "unique_id"
    data_column: str = "_data"
    random_column: str = "data_random"
    size_column: str = "data_size"


@dataclass(frozen=True)
class StickerTable:
    name: str = "sticker"
    row_id_column: str = "_id"
    path_column: str = "file_path"
    length_column: str = "file_length"
    random_column: str = "file_random"


@dataclass(frozen=True)
class LegacyAvatarColumn:
    """A pre-recipient-id avatar reference, nulled by name on import."""

    table: str
    column: str
    match_column: str


@dataclass(frozen=True)
class BackupPolicy:
    message_tables: Tuple[MessageTable, ...] = ()
    referencing_tables: Tuple[ReferencingTable, ...] = ()
    attachment_table: Optional[AttachmentTable] = None
    sticker_table: Optional[StickerTable] = None
    # Tables whose schema travels but whose rows never do
    denylist: Tuple[str, ...] = ()
    # Full-text-search virtual tables; their "<prefix>_*" shadow tables are never exported
    fts_prefixes: Tuple[str, ...] = ()
    # Dropped ahead of everything else on import (foreign-key order)
    tables_to_drop_first: Tuple[str, ...] = ()
    # (file, key) pairs exported from flat preferences
    preferences: Tuple[Tuple[str, str], ...] = ()
    key_values: Tuple[str, ...] = ()
    # Identity keys once kept in flat preferences now live in the key/value store
    legacy_identity_file: Optional[str] = None
    legacy_identity_keys: Tuple[Tuple[str, str], ...] = ()
    legacy_avatar_columns: Tuple[LegacyAvatarColumn, ...] = ()

    def message_table(self, name: str) -> Optional[MessageTable]:
        for table in self.message_tables:
            if table.name == name:
                return table
        return None

    def referencing_table(self, name: str) -> Optional[ReferencingTable]:
        for table in self.referencing_tables:
            if table.name == name:
                return table
        return None

    def is_denylisted(self, table: str) -> bool:
        return table in self.denylist or table.startswith("sqlite_")

    def is_fts_shadow_table(self, name: Optional[str]) -> bool:
        if not name:
            return False
        return any(name != prefix and name.startswith(prefix) for prefix in self.fts_prefixes)

    def is_ignored_statement(self, text: str) -> bool:
        if text.lower().startswith("create table sqlite_"):
            return True
        return any(prefix + "_" in text for prefix in self.fts_prefixes)

    def legacy_identity_target(self, file: str, key: str) -> Optional[str]:
        if file != self.legacy_identity_file:
            return None
        mapping: Dict[str, str] = dict(self.legacy_identity_keys)
        return mapping.get(key)


_APP_PREFERENCES = "org.thoughtcrime.securesms_preferences"


DEFAULT_POLICY = BackupPolicy(
    message_tables=(
        MessageTable("mms", expires_column="expires_in", view_once_column="reveal_duration"),
        MessageTable("sms", expires_column="expires_in"),
    ),
    referencing_tables=(
        ReferencingTable("reaction", "message_id", owner="mms", selector_column="is_mms", alternate_owner="sms"),
        ReferencingTable("mention", "message_id", owner="mms"),
        ReferencingTable("group_receipts", "mms_id", owner="mms"),
        ReferencingTable("part", "mid", owner="mms"),
    ),
    attachment_table=AttachmentTable(),
    sticker_table=StickerTable(),
    denylist=(
        "signed_prekeys",
        "one_time_prekeys",
        "sessions",
        "sms_fts",
        "mms_fts",
        "emoji_search",
        "sender_keys",
        "sender_key_shared",
        "pending_retry_receipts",
        "avatar_picker",
    ),
    fts_prefixes=("sms_fts", "mms_fts", "emoji_search"),
    tables_to_drop_first=(
        "distribution_list_member",
        "distribution_list",
        "message_send_log_recipients",
        "msl_recipient",
        "msl_message",
        "reaction",
        "notification_profile_schedule",
        "notification_profile_allowed_members",
        "story_sends",
    ),
    preferences=(
        (_APP_PREFERENCES, "pref_screen_security"),
        (_APP_PREFERENCES, "pref_incognito_keyboard"),
        (_APP_PREFERENCES, "pref_turn_only"),
        (_APP_PREFERENCES, "pref_read_receipts"),
        (_APP_PREFERENCES, "pref_typing_indicators"),
        (_APP_PREFERENCES, "pref_show_unidentifed_delivery_indicators"),
        (_APP_PREFERENCES, "pref_universal_unidentified_access"),
    ),
    key_values=(
        "account.aci_identity_public_key",
        "account.aci_identity_private_key",
        "stories.disable",
        "user.has.added.to.a.story",
        "stories.video.will.be.trimmed.tooltip.seen",
        "stories.cannot.send.video.tooltip.seen",
        "stories.user.has.seen.first.navigation.view",
    ),
    legacy_identity_file="SecureSMS-Preferences",
    legacy_identity_keys=(
        ("pref_identity_public_v3", "account.aci_identity_public_key"),
        ("pref_identity_private_v3", "account.aci_identity_private_key"),
    ),
    legacy_avatar_columns=(
        LegacyAvatarColumn("recipient_preferences", "signal_profile_avatar", "recipient_ids"),
        LegacyAvatarColumn("recipient", "signal_profile_avatar", "phone"),
    ),
)
