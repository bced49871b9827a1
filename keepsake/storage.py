from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Iterator

from .constants import PART_RANDOM_SIZE
from .parts import AttachmentSecret, ModernPartWriter, open_inline_part, plaintext_length


logger = logging.getLogger(__name__)


PARTS_DIR = "parts"
STICKERS_DIR = "stickers"
AVATARS_DIR = "avatars"


@dataclass(frozen=True)
class StoredAvatar:
    recipient_id: str
    path: str
    length: int


class BlobStore:
    """Directories holding encrypted attachment, sticker and avatar files."""

    def __init__(self, root: str):
        self.root = root
        self.parts_dir = os.path.join(root, PARTS_DIR)
        self.stickers_dir = os.path.join(root, STICKERS_DIR)
        self.avatars_dir = os.path.join(root, AVATARS_DIR)
        for d in (self.parts_dir, self.stickers_dir, self.avatars_dir):
            os.makedirs(d, exist_ok=True)

    @staticmethod
    def _new_file(directory: str, prefix: str, suffix: str) -> str:
        fd, path = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=directory)
        os.close(fd)
        return path

    def new_attachment_file(self) -> str:
        return self._new_file(self.parts_dir, "part", ".mms")

    def new_sticker_file(self) -> str:
        return self._new_file(self.stickers_dir, "sticker", ".mms")

    def avatar_path(self, recipient_id: str) -> str:
        if not recipient_id or os.sep in recipient_id or recipient_id in (".", ".."):
            raise ValueError(f"Invalid avatar name: {recipient_id!r}")
        return os.path.join(self.avatars_dir, recipient_id)

    def avatars(self) -> Iterator[StoredAvatar]:
        for name in sorted(os.listdir(self.avatars_dir)):
            path = os.path.join(self.avatars_dir, name)
            if not os.path.isfile(path) or name.startswith("."):
                continue
            size = os.path.getsize(path)
            if size < PART_RANDOM_SIZE:
                logger.warning("Skipping truncated avatar file: %s (%d bytes)", path, size)
                continue
            yield StoredAvatar(name, path, plaintext_length(size, inline=True))

    def avatar_count(self) -> int:
        return sum(1 for _ in self.avatars())

    def open_avatar(self, avatar: StoredAvatar, secret: AttachmentSecret):
        return open_inline_part(secret, avatar.path)

    def avatar_writer(self, recipient_id: str, secret: AttachmentSecret) -> ModernPartWriter:
        return ModernPartWriter(secret, self.avatar_path(recipient_id), inline=True)

    @staticmethod
    def delete(path: str) -> bool:
        try:
            os.unlink(path)
            return True
        except FileNotFoundError:
            return False
