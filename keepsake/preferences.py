from __future__ import annotations

import json
import os
import tempfile
from typing import Dict

from .errors import UnknownTypeError
from .frames import PreferenceValue


class PreferenceStore:
    """Flat preference files: one JSON document per file name under ``root``.

    String sets are stored as JSON lists and read back as frozensets.
    """

    def __init__(self, root: str):
        self.root = root
        os.makedirs(root, exist_ok=True)

    def _path(self, file: str) -> str:
        if not file or "/" in file or "\\" in file or file in (".", ".."):
            raise ValueError(f"Invalid preference file name: {file!r}")
        return os.path.join(self.root, file + ".json")

    def _load(self, file: str) -> Dict[str, object]:
        try:
            with open(self._path(file), "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return {}

    def _store(self, file: str, doc: Dict[str, object]) -> None:
        path = self._path(file)
        fd, tmp = tempfile.mkstemp(prefix=".pref", dir=self.root)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(doc, fh, sort_keys=True)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def contains(self, file: str, key: str) -> bool:
        return key in self._load(file)

    def get(self, file: str, key: str, default=None):
        doc = self._load(file)
        if key not in doc:
            return default
        value = doc[key]
        if isinstance(value, list):
            return frozenset(value)
        return value

    def put(self, file: str, key: str, value: PreferenceValue) -> None:
        if isinstance(value, (set, frozenset)):
            stored = sorted(value)
        elif isinstance(value, (str, bool)):
            stored = value
        else:
            raise UnknownTypeError(f"Unsupported preference type: {type(value).__name__}")
        doc = self._load(file)
        doc[key] = stored
        self._store(file, doc)

    def remove(self, file: str, key: str) -> None:
        doc = self._load(file)
        if doc.pop(key, None) is not None:
            self._store(file, doc)
