"""Key-value backing stores holding serialized JSON documents."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote


class KeyValueStore:
    """Minimal persistent key-value contract.

    ``get`` returns the serialized document or ``None``. ``set`` is
    best-effort and may raise ``OSError`` (full disk, read-only volume);
    callers decide whether that matters.
    """

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def load_json(self, key: str) -> Optional[Any]:
        raw = self.get(key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


class FileKeyValueStore(KeyValueStore):
    """One ``<key>.json`` file per key inside ``directory``.

    Keys are percent-encoded so distinct keys never share a file.
    """

    def __init__(self, directory: str | os.PathLike[str]):
        self.directory = Path(directory)

    def _path_for(self, key: str) -> Path:
        safe = quote(key, safe="@.")
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> Optional[str]:
        try:
            return self._path_for(key).read_text(encoding="utf-8")
        except OSError:
            return None

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path_for(key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(value, encoding="utf-8")
        os.replace(tmp, path)
