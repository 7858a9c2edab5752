"""Key-value storage for ccmetrics state.

All persisted state (metrics cache, baselines, enrichment cache, retry
queue) goes through the KeyValueStore interface. FileStore keeps one JSON
file per key and replaces files by atomic rename so a concurrent reader sees
either the old or the new content, never a partial write. MemoryStore is a
drop-in fake for tests.
"""

from __future__ import annotations

import os
import re
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

_VALID_KEY = re.compile(r"^[A-Za-z0-9_.@-]+$")


def validate_key(key: str) -> str:
    """Reject keys that could escape the store directory.

    Raises:
        ValueError: If the key is empty or contains path characters.
    """
    if not key or key.startswith(".") or not _VALID_KEY.match(key):
        raise ValueError(f"Invalid store key: {key!r}")
    return key


class KeyValueStore(Protocol):
    """Minimal byte-oriented key-value store."""

    def get(self, key: str) -> bytes | None: ...

    def put(self, key: str, data: bytes) -> None: ...

    def delete(self, key: str) -> bool: ...

    def keys(self) -> list[str]: ...

    def modified_at(self, key: str) -> float | None: ...


class FileStore:
    """Directory-backed store: one `<key>.json` file per key."""

    SUFFIX = ".json"

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / f"{validate_key(key)}{self.SUFFIX}"

    def get(self, key: str) -> bytes | None:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            return None

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        self.root.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            dir=self.root, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> bool:
        try:
            self._path(key).unlink()
            return True
        except FileNotFoundError:
            return False

    def keys(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            p.name[: -len(self.SUFFIX)]
            for p in self.root.iterdir()
            if p.name.endswith(self.SUFFIX) and not p.name.startswith(".")
        )

    def modified_at(self, key: str) -> float | None:
        try:
            return self._path(key).stat().st_mtime
        except FileNotFoundError:
            return None


class MemoryStore:
    """In-memory store with an injectable clock."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, tuple[bytes, float]] = {}

    def get(self, key: str) -> bytes | None:
        entry = self._data.get(validate_key(key))
        return entry[0] if entry else None

    def put(self, key: str, data: bytes) -> None:
        self._data[validate_key(key)] = (bytes(data), self._clock())

    def delete(self, key: str) -> bool:
        return self._data.pop(validate_key(key), None) is not None

    def keys(self) -> list[str]:
        return sorted(self._data)

    def modified_at(self, key: str) -> float | None:
        entry = self._data.get(validate_key(key))
        return entry[1] if entry else None
