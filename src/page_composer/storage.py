"""
Key-value persistence stores.

Writes are best-effort from the engine's point of view: a full store raises
StorageQuotaExceeded and the caller decides to drop the record.
"""

from __future__ import annotations

from hashlib import sha1
from pathlib import Path
from typing import Dict, Optional, Protocol

from .utils import StorageQuotaExceeded, UserError, ensure_dir


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, data: bytes) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStore:
    """In-process store with an optional byte quota."""

    def __init__(self, quota_bytes: int | None = None) -> None:
        self.quota_bytes = quota_bytes
        self._data: Dict[str, bytes] = {}

    def used_bytes(self) -> int:
        return sum(len(value) for value in self._data.values())

    def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def set(self, key: str, data: bytes) -> None:
        if self.quota_bytes is not None:
            projected = self.used_bytes() - len(self._data.get(key, b"")) + len(data)
            if projected > self.quota_bytes:
                raise StorageQuotaExceeded(
                    f"Storing {key} needs {projected} bytes; quota is {self.quota_bytes}."
                )
        self._data[key] = bytes(data)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data


class DirectoryStore:
    """
    One file per key under a root folder.

    Keys are hashed into file names so any string is safe to use.
    """

    def __init__(self, root: Path, quota_bytes: int | None = None) -> None:
        if root.exists() and not root.is_dir():
            raise UserError(f"Store root is not a directory: {root}")
        self.root = root
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> Path:
        digest = sha1(key.encode("utf-8")).hexdigest()
        return self.root / f"{digest}.bin"

    def used_bytes(self) -> int:
        if not self.root.exists():
            return 0
        return sum(path.stat().st_size for path in self.root.glob("*.bin") if path.is_file())

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as exc:
            raise UserError(f"Failed to read stored record {key}: {exc}") from exc

    def set(self, key: str, data: bytes) -> None:
        path = self._path(key)
        if self.quota_bytes is not None:
            current = path.stat().st_size if path.exists() else 0
            projected = self.used_bytes() - current + len(data)
            if projected > self.quota_bytes:
                raise StorageQuotaExceeded(
                    f"Storing {key} needs {projected} bytes; quota is {self.quota_bytes}."
                )
        ensure_dir(self.root, dry_run=False)
        # Write to a temp file first, then replace the record.
        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_bytes(data)
            temp_path.replace(path)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise UserError(f"Failed to write stored record {key}: {exc}") from exc

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
