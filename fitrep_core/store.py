"""Keyed durable storage with typed write results.

Writers never get an exception for a failed write: ``write`` returns
``Ok``, ``QuotaExceeded`` or ``OtherFailure`` and the caller decides what to
do. Reads return ``None`` for a missing or unreadable key.
"""

from __future__ import annotations

import errno
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union


@dataclass(frozen=True)
class Ok:
    key: str
    size: int = 0


@dataclass(frozen=True)
class QuotaExceeded:
    key: str
    detail: str = ""


@dataclass(frozen=True)
class OtherFailure:
    key: str
    detail: str = ""


StorageResult = Union[Ok, QuotaExceeded, OtherFailure]

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


class KeyValueStore(Protocol):
    def read(self, key: str) -> Optional[str]: ...

    def write(self, key: str, value: str) -> StorageResult: ...

    def remove(self, key: str) -> None: ...

    def keys(self) -> List[str]: ...


def _size(value: str) -> int:
    return len(value.encode("utf-8"))


class MemoryStore:
    """In-process store; ``quota_bytes`` caps the total size of all values."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes or None
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def read(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def write(self, key: str, value: str) -> StorageResult:
        size = _size(value)
        with self._lock:
            if self.quota_bytes is not None:
                used = sum(_size(v) for k, v in self._data.items() if k != key)
                if used + size > self.quota_bytes:
                    return QuotaExceeded(key, f"{used + size} > {self.quota_bytes} bytes")
            self._data[key] = value
        return Ok(key, size)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


class JsonFileStore:
    """One file per key under ``root``; writes go to a temp file then replace."""

    def __init__(self, root: Union[str, Path], quota_bytes: Optional[int] = None):
        self.root = Path(root).resolve()
        self.quota_bytes = quota_bytes or None
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
        return self.root / f"{safe}.json"

    def _used_bytes(self, exclude: Path) -> int:
        if not self.root.exists():
            return 0
        total = 0
        for p in self.root.glob("*.json"):
            if p != exclude:
                try:
                    total += p.stat().st_size
                except OSError:
                    continue
        return total

    def read(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    def write(self, key: str, value: str) -> StorageResult:
        path = self._path(key)
        size = _size(value)
        with self._lock:
            if self.quota_bytes is not None:
                used = self._used_bytes(path)
                if used + size > self.quota_bytes:
                    return QuotaExceeded(key, f"{used + size} > {self.quota_bytes} bytes")
            tmp = path.with_suffix(path.suffix + ".tmp")
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp.write_text(value, encoding="utf-8")
                tmp.replace(path)
            except OSError as exc:
                try:
                    tmp.unlink()
                except OSError:
                    pass
                if exc.errno in _QUOTA_ERRNOS:
                    return QuotaExceeded(key, str(exc))
                return OtherFailure(key, str(exc))
        return Ok(key, size)

    def remove(self, key: str) -> None:
        path = self._path(key)
        with self._lock:
            if path.exists():
                try:
                    path.unlink()
                except OSError:
                    pass

    def keys(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.stem for p in self.root.glob("*.json"))


def open_store(root: Union[str, Path, None] = None, quota_bytes: Optional[int] = None) -> KeyValueStore:
    if root is None:
        return MemoryStore(quota_bytes)
    os.makedirs(root, exist_ok=True)
    return JsonFileStore(root, quota_bytes)


__all__ = [
    "JsonFileStore",
    "KeyValueStore",
    "MemoryStore",
    "Ok",
    "OtherFailure",
    "QuotaExceeded",
    "StorageResult",
    "open_store",
]
