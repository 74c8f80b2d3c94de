"""Durable client storage.

A small capacity-limited key/value store holding string values. The
snapshot and history stores are its only consumers. Writes that would
push total usage past the quota raise ``StorageQuotaExceededError`` and
leave the previous value in place.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from pathlib import Path

from renderq.core.errors import StorageError, StorageQuotaExceededError
from renderq.core.logging import get_logger

_logger = get_logger("storage")

_SAFE_KEY = re.compile(r"[^A-Za-z0-9._-]")


class KeyValueStorage(ABC):
    """Abstract base class for string key/value storage."""

    def __init__(self, quota_bytes: int) -> None:
        self.quota_bytes = quota_bytes

    @abstractmethod
    async def get_item(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``.

        Raises:
            StorageQuotaExceededError: The write would exceed ``quota_bytes``.
            StorageError: The write failed for another reason.
        """
        ...

    @abstractmethod
    async def remove_item(self, key: str) -> bool:
        """Delete ``key``. Returns True if it existed."""
        ...

    @abstractmethod
    async def keys(self) -> list[str]:
        ...

    @abstractmethod
    async def usage_bytes(self, *, excluding: str | None = None) -> int:
        ...

    async def _check_quota(self, key: str, value: str) -> None:
        needed = len(value.encode("utf-8"))
        used = await self.usage_bytes(excluding=key)
        if used + needed > self.quota_bytes:
            raise StorageQuotaExceededError(
                f"Writing {key!r} ({needed} bytes) would exceed the "
                f"{self.quota_bytes} byte quota ({used} bytes in use)"
            )


class MemoryStorage(KeyValueStorage):
    """In-memory storage for tests and ephemeral runs."""

    def __init__(self, quota_bytes: int = 5 * 1024 * 1024) -> None:
        super().__init__(quota_bytes)
        self.items: dict[str, str] = {}

    async def get_item(self, key: str) -> str | None:
        return self.items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        await self._check_quota(key, value)
        self.items[key] = value

    async def remove_item(self, key: str) -> bool:
        return self.items.pop(key, None) is not None

    async def keys(self) -> list[str]:
        return list(self.items)

    async def usage_bytes(self, *, excluding: str | None = None) -> int:
        return sum(
            len(value.encode("utf-8")) for key, value in self.items.items() if key != excluding
        )


class FileStorage(KeyValueStorage):
    """One file per key under a directory, written atomically."""

    def __init__(self, root: Path, quota_bytes: int = 5 * 1024 * 1024) -> None:
        super().__init__(quota_bytes)
        self.root = root.expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / f"{_SAFE_KEY.sub('_', key)}.json"

    async def get_item(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Could not read {key!r}: {e}") from e

    async def set_item(self, key: str, value: str) -> None:
        await self._check_quota(key, value)
        path = self._path(key)
        # Write atomically using temp file + rename
        temp_file = path.with_suffix(".json.tmp")
        try:
            temp_file.write_text(value, encoding="utf-8")
            temp_file.replace(path)
        except OSError as e:
            temp_file.unlink(missing_ok=True)
            raise StorageError(f"Could not write {key!r}: {e}") from e
        _logger.debug("storage.written", key=key, bytes=len(value))

    async def remove_item(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    async def keys(self) -> list[str]:
        return sorted(
            p.stem for p in self.root.iterdir()
            if p.suffix == ".json" and not p.name.endswith(".tmp")
        )

    async def usage_bytes(self, *, excluding: str | None = None) -> int:
        skip = self._path(excluding) if excluding is not None else None
        return sum(
            p.stat().st_size for p in self.root.glob("*.json") if p != skip
        )


__all__ = ["FileStorage", "KeyValueStorage", "MemoryStorage"]
