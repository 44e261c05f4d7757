"""Shared models and enums for claudedir."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class EntryType(str, Enum):
    """Kinds of paths found under the root."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"


@dataclass(frozen=True, slots=True)
class FileStats:
    """Metadata about a single managed file or directory."""

    path: Path
    size: int
    modified: datetime
    is_directory: bool
    executable: bool


@dataclass(frozen=True, slots=True)
class DirectorySizeReport:
    """Total size and file count of a directory tree, computed on demand."""

    path: Path
    size_bytes: int
    item_count: int


class BackupStatus(str, Enum):
    """Outcome of a best-effort backup attempt."""

    CREATED = "created"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class BackupOutcome:
    """Result of snapshotting a file before it is overwritten.

    Backups never block the write they protect, so a failed snapshot is
    reported as ``SKIPPED`` with a reason instead of raising.
    """

    status: BackupStatus
    path: Path | None = None
    reason: str | None = None

    @classmethod
    def created(cls, path: Path) -> "BackupOutcome":
        return cls(status=BackupStatus.CREATED, path=path)

    @classmethod
    def skipped(cls, reason: str) -> "BackupOutcome":
        return cls(status=BackupStatus.SKIPPED, reason=reason)


class ChangeEventType(str, Enum):
    """Event kinds sent over the change stream."""

    CONNECTED = "connected"
    CHANGE = "change"
    RENAME = "rename"
    HEARTBEAT = "heartbeat"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A single message on the change stream."""

    type: ChangeEventType
    path: str | None = None
    category: str | None = None
    timestamp: int | None = None
    connection_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type.value}
        if self.path is not None:
            payload["path"] = self.path
        if self.category is not None:
            payload["category"] = self.category
        if self.timestamp is not None:
            payload["timestamp"] = self.timestamp
        if self.connection_id is not None:
            payload["connectionId"] = self.connection_id
        return payload


class ConnectionState(str, Enum):
    """Lifecycle of a change stream subscriber."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


@dataclass(frozen=True, slots=True)
class DirectoryUsage:
    """One row of the storage report."""

    name: str
    path: Path
    size_bytes: int
    item_count: int


@dataclass(frozen=True, slots=True)
class StorageReport:
    """Disk usage of the root split into configuration and ephemeral data."""

    directories: tuple[DirectoryUsage, ...]
    ephemeral_directories: tuple[DirectoryUsage, ...]

    @property
    def total_bytes(self) -> int:
        return sum(item.size_bytes for item in self.directories) + sum(
            item.size_bytes for item in self.ephemeral_directories
        )


@dataclass(frozen=True, slots=True)
class ArchiveItem:
    """Entry recorded in an archive's info file."""

    path: str
    type: EntryType
    size: int


@dataclass(frozen=True, slots=True)
class ArchiveInfo:
    """Contents of ``.backup-info.json`` inside an exported archive."""

    created: str
    version: str
    items: tuple[ArchiveItem, ...] = field(default_factory=tuple)

    def to_payload(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "version": self.version,
            "items": [{"path": item.path, "type": item.type.value, "size": item.size} for item in self.items],
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "ArchiveInfo":
        items = tuple(
            ArchiveItem(path=str(item["path"]), type=EntryType(item["type"]), size=int(item.get("size", 0)))
            for item in data.get("items", [])
        )
        return cls(created=str(data.get("created", "")), version=str(data.get("version", "")), items=items)


class RestoreMode(str, Enum):
    """How an archive is applied to the root."""

    MERGE = "merge"
    REPLACE = "replace"


@dataclass(frozen=True, slots=True)
class RestoreReport:
    """Result of restoring an archive."""

    restored_items: tuple[str, ...]
    mode: RestoreMode
    info: ArchiveInfo | None = None
    pre_restore_backup: Path | None = None
    skipped_items: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": True,
            "restoredItems": list(self.restored_items),
            "skippedItems": list(self.skipped_items),
            "mode": self.mode.value,
            "backupInfo": self.info.to_payload() if self.info else None,
        }
