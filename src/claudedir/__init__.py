"""Core package for the claudedir project."""

from .cli import app, run
from .config import ConfigError, Settings, load_config
from .models import (
    BackupOutcome,
    BackupStatus,
    ChangeEvent,
    ChangeEventType,
    ConnectionState,
    DirectorySizeReport,
    RestoreMode,
    StorageReport,
)
from .store import (
    ClaudeDirError,
    ConfinedFileStore,
    IOFailureError,
    NotConfirmedError,
    NotFoundError,
    OutOfScopeError,
)
from .watcher import Debouncer, WatchConnection, WatcherRegistry

__all__ = [
    "Settings",
    "ConfigError",
    "load_config",
    "ConfinedFileStore",
    "ClaudeDirError",
    "OutOfScopeError",
    "NotFoundError",
    "NotConfirmedError",
    "IOFailureError",
    "BackupOutcome",
    "BackupStatus",
    "ChangeEvent",
    "ChangeEventType",
    "ConnectionState",
    "DirectorySizeReport",
    "RestoreMode",
    "StorageReport",
    "Debouncer",
    "WatchConnection",
    "WatcherRegistry",
    "app",
    "run",
]
