"""Filesystem helpers for claudedir."""

from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import IO, Any, Callable

from .models import EntryType

BACKUP_MARKER = ".backup."
TEMP_MARKER = ".tmp."

_SIZE_UNITS = ("B", "KB", "MB", "GB")


def ensure_parent(path: Path) -> None:
    """Ensure the parent directory exists."""

    path.parent.mkdir(parents=True, exist_ok=True)


def detect_entry_type(path: Path) -> EntryType:
    """Determine the ``EntryType`` for ``path``."""

    if path.is_symlink():
        return EntryType.SYMLINK
    if path.is_dir():
        return EntryType.DIRECTORY
    return EntryType.FILE


def remove_path(path: Path) -> None:
    """Delete ``path`` whether it is a file, directory, or symlink."""

    if not path.exists() and not path.is_symlink():
        return
    if path.is_symlink() or path.is_file():
        path.unlink()
        return
    shutil.rmtree(path)


def epoch_ms() -> int:
    """Return the current unix time in milliseconds."""

    return time.time_ns() // 1_000_000


def backup_path_for(path: Path, stamp: int) -> Path:
    """Return the sibling ``<path>.backup.<stamp>`` location."""

    return path.with_name(f"{path.name}{BACKUP_MARKER}{stamp}")


def temp_path_for(path: Path, stamp: int) -> Path:
    """Return the sibling ``<path>.tmp.<stamp>`` location used for atomic writes."""

    return path.with_name(f"{path.name}{TEMP_MARKER}{stamp}")


def open_stamped(
    path: Path,
    naming: Callable[[Path, int], Path],
    stamp: int,
    mode: str,
    **kwargs: Any,
) -> tuple[Path, IO[Any]]:
    """Exclusively create ``naming(path, stamp)`` and return it opened with ``mode``.

    ``mode`` must be an exclusive-create mode (``"x"`` or ``"xb"``). While the
    name is taken the stamp moves forward one millisecond at a time, so two
    writers never share a temp or backup file.
    """

    while True:
        candidate = naming(path, stamp)
        try:
            return candidate, candidate.open(mode, **kwargs)
        except FileExistsError:
            stamp += 1


def _has_stamp_suffix(name: str, marker: str) -> bool:
    head, sep, stamp = name.rpartition(marker)
    return bool(head) and bool(sep) and stamp.isdigit()


def is_backup_file(name: str) -> bool:
    return _has_stamp_suffix(name, BACKUP_MARKER)


def is_temp_file(name: str) -> bool:
    return _has_stamp_suffix(name, TEMP_MARKER)


def backup_stamp(name: str) -> int:
    """Return the epoch-ms stamp of a backup file name."""

    return int(name.rpartition(BACKUP_MARKER)[2])


def format_bytes(size: int) -> str:
    """Render ``size`` with a binary unit, e.g. ``1.5 KB``."""

    if size <= 0:
        return "0 B"
    index = 0
    while size >= 1024 ** (index + 1) and index < len(_SIZE_UNITS) - 1:
        index += 1
    text = f"{size / 1024**index:.1f}"
    if text.endswith(".0"):
        text = text[:-2]
    return f"{text} {_SIZE_UNITS[index]}"
