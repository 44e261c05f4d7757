"""Confined file store: every disk operation on behalf of the dashboard."""

from __future__ import annotations

import os
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from loguru import logger

from .filesystem import (
    BACKUP_MARKER,
    backup_path_for,
    backup_stamp,
    detect_entry_type,
    ensure_parent,
    epoch_ms,
    is_backup_file,
    is_temp_file,
    open_stamped,
    remove_path,
    temp_path_for,
)
from .models import BackupOutcome, DirectorySizeReport, EntryType, FileStats

EXECUTABLE_MODE = 0o755

NameFilter = Callable[[str], bool]


class ClaudeDirError(RuntimeError):
    """Base class for errors raised by claudedir."""


class OutOfScopeError(ClaudeDirError):
    """Raised when a path resolves outside the root directory."""


class NotFoundError(ClaudeDirError):
    """Raised when a requested file does not exist."""


class NotConfirmedError(ClaudeDirError):
    """Raised when a destructive call is made without explicit confirmation."""


class IOFailureError(ClaudeDirError):
    """Raised when a filesystem operation fails after validation passed."""


class ConfinedFileStore:
    """Reads, writes, and deletes files without ever leaving ``root``.

    Writes go to a sibling ``<path>.tmp.<epoch-ms>`` file which is then renamed
    over the target, so readers observe either the old or the new content.
    Temp and backup files are created exclusively, so writers that share a
    millisecond still get files of their own. Concurrent writers to the same
    path are not serialized: the last rename wins.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(os.path.normpath(os.path.abspath(os.path.expanduser(str(root)))))

    # ------------------------------------------------------------------
    # Confinement

    def _normalize(self, path: Path | str) -> Path:
        candidate = Path(os.path.expanduser(str(path)))
        if not candidate.is_absolute():
            candidate = self.root / candidate
        return Path(os.path.normpath(candidate))

    def validate(self, path: Path | str) -> bool:
        """Return ``True`` if ``path`` is the root or lies below it."""

        normalized = str(self._normalize(path))
        root = str(self.root)
        return normalized == root or normalized.startswith(root.rstrip(os.sep) + os.sep)

    def resolve(self, path: Path | str) -> Path:
        """Return the normalized absolute form of ``path`` or raise ``OutOfScopeError``."""

        if not self.validate(path):
            raise OutOfScopeError(f"Path '{path}' must be within '{self.root}'")
        return self._normalize(path)

    def relative(self, path: Path | str) -> str:
        return self.resolve(path).relative_to(self.root).as_posix()

    # ------------------------------------------------------------------
    # Reads

    def exists(self, path: Path | str) -> bool:
        target = self.resolve(path)
        return target.exists() or target.is_symlink()

    def read(self, path: Path | str) -> str:
        target = self.resolve(path)
        try:
            return target.read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise NotFoundError(f"File '{target}' does not exist") from exc
        except OSError as exc:
            raise IOFailureError(f"Unable to read '{target}': {exc}") from exc

    def stat(self, path: Path | str) -> FileStats:
        target = self.resolve(path)
        try:
            result = target.stat()
        except FileNotFoundError as exc:
            raise NotFoundError(f"'{target}' does not exist") from exc
        except OSError as exc:
            raise IOFailureError(f"Unable to stat '{target}': {exc}") from exc

        return FileStats(
            path=target,
            size=result.st_size,
            modified=datetime.fromtimestamp(result.st_mtime, tz=timezone.utc),
            is_directory=stat.S_ISDIR(result.st_mode),
            executable=bool(result.st_mode & stat.S_IXUSR),
        )

    # ------------------------------------------------------------------
    # Writes

    def create_backup(self, path: Path | str) -> BackupOutcome:
        """Copy the current content of ``path`` to ``<path>.backup.<epoch-ms>``.

        Best effort: any failure is returned as a skipped outcome.
        """

        target = self.resolve(path)
        try:
            content = target.read_bytes()
        except FileNotFoundError:
            return BackupOutcome.skipped("file does not exist")
        except OSError as exc:
            logger.debug(f"Skipping backup of {target}: {exc}")
            return BackupOutcome.skipped(str(exc))

        backup: Path | None = None
        try:
            backup, handle = open_stamped(target, backup_path_for, epoch_ms(), "xb")
            with handle:
                handle.write(content)
        except OSError as exc:
            logger.debug(f"Unable to write backup of {target}: {exc}")
            if backup is not None:
                backup.unlink(missing_ok=True)
            return BackupOutcome.skipped(str(exc))
        return BackupOutcome.created(backup)

    def write(
        self,
        path: Path | str,
        content: str,
        *,
        make_backup: bool = True,
        executable: bool = False,
    ) -> BackupOutcome | None:
        """Atomically replace the content of ``path``.

        Returns the backup outcome when ``make_backup`` is set, otherwise ``None``.
        """

        target = self.resolve(path)
        try:
            ensure_parent(target)
        except OSError as exc:
            raise IOFailureError(f"Unable to create parent directory for '{target}': {exc}") from exc

        outcome: BackupOutcome | None = None
        if make_backup:
            outcome = self.create_backup(target) if target.is_file() else BackupOutcome.skipped("nothing to back up")

        temp_path: Path | None = None
        try:
            temp_path, handle = open_stamped(target, temp_path_for, epoch_ms(), "x", encoding="utf-8", newline="")
            with handle:
                handle.write(content)
            mode = EXECUTABLE_MODE if executable else _existing_mode(target)
            if mode is not None:
                os.chmod(temp_path, mode)
            os.replace(temp_path, target)
        except OSError as exc:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            raise IOFailureError(f"Unable to write '{target}': {exc}") from exc

        logger.debug(f"Wrote {target}")
        return outcome

    def delete(self, path: Path | str, *, confirmed: bool) -> None:
        """Remove a file, or a directory tree standing in for a bundle."""

        if not confirmed:
            raise NotConfirmedError("Deletion must be confirmed")
        target = self.resolve(path)
        if target == self.root:
            raise OutOfScopeError("The root directory itself cannot be deleted")
        if not target.exists() and not target.is_symlink():
            raise NotFoundError(f"'{target}' does not exist")
        try:
            remove_path(target)
        except OSError as exc:
            raise IOFailureError(f"Unable to delete '{target}': {exc}") from exc
        logger.info(f"Deleted {target}")

    # ------------------------------------------------------------------
    # Directory queries

    def directory_size(self, path: Path | str) -> DirectorySizeReport:
        """Sum file sizes below ``path``, skipping anything that cannot be read."""

        target = self.resolve(path)
        total, count = _walk_size(target)
        return DirectorySizeReport(path=target, size_bytes=total, item_count=count)

    def list_entries(
        self,
        path: Path | str,
        *,
        recursive: bool = False,
        name_filter: NameFilter | None = None,
    ) -> list[Path]:
        """Return the files under ``path``.

        ``name_filter`` is applied to every entry name, directories included, so
        a rejected directory is not descended into.
        """

        target = self.resolve(path)
        try:
            return _list_files(target, recursive=recursive, name_filter=name_filter)
        except FileNotFoundError as exc:
            raise NotFoundError(f"Directory '{target}' does not exist") from exc
        except NotADirectoryError as exc:
            raise NotFoundError(f"'{target}' is not a directory") from exc
        except OSError as exc:
            raise IOFailureError(f"Unable to list '{target}': {exc}") from exc

    # ------------------------------------------------------------------
    # Maintenance

    def list_backups(self, path: Path | str) -> list[Path]:
        """Return the backups of ``path`` ordered oldest first."""

        target = self.resolve(path)
        if not target.parent.is_dir():
            return []
        backups = [
            child
            for child in target.parent.iterdir()
            if is_backup_file(child.name) and child.name.rpartition(BACKUP_MARKER)[0] == target.name
        ]
        return sorted(backups, key=lambda item: backup_stamp(item.name))

    def prune_backups(self, path: Path | str, *, keep: int, confirmed: bool) -> list[Path]:
        """Delete all but the newest ``keep`` backups of ``path``."""

        if not confirmed:
            raise NotConfirmedError("Pruning backups must be confirmed")
        if keep < 0:
            raise ValueError("keep must not be negative")
        backups = self.list_backups(path)
        doomed = backups[: max(len(backups) - keep, 0)]
        for backup in doomed:
            try:
                backup.unlink()
            except OSError as exc:
                raise IOFailureError(f"Unable to delete backup '{backup}': {exc}") from exc
        if doomed:
            logger.info(f"Pruned {len(doomed)} backup(s) of {self.resolve(path)}")
        return doomed

    def find_orphaned_temp_files(self, path: Path | str | None = None) -> list[Path]:
        """Return ``.tmp.*`` files left behind by interrupted writes."""

        target = self.resolve(path if path is not None else self.root)
        if not target.is_dir():
            return []
        return _list_files(target, recursive=True, name_filter=None, predicate=is_temp_file)


def _existing_mode(target: Path) -> int | None:
    try:
        return stat.S_IMODE(target.stat().st_mode)
    except FileNotFoundError:
        return None


def _walk_size(directory: Path) -> tuple[int, int]:
    total = 0
    count = 0
    try:
        with os.scandir(directory) as iterator:
            entries = list(iterator)
    except OSError as exc:
        logger.debug(f"Skipping unreadable directory {directory}: {exc}")
        return 0, 0

    for entry in entries:
        try:
            if entry.is_dir(follow_symlinks=False):
                sub_total, sub_count = _walk_size(Path(entry.path))
                total += sub_total
                count += sub_count
            else:
                total += entry.stat(follow_symlinks=False).st_size
                count += 1
        except OSError as exc:
            logger.debug(f"Skipping unreadable entry {entry.path}: {exc}")
    return total, count


def _list_files(
    directory: Path,
    *,
    recursive: bool,
    name_filter: NameFilter | None,
    predicate: NameFilter | None = None,
) -> list[Path]:
    files: list[Path] = []
    for child in sorted(directory.iterdir()):
        if name_filter is not None and not name_filter(child.name):
            continue
        entry_type = detect_entry_type(child)
        if entry_type == EntryType.DIRECTORY:
            if recursive:
                files.extend(_list_files(child, recursive=True, name_filter=name_filter, predicate=predicate))
        elif child.is_file():
            if predicate is None or predicate(child.name):
                files.append(child)
    return files
