"""Export and restore tar.gz archives of the configuration."""

from __future__ import annotations

import io
import json
import shutil
import tarfile
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from loguru import logger

from .config import Settings
from .filesystem import backup_path_for, detect_entry_type, epoch_ms, remove_path
from .models import ArchiveInfo, ArchiveItem, EntryType, RestoreMode, RestoreReport
from .store import ClaudeDirError, ConfinedFileStore, IOFailureError, NotFoundError

ARCHIVE_VERSION = "1.0"
INFO_FILENAME = ".backup-info.json"
RESTORE_TEMP_PREFIX = ".restore-temp-"
PRE_RESTORE_PREFIX = ".pre-restore-backup-"
ARCHIVE_SUFFIXES = (".tar.gz", ".tgz")


class ArchiveError(ClaudeDirError):
    """Raised when an uploaded archive is unusable."""


def archive_filename(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return f"claude-config-backup-{moment.strftime('%Y-%m-%dT%H-%M-%S')}.tar.gz"


def export_archive(store: ConfinedFileStore, settings: Settings) -> tuple[str, bytes]:
    """Pack the existing backup items into a gzipped tarball.

    Returns the suggested download filename and the archive bytes.
    """

    items: list[ArchiveItem] = []
    paths: list[tuple[str, Path]] = []
    for name in settings.backup_items:
        path = store.resolve(name)
        if not path.exists():
            continue
        entry_type = detect_entry_type(path)
        size = path.stat().st_size if entry_type == EntryType.FILE else 0
        items.append(ArchiveItem(path=name, type=entry_type, size=size))
        paths.append((name, path))

    if not items:
        raise NotFoundError("No configuration files found to back up")

    info = ArchiveInfo(
        created=datetime.now(timezone.utc).isoformat(),
        version=ARCHIVE_VERSION,
        items=tuple(items),
    )
    info_bytes = json.dumps(info.to_payload(), indent=2).encode("utf-8")

    buffer = io.BytesIO()
    try:
        with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
            for name, path in paths:
                archive.add(path, arcname=name)
            member = tarfile.TarInfo(INFO_FILENAME)
            member.size = len(info_bytes)
            member.mtime = int(datetime.now(timezone.utc).timestamp())
            archive.addfile(member, io.BytesIO(info_bytes))
    except OSError as exc:
        raise IOFailureError(f"Unable to create archive: {exc}") from exc

    logger.info(f"Exported {len(items)} item(s) from {store.root}")
    return archive_filename(), buffer.getvalue()


def _check_member(member: tarfile.TarInfo) -> None:
    name = PurePosixPath(member.name)
    if name.is_absolute() or ".." in name.parts:
        raise ArchiveError(f"Archive member '{member.name}' escapes the extraction directory")
    if member.issym() or member.islnk() or member.isdev():
        raise ArchiveError(f"Archive member '{member.name}' is a link or device")


def _read_info(directory: Path) -> ArchiveInfo | None:
    info_path = directory / INFO_FILENAME
    if not info_path.is_file():
        return None
    try:
        return ArchiveInfo.from_payload(json.loads(info_path.read_text(encoding="utf-8")))
    except (ValueError, KeyError, TypeError) as exc:
        logger.warning(f"Ignoring unreadable archive info: {exc}")
        return None


def _copy_into(source: Path, destination: Path) -> None:
    if source.is_dir():
        shutil.copytree(source, destination, dirs_exist_ok=True, copy_function=shutil.copy2)
    else:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)


def restore_archive(
    store: ConfinedFileStore,
    settings: Settings,
    data: bytes,
    filename: str,
    mode: RestoreMode = RestoreMode.MERGE,
) -> RestoreReport:
    """Unpack an exported archive into the root.

    ``merge`` moves each existing destination aside to ``<dest>.backup.<epoch-ms>``
    before copying. ``replace`` first snapshots every backup item into
    ``.pre-restore-backup-<epoch-ms>`` and then swaps the destinations out.
    Only top-level entries named in ``backup_items`` are restored; anything else
    in the archive is left out and reported in ``skipped_items``.
    """

    if not filename.endswith(ARCHIVE_SUFFIXES):
        raise ArchiveError("Invalid file type. Expected .tar.gz file")

    stamp = epoch_ms()
    temp_dir = store.resolve(f"{RESTORE_TEMP_PREFIX}{stamp}")
    temp_dir.mkdir(parents=True, exist_ok=True)

    try:
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
                members = archive.getmembers()
                for member in members:
                    _check_member(member)
                archive.extractall(temp_dir, members=members, filter="data")
        except tarfile.TarError as exc:
            raise ArchiveError(f"Unable to read archive: {exc}") from exc

        info = _read_info(temp_dir)
        allowed = set(settings.backup_items)
        entries: list[Path] = []
        skipped: list[str] = []
        for child in sorted(temp_dir.iterdir()):
            if child.name == INFO_FILENAME:
                continue
            if child.name in allowed:
                entries.append(child)
            else:
                skipped.append(child.name)
        if skipped:
            logger.warning(f"Ignoring archive entries outside the backup items: {', '.join(skipped)}")

        pre_restore: Path | None = None
        if mode is RestoreMode.REPLACE:
            pre_restore = _snapshot_current(store, settings, stamp)

        restored: list[str] = []
        for entry in entries:
            destination = store.resolve(entry.name)
            if destination.exists() or destination.is_symlink():
                if mode is RestoreMode.MERGE:
                    destination.rename(backup_path_for(destination, stamp))
                else:
                    remove_path(destination)
            _copy_into(entry, destination)
            restored.append(entry.name)
    except OSError as exc:
        raise IOFailureError(f"Unable to restore archive: {exc}") from exc
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    logger.info(f"Restored {len(restored)} item(s) into {store.root} ({mode.value})")
    return RestoreReport(
        restored_items=tuple(restored),
        mode=mode,
        info=info,
        pre_restore_backup=pre_restore,
        skipped_items=tuple(skipped),
    )


def _snapshot_current(store: ConfinedFileStore, settings: Settings, stamp: int) -> Path:
    snapshot = store.resolve(f"{PRE_RESTORE_PREFIX}{stamp}")
    snapshot.mkdir(parents=True, exist_ok=True)
    for name in settings.backup_items:
        source = store.resolve(name)
        if source.exists():
            _copy_into(source, snapshot / name)
    return snapshot


def purge_restore_backups(store: ConfinedFileStore) -> int:
    """Delete every pre-restore snapshot under the root."""

    root = store.resolve(store.root)
    if not root.is_dir():
        return 0
    snapshots = [child for child in root.iterdir() if child.name.startswith(PRE_RESTORE_PREFIX)]
    for snapshot in snapshots:
        try:
            remove_path(snapshot)
        except OSError as exc:
            raise IOFailureError(f"Unable to delete '{snapshot}': {exc}") from exc
    if snapshots:
        logger.info(f"Removed {len(snapshots)} pre-restore snapshot(s)")
    return len(snapshots)
