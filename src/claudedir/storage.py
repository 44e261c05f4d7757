"""Disk usage report for the root directory."""

from __future__ import annotations

from typing import Any

from .config import Settings
from .filesystem import format_bytes
from .models import DirectoryUsage, StorageReport
from .store import ConfinedFileStore, IOFailureError, NotFoundError


def storage_report(store: ConfinedFileStore, settings: Settings) -> StorageReport:
    """Measure every visible directory directly under the root.

    Directories named in ``settings.ephemeral_dirs`` hold session data that is
    safe to clean up and are reported separately. Both lists are sorted by size,
    largest first.
    """

    root = store.resolve(store.root)
    if not root.is_dir():
        raise NotFoundError(f"Root directory '{root}' does not exist")

    ephemeral = set(settings.ephemeral_dirs)
    directories: list[DirectoryUsage] = []
    ephemeral_directories: list[DirectoryUsage] = []

    try:
        children = sorted(root.iterdir())
    except OSError as exc:
        raise IOFailureError(f"Unable to list '{root}': {exc}") from exc

    for child in children:
        if child.name.startswith(".") or child.is_symlink() or not child.is_dir():
            continue
        size = store.directory_size(child)
        usage = DirectoryUsage(
            name=child.name,
            path=child,
            size_bytes=size.size_bytes,
            item_count=size.item_count,
        )
        if child.name in ephemeral:
            ephemeral_directories.append(usage)
        else:
            directories.append(usage)

    directories.sort(key=lambda item: item.size_bytes, reverse=True)
    ephemeral_directories.sort(key=lambda item: item.size_bytes, reverse=True)
    return StorageReport(directories=tuple(directories), ephemeral_directories=tuple(ephemeral_directories))


def usage_payload(usage: DirectoryUsage) -> dict[str, Any]:
    return {
        "name": usage.name,
        "path": str(usage.path),
        "sizeBytes": usage.size_bytes,
        "sizeHuman": format_bytes(usage.size_bytes),
        "itemCount": usage.item_count,
    }


def report_payload(report: StorageReport) -> dict[str, Any]:
    return {
        "totalSize": format_bytes(report.total_bytes),
        "totalBytes": report.total_bytes,
        "directories": [usage_payload(item) for item in report.directories],
        "ephemeralDirectories": [usage_payload(item) for item in report.ephemeral_directories],
    }
