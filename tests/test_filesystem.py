from __future__ import annotations

from pathlib import Path

import pytest

from claudedir.filesystem import (
    EntryType,
    backup_path_for,
    backup_stamp,
    detect_entry_type,
    ensure_parent,
    format_bytes,
    is_backup_file,
    is_temp_file,
    open_stamped,
    remove_path,
    temp_path_for,
)


@pytest.mark.parametrize(
    ("size", "expected"),
    [
        (0, "0 B"),
        (512, "512 B"),
        (1024, "1 KB"),
        (1536, "1.5 KB"),
        (5 * 1024 * 1024, "5 MB"),
        (int(2.5 * 1024**3), "2.5 GB"),
        (3 * 1024**4, "3072 GB"),
    ],
)
def test_format_bytes(size: int, expected: str) -> None:
    assert format_bytes(size) == expected


def test_sibling_naming(tmp_path: Path) -> None:
    target = tmp_path / "rules" / "style.md"

    assert backup_path_for(target, 1700000000000) == tmp_path / "rules" / "style.md.backup.1700000000000"
    assert temp_path_for(target, 42) == tmp_path / "rules" / "style.md.tmp.42"


def test_marker_detection() -> None:
    assert is_backup_file("settings.json.backup.1700000000000")
    assert not is_backup_file("settings.json.backup.latest")
    assert not is_backup_file(".backup.123")
    assert is_temp_file("CLAUDE.md.tmp.1")
    assert not is_temp_file("CLAUDE.md")
    assert backup_stamp("a.backup.b.backup.99") == 99


def test_detect_entry_type(tmp_path: Path) -> None:
    file_path = tmp_path / "file.txt"
    file_path.write_text("x")
    link = tmp_path / "link"
    link.symlink_to(file_path)

    assert detect_entry_type(file_path) is EntryType.FILE
    assert detect_entry_type(tmp_path) is EntryType.DIRECTORY
    assert detect_entry_type(link) is EntryType.SYMLINK


def test_ensure_parent(tmp_path: Path) -> None:
    target = tmp_path / "deep" / "file.txt"
    ensure_parent(target)
    assert target.parent.exists()
    ensure_parent(target)


def test_remove_path_directory(tmp_path: Path) -> None:
    directory = tmp_path / "dir"
    (directory / "child").mkdir(parents=True)
    (directory / "child" / "data").write_text("x")

    remove_path(directory)
    assert not directory.exists()


def test_remove_path_missing_noop(tmp_path: Path) -> None:
    missing = tmp_path / "missing"
    remove_path(missing)


def test_open_stamped_moves_past_taken_names(tmp_path: Path) -> None:
    target = tmp_path / "settings.json"
    temp_path_for(target, 7).write_text("taken")

    created, handle = open_stamped(target, temp_path_for, 7, "x", encoding="utf-8")
    with handle:
        handle.write("fresh")

    assert created.name == "settings.json.tmp.8"
    assert is_temp_file(created.name)
    assert created.read_text() == "fresh"
    assert temp_path_for(target, 7).read_text() == "taken"
