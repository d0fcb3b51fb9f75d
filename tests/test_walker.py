from __future__ import annotations

from pathlib import Path

import pytest

from streamarchive.Errors import FilesystemError
from streamarchive.Protocols import EntryKind
from streamarchive.Walker import walk


def test_walk_covers_whole_tree(test_data: Path):
    entries = list(walk(test_data))

    assert [(e.relative_path, e.kind) for e in entries] == [
        ("foo", EntryKind.DIRECTORY),
        ("test", EntryKind.FILE),
        ("foo/bar.txt", EntryKind.FILE),
    ]
    assert all(e.absolute_path == test_data / e.relative_path for e in entries)


def test_walk_is_deterministic(test_data: Path):
    (test_data / "b").mkdir()
    (test_data / "a.txt").write_text("a")
    assert list(walk(test_data)) == list(walk(test_data))


def test_walk_includes_empty_directories(tmp_path: Path):
    (tmp_path / "empty" / "nested").mkdir(parents=True)

    assert [e.relative_path for e in walk(tmp_path)] == ["empty", "empty/nested"]


def test_walk_is_lazy(test_data: Path):
    iterator = walk(test_data)
    first = next(iterator)
    assert first.relative_path == "foo"


def test_walk_missing_root(tmp_path: Path):
    with pytest.raises(FilesystemError):
        list(walk(tmp_path / "missing"))
