"""Deterministic directory traversal feeding the tar and zip builders."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator

from .Errors import FilesystemError
from .Protocols import EntryKind, WalkEntry


def walk(src_root: str | os.PathLike) -> Iterator[WalkEntry]:
    """Yield every file and directory below `src_root`, top-down.

    Entries within a directory are sorted by name so repeated builds of the
    same tree produce identical containers. The root itself is not yielded
    and directory symlinks are not followed.

    Raises:
        FilesystemError: If `src_root` is not a directory or cannot be listed.
    """
    root = Path(src_root)
    if not root.is_dir():
        raise FilesystemError(f"Not a directory: {root}")

    def on_error(e: OSError) -> None:
        raise FilesystemError(f"Cannot list {e.filename}: {e}") from e

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        # Sorting in place also fixes the order os.walk descends in
        dirnames.sort()
        current = Path(dirpath)
        names = [(name, EntryKind.DIRECTORY) for name in dirnames]
        names += [(name, EntryKind.FILE) for name in sorted(filenames)]
        for name, kind in sorted(names, key=lambda item: item[0]):
            absolute = current / name
            yield WalkEntry(absolute, relative_name(root, absolute), kind)


def relative_name(root: Path, path: Path) -> str:
    """Strip `root` from `path` and join the rest with forward slashes."""
    return path.relative_to(root).as_posix()
