"""Shared types for the streamarchive codecs.

This module declares the minimal stream interfaces the codecs consume and
produce, together with the entry records passed between the directory
walker, the builders and the extractors. Keeping them here leaves the codec
modules decoupled from the transport in `streamarchive.FileIO`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Protocol

# Called with the number of bytes written on each write()
ProgressCallback = Callable[[int], None]


class ReadStream(Protocol):
    """Protocol describing a forward-readable byte stream.

    Anything with a `read(size)` method returning bytes qualifies: files,
    sockets wrapped in `io` objects, `RemoteStream`, the gzip decoder and the
    zip entry readers. Codecs never call `seek` on a `ReadStream`.
    """

    def read(self, size: int = -1) -> bytes:
        """Read up to `size` bytes; an empty result means end of stream."""
        ...


class EntryKind(enum.Enum):
    """Kind of a named unit inside a container."""

    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class WalkEntry:
    """One node produced by `streamarchive.Walker.walk`.

    Attributes:
        absolute_path (Path): Location of the node on the local filesystem.
        relative_path (str): Path below the walked root, forward slashes only.
        kind (EntryKind): Whether the node is a file or a directory.
    """

    absolute_path: Path
    relative_path: str
    kind: EntryKind

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY


@dataclass
class ArchiveEntry:
    """A named unit stored inside a container.

    Attributes:
        relative_path (str): Entry name, forward slashes, never absolute or empty.
        kind (EntryKind): File or directory.
        size (int | None): Uncompressed byte count, when the container knows it.
        body (BinaryIO | None): Reader over the entry content; None for directories.
        mtime (float | None): Modification time as a POSIX timestamp, if recorded.
        mode (int | None): Unix permission bits for files, if recorded.
    """

    relative_path: str
    kind: EntryKind
    size: Optional[int] = None
    body: Optional[BinaryIO] = None
    mtime: Optional[float] = None
    mode: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.relative_path:
            raise ValueError("Archive entries need a non-empty relative path")
        if self.relative_path.startswith("/"):
            raise ValueError(f"Archive entry path must be relative: {self.relative_path!r}")
        if self.kind is EntryKind.DIRECTORY and self.body is not None:
            raise ValueError("Directory entries carry no body")

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY
