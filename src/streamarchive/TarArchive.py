"""Tar codec for gzip-compressed directory archives.

Extraction reads the tar headers strictly in order from an already decoded
stream (`tarfile` stream mode), so it works on downloads that cannot seek.
Building walks a directory and compresses the finished tar with the gzip codec.
"""

import logging
import tarfile
import tempfile
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator

from . import GzipCodec
from .Config import DEFAULT_CHUNK_SIZE, DEFAULT_COMPRESSLEVEL
from .Errors import FilesystemError, FormatError
from .FileIO import copy_stream, materialize, normalize_entry_name
from .Protocols import ArchiveEntry, EntryKind, ProgressCallback, ReadStream, WalkEntry

logger = logging.getLogger(__name__)

# Tar data larger than this is spooled to a temporary file before compression
SPOOL_MAX_SIZE = 16 * 1024 * 1024


def iter_tar_entries(stream: ReadStream) -> Iterator[ArchiveEntry]:
    """Yield the members of an uncompressed tar stream as `ArchiveEntry` objects.

    Each file entry's body must be consumed before advancing; the next
    iteration skips whatever is left of it. Members that are neither regular
    files nor directories are skipped with a warning.

    Raises:
        FormatError: If a header is malformed or the stream ends mid-archive.
        UnsafePathError: If a member name could escape the destination.
    """
    try:
        with tarfile.open(fileobj=stream, mode="r|") as tar:
            for member in tar:
                relative = normalize_entry_name(member.name)
                if member.isdir():
                    if relative:
                        yield ArchiveEntry(relative, EntryKind.DIRECTORY, mtime=member.mtime)
                elif member.isreg():
                    if not relative:
                        raise FormatError(f"Tar file member without a usable name: {member.name!r}")
                    yield ArchiveEntry(relative, EntryKind.FILE, size=member.size,
                                       body=tar.extractfile(member), mtime=member.mtime, mode=member.mode)
                else:
                    logger.warning("Skipping unsupported tar member %r (type %r)", member.name, member.type)
    except tarfile.TarError as e:
        raise FormatError(f"Invalid tar data: {e}") from e


def extract_tar(root: Path, stream: ReadStream, chunk_size: int = DEFAULT_CHUNK_SIZE,
                progress_callback: ProgressCallback | None = None) -> int:
    """Unpack an uncompressed tar stream below `root`.

    Args:
        root (Path): Canonicalized destination directory.
        stream (ReadStream): Tar bytes, already gzip-decoded.
        chunk_size (int): Bytes per read while copying file bodies.
        progress_callback (callable|None): Called with bytes written.

    Returns:
        int: Number of entries created.
    """
    count = 0
    for entry in iter_tar_entries(stream):
        logger.debug("Tar entry %r", entry.relative_path)
        try:
            materialize(root, entry, chunk_size, progress_callback)
        except tarfile.TarError as e:
            raise FormatError(f"Invalid tar data in {entry.relative_path!r}: {e}") from e
        count += 1
    logger.debug("Extracted %d tar entries into %s", count, root)
    return count


def write_tar(entries: Iterable[WalkEntry], out: BinaryIO) -> int:
    """Write walker entries as an uncompressed tar container on `out`.

    Returns:
        int: Number of entries written.
    """
    count = 0
    # dereference so symlinks are stored as the files the walker reported
    with tarfile.open(fileobj=out, mode="w", format=tarfile.PAX_FORMAT, dereference=True) as tar:
        for entry in entries:
            try:
                info = tar.gettarinfo(str(entry.absolute_path), arcname=entry.relative_path)
                if info.isreg():
                    with open(entry.absolute_path, "rb") as f:
                        tar.addfile(info, f)
                else:
                    tar.addfile(info)
            except OSError as e:
                raise FilesystemError(f"Cannot add {entry.absolute_path} to tar: {e}") from e
            count += 1
    return count


def build_tar_gz(entries: Iterable[WalkEntry], out: BinaryIO, compresslevel: int = DEFAULT_COMPRESSLEVEL,
                 chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    """Write walker entries as a tar container, then gzip it into `out`.

    Returns:
        int: Number of entries written.
    """
    with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE) as spool:
        count = write_tar(entries, spool)
        spool.flush()
        spool.seek(0)
        copy_stream(GzipCodec.encode(spool, compresslevel=compresslevel), out, chunk_size)
    return count
