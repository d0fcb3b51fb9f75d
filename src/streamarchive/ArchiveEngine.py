"""Extraction and build entry points.

Three extractors materialize a forward-only stream on disk, one per
container format, and three builders produce the same containers from local
files. `extract` ties them to a URL or path, detecting the format from the
first bytes of the stream without seeking.

By default extraction is best-effort: if it fails, whatever was written so far
stays on disk. With `atomic=True` the output is staged next to the
destination and only moved into place once the whole stream decoded cleanly.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import os
import shutil
import tempfile
import zlib
from pathlib import Path
from typing import BinaryIO, Iterator
from urllib.parse import urlparse

from . import GzipCodec, TarArchive, Walker, ZipArchive
from .Config import Settings
from .Errors import FilesystemError, FormatError
from .FileIO import copy_stream, create_file, is_url, make_dirs, open_source, resolve_destination
from .Protocols import ProgressCallback, ReadStream, WalkEntry

logger = logging.getLogger(__name__)

# Bytes peeked from the stream to recognize the container
PEEK_SIZE = 8 * 1024
# A ustar header carries its magic at this offset
USTAR_MAGIC_OFFSET = 257


class ArchiveFormat(enum.Enum):
    GZIP = "gz"
    TAR_GZIP = "tar.gz"
    ZIP = "zip"


# Archive file signatures, from Wikipedia
SIGNATURES = {
    b"PK\x03\x04": ArchiveFormat.ZIP,
    b"PK\x05\x06": ArchiveFormat.ZIP,  # Empty archive
    b"\x1f\x8b": ArchiveFormat.GZIP,  # tar.gz or a single file, see detect_format
}


def detect_format(head: bytes, name: str | None = None) -> ArchiveFormat:
    """Recognize the container from its first bytes.

    Gzip does not say what it wraps, so for gzip input the name suffix
    decides when there is one (`.tar.gz`/`.tgz` vs `.gz`). Otherwise the
    start of the inflated data is checked for a ustar header.

    Raises:
        FormatError: If no known signature matches.
    """
    for signature, archive_format in SIGNATURES.items():
        if not head.startswith(signature):
            continue
        if archive_format is not ArchiveFormat.GZIP:
            return archive_format
        lowered = (name or "").lower()
        if lowered.endswith((".tar.gz", ".tgz")):
            return ArchiveFormat.TAR_GZIP
        if lowered.endswith(".gz"):
            return ArchiveFormat.GZIP
        return ArchiveFormat.TAR_GZIP if _looks_like_tar(head) else ArchiveFormat.GZIP
    raise FormatError(f"Unknown File Format with signature: {head[:8].hex().upper()}")


def _looks_like_tar(gzip_head: bytes) -> bool:
    try:
        inflated = zlib.decompressobj(GzipCodec.GZIP_WBITS).decompress(gzip_head, USTAR_MAGIC_OFFSET + 8)
    except zlib.error:
        return False
    return inflated[USTAR_MAGIC_OFFSET:USTAR_MAGIC_OFFSET + 5] == b"ustar"


def _merge_tree(src: Path, dst: Path) -> None:
    """Move everything below `src` into `dst`, replacing clashing entries."""
    for child in src.iterdir():
        target = dst / child.name
        if child.is_dir() and target.is_dir() and not target.is_symlink():
            _merge_tree(child, target)
            continue
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        os.replace(child, target)


@contextlib.contextmanager
def _staged_directory(root: Path, atomic: bool) -> Iterator[Path]:
    """Yield the directory to extract into; publish it on success if staged."""
    if not atomic:
        make_dirs(root)
        yield root
        return

    make_dirs(root.parent)
    try:
        staging = Path(tempfile.mkdtemp(prefix=f".{root.name}.", suffix=".partial", dir=root.parent))
    except OSError as e:
        raise FilesystemError(f"Cannot create staging directory next to {root}: {e}") from e
    try:
        yield staging
        try:
            if root.exists():
                _merge_tree(staging, root)
            else:
                os.replace(staging, root)
        except OSError as e:
            raise FilesystemError(f"Cannot move staged output into {root}: {e}") from e
    finally:
        shutil.rmtree(staging, ignore_errors=True)


@contextlib.contextmanager
def _staged_file(dst: Path, atomic: bool) -> Iterator[BinaryIO]:
    """Yield a writable file that ends up at `dst`."""
    if not atomic:
        with create_file(dst) as out:
            yield out
        return

    make_dirs(dst.parent)
    try:
        fd, staging = tempfile.mkstemp(prefix=f".{dst.name}.", suffix=".partial", dir=dst.parent)
    except OSError as e:
        raise FilesystemError(f"Cannot create staging file next to {dst}: {e}") from e
    try:
        with os.fdopen(fd, "wb") as out:
            yield out
        try:
            os.replace(staging, dst)
        except OSError as e:
            raise FilesystemError(f"Cannot move staged output to {dst}: {e}") from e
    finally:
        if os.path.exists(staging):
            os.unlink(staging)


def _drain(stream: ReadStream, chunk_size: int) -> None:
    while stream.read(chunk_size):
        pass


def extract_single(dst_file: str | os.PathLike, stream: ReadStream, *, atomic: bool = False,
                   progress_callback: ProgressCallback | None = None,
                   settings: Settings | None = None) -> Path:
    """Decompress a gzip stream into `dst_file`, overwriting it if present.

    The gzip header is checked before `dst_file` is opened. Without `atomic`,
    corruption found later in the stream leaves a partial file behind.

    Args:
        dst_file: Destination file path.
        stream: Forward-only gzip input.
        atomic: Write to a sibling temporary file and rename on success.
        progress_callback: Called with the number of bytes written.
        settings: Chunk size and friends; defaults to `Settings.from_env()`.

    Returns:
        Path: The written file.

    Raises:
        FormatError: The input is not valid gzip.
        StreamError: Reading the input failed.
        FilesystemError: The destination could not be written.
    """
    settings = settings or Settings.from_env()
    dst = resolve_destination(dst_file)
    decoded = GzipCodec.decode(stream)
    # Reject a bad header before an existing destination is truncated
    decoded.peek(1)
    with _staged_file(dst, atomic) as out:
        size = copy_stream(decoded, out, settings.chunk_size, progress_callback)
    logger.info("Extracted %d bytes to %s", size, dst)
    return dst


def extract_tar_container(dst_dir: str | os.PathLike, stream: ReadStream, *, atomic: bool = False,
                          progress_callback: ProgressCallback | None = None,
                          settings: Settings | None = None) -> Path:
    """Decompress a tar.gz stream and unpack its entries below `dst_dir`.

    Returns:
        Path: The canonical destination directory.
    """
    settings = settings or Settings.from_env()
    root = resolve_destination(dst_dir)
    decoded = GzipCodec.decode(stream)
    with _staged_directory(root, atomic) as target:
        count = TarArchive.extract_tar(target, decoded, settings.chunk_size, progress_callback)
        # The tar end marker comes before the gzip trailer; reading on verifies the CRC
        _drain(decoded, settings.chunk_size)
    logger.info("Extracted %d tar entries to %s", count, root)
    return root


def extract_zip_container(dst_dir: str | os.PathLike, stream: ReadStream, *, atomic: bool = False,
                          progress_callback: ProgressCallback | None = None,
                          settings: Settings | None = None) -> Path:
    """Unpack a zip stream below `dst_dir` without seeking.

    The destination is canonicalized once, before the first entry is read,
    and every entry path is checked against it.

    Returns:
        Path: The canonical destination directory.
    """
    settings = settings or Settings.from_env()
    root = resolve_destination(dst_dir)
    with _staged_directory(root, atomic) as target:
        count = ZipArchive.extract_zip(target, stream, settings.chunk_size, progress_callback)
    logger.info("Extracted %d zip entries to %s", count, root)
    return root


def _walk_excluding(src_dir: Path, dst: Path) -> Iterator[WalkEntry]:
    # The archive being written may live inside the tree being archived
    for entry in Walker.walk(src_dir):
        if entry.absolute_path.resolve() != dst:
            yield entry


def build_single(src_file: str | os.PathLike, dst_file: str | os.PathLike,
                 settings: Settings | None = None) -> Path:
    """Gzip one file into `dst_file`."""
    settings = settings or Settings.from_env()
    dst = resolve_destination(dst_file)
    try:
        src = open(src_file, "rb")
    except OSError as e:
        raise FilesystemError(f"Cannot open {src_file}: {e}") from e
    with src, create_file(dst) as out:
        copy_stream(GzipCodec.encode(src, compresslevel=settings.compresslevel), out, settings.chunk_size)
    return dst


def build_tar_container(src_dir: str | os.PathLike, dst_file: str | os.PathLike,
                        settings: Settings | None = None) -> Path:
    """Archive the tree below `src_dir` as tar.gz into `dst_file`."""
    settings = settings or Settings.from_env()
    dst = resolve_destination(dst_file)
    src = resolve_destination(src_dir)
    entries = _walk_excluding(src, dst)
    with create_file(dst) as out:
        count = TarArchive.build_tar_gz(entries, out, settings.compresslevel, settings.chunk_size)
    logger.info("Wrote %d entries to %s", count, dst)
    return dst


def build_zip_container(src_dir: str | os.PathLike, dst_file: str | os.PathLike,
                        settings: Settings | None = None) -> Path:
    """Archive the tree below `src_dir` as zip into `dst_file`."""
    settings = settings or Settings.from_env()
    dst = resolve_destination(dst_file)
    src = resolve_destination(src_dir)
    entries = _walk_excluding(src, dst)
    with create_file(dst) as out:
        count = ZipArchive.build_zip(entries, out, settings.compresslevel)
    logger.info("Wrote %d entries to %s", count, dst)
    return dst


def location_name(location: str | os.PathLike) -> str:
    """File name part of a URL or path, used as a format hint."""
    location = os.fspath(location)
    if is_url(location):
        return os.path.basename(urlparse(location).path)
    return os.path.basename(location)


def extract(location: str | os.PathLike, dst: str | os.PathLike, *,
            archive_format: ArchiveFormat | None = None, atomic: bool = False,
            progress_callback: ProgressCallback | None = None,
            settings: Settings | None = None) -> Path:
    """Stream a URL or local file and extract it to `dst`.

    Args:
        location: HTTP(S) URL or local path of the archive.
        dst: Destination directory (or file, for single gzip files).
        archive_format: Skip detection and use this format.
        atomic: Stage the output and move it into place on success.
        progress_callback: Called with the number of bytes written.
        settings: Transport and codec settings.

    Returns:
        Path: Where the output landed.
    """
    settings = settings or Settings.from_env()
    with open_source(location, settings) as stream:
        if archive_format is None:
            archive_format = detect_format(stream.peek(PEEK_SIZE), name=location_name(location))
        logger.info("Detected File Format: %s", archive_format.value)

        options = dict(atomic=atomic, progress_callback=progress_callback, settings=settings)
        if archive_format is ArchiveFormat.ZIP:
            return extract_zip_container(dst, stream, **options)
        if archive_format is ArchiveFormat.TAR_GZIP:
            return extract_tar_container(dst, stream, **options)
        return extract_single(dst, stream, **options)


def build(archive_format: ArchiveFormat, src: str | os.PathLike, dst: str | os.PathLike,
          settings: Settings | None = None) -> Path:
    """Dispatch to the builder for `archive_format`."""
    if archive_format is ArchiveFormat.ZIP:
        return build_zip_container(src, dst, settings)
    if archive_format is ArchiveFormat.TAR_GZIP:
        return build_tar_container(src, dst, settings)
    return build_single(src, dst, settings)
