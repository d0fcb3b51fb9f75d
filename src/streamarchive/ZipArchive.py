"""Streaming ZIP codec.

Reading never looks at the central directory. Entries are decoded from their
local file headers as the bytes arrive, which lets a ZIP be extracted
straight off a network download. The reader is an explicit state machine:

    ZipFileReader.next_with_entry()  -> ZipEntryReading | None   (Seeking-Entry)
    ZipEntryReading.reader                                       (Has-Entry)
    ZipEntryReading.done()           -> ZipFileReader            (back to Seeking-Entry)
    None                                                         (Done)

Each transition hands the remaining stream to a new object and marks the old
one stale, so a previous entry's reader can never be used to read into the
next entry.

Writing goes through the stdlib `zipfile` module, which keeps track of every
entry's offset and emits the central directory on close.
"""

from __future__ import annotations

import io
import logging
import struct
import time
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, Optional, Tuple

from .Config import DEFAULT_CHUNK_SIZE, DEFAULT_COMPRESSLEVEL
from .Errors import ArchiveError, FilesystemError, FormatError, StaleReaderError, StreamError
from .FileIO import materialize, normalize_entry_name
from .Protocols import ArchiveEntry, EntryKind, ProgressCallback, ReadStream, WalkEntry

logger = logging.getLogger(__name__)

# Record signatures
LOCAL_FILE_HEADER = b"PK\x03\x04"
CENTRAL_DIR_HEADER = b"PK\x01\x02"
END_OF_CENTRAL_DIR = b"PK\x05\x06"
ZIP64_END_OF_CENTRAL_DIR = b"PK\x06\x06"
ZIP64_END_OF_CENTRAL_DIR_LOCATOR = b"PK\x06\x07"
ARCHIVE_EXTRA_DATA = b"PK\x06\x08"
DIGITAL_SIGNATURE = b"PK\x05\x05"
DATA_DESCRIPTOR = b"PK\x07\x08"

# Any of these means the local entries are over
TRAILER_SIGNATURES = frozenset({
    CENTRAL_DIR_HEADER,
    END_OF_CENTRAL_DIR,
    ZIP64_END_OF_CENTRAL_DIR,
    ZIP64_END_OF_CENTRAL_DIR_LOCATOR,
    ARCHIVE_EXTRA_DATA,
    DIGITAL_SIGNATURE,
})

# Local file header after the signature
_LOCAL_HEADER = struct.Struct("<HHHHHIIIHH")
_EXTRA_FIELD = struct.Struct("<HH")
_DESCRIPTOR_32 = struct.Struct("<III")
_DESCRIPTOR_64 = struct.Struct("<IQQ")

FLAG_ENCRYPTED = 0x0001
FLAG_DATA_DESCRIPTOR = 0x0008
FLAG_UTF8 = 0x0800

METHOD_STORED = 0
METHOD_DEFLATE = 8
SUPPORTED_METHODS = {METHOD_STORED: "stored", METHOD_DEFLATE: "deflate"}

ZIP64_EXTRA_TAG = 0x0001
ZIP64_LIMIT = 0xFFFFFFFF


class _Cursor:
    """Owns the forward-only input and the bytes a decoder read too far.

    Deflate decoders may pull bytes past the end of an entry; those are pushed
    back here so the next header read sees them. Nothing is ever re-read from
    the underlying stream.
    """

    def __init__(self, stream: ReadStream):
        self._stream = stream
        self._pending = b""
        self.offset = 0

    def read(self, size: int) -> bytes:
        if self._pending:
            data = self._pending[:size]
            self._pending = self._pending[size:]
        else:
            try:
                data = self._stream.read(size)
            except ArchiveError:
                raise
            except OSError as e:
                raise StreamError(f"Reading zip input failed at offset {self.offset}: {e}") from e
        self.offset += len(data)
        return data

    def read_exact(self, size: int, what: str) -> bytes:
        parts = []
        remaining = size
        while remaining > 0:
            data = self.read(remaining)
            if not data:
                raise FormatError(f"Truncated {what} at offset {self.offset}")
            parts.append(data)
            remaining -= len(data)
        return b"".join(parts)

    def unread(self, data: bytes) -> None:
        self._pending = data + self._pending
        self.offset -= len(data)


@dataclass(frozen=True)
class ZipEntry:
    """Metadata decoded from a local file header.

    For entries with a data descriptor, `crc32` and the sizes are None until
    the body has been read; the descriptor values are then checked by the reader.
    """

    filename: str
    flags: int
    method: int
    crc32: Optional[int]
    compressed_size: Optional[int]
    uncompressed_size: Optional[int]
    date_time: Tuple[int, int, int, int, int, int]
    zip64: bool = False

    @property
    def is_dir(self) -> bool:
        return self.filename.endswith(("/", "\\"))

    @property
    def has_data_descriptor(self) -> bool:
        return bool(self.flags & FLAG_DATA_DESCRIPTOR)

    @property
    def mtime(self) -> Optional[float]:
        try:
            return time.mktime(self.date_time + (0, 0, -1))
        except (OverflowError, ValueError):
            return None


def _decode_dos_time(dostime: int, dosdate: int) -> Tuple[int, int, int, int, int, int]:
    return ((dosdate >> 9) + 1980, (dosdate >> 5) & 0xF, dosdate & 0x1F,
            dostime >> 11, (dostime >> 5) & 0x3F, (dostime & 0x1F) * 2)


def _zip64_sizes(extra: bytes, compressed_size: int, uncompressed_size: int) -> Optional[Tuple[int, int]]:
    """Return the (compressed, uncompressed) sizes from a zip64 extra field, if present."""
    pos = 0
    while pos + _EXTRA_FIELD.size <= len(extra):
        tag, length = _EXTRA_FIELD.unpack_from(extra, pos)
        pos += _EXTRA_FIELD.size
        field = extra[pos:pos + length]
        pos += length
        if tag != ZIP64_EXTRA_TAG:
            continue
        values = [v for (v,) in struct.iter_unpack("<Q", field[:len(field) - len(field) % 8])]
        # Local headers store the uncompressed size first
        if uncompressed_size == ZIP64_LIMIT or len(values) >= 2:
            if not values:
                raise FormatError("Zip64 extra field lacks the uncompressed size")
            uncompressed_size = values.pop(0)
        if compressed_size == ZIP64_LIMIT or values:
            if not values:
                raise FormatError("Zip64 extra field lacks the compressed size")
            compressed_size = values.pop(0)
        return compressed_size, uncompressed_size
    return None


def _read_local_header(cursor: _Cursor) -> ZipEntry:
    header_offset = cursor.offset - len(LOCAL_FILE_HEADER)
    fields = _LOCAL_HEADER.unpack(cursor.read_exact(_LOCAL_HEADER.size, "local file header"))
    (_version, flags, method, dostime, dosdate, crc, compressed_size,
     uncompressed_size, name_length, extra_length) = fields
    raw_name = cursor.read_exact(name_length, "entry name")
    extra = cursor.read_exact(extra_length, "extra field")

    if not raw_name:
        raise FormatError(f"Zip entry at offset {header_offset} has no name")
    # Bit 11 marks UTF-8 names; everything else is CP437 per the format
    try:
        filename = raw_name.decode("utf-8" if flags & FLAG_UTF8 else "cp437")
    except UnicodeDecodeError as e:
        raise FormatError(f"Zip entry at offset {header_offset} has an undecodable name") from e
    if flags & FLAG_ENCRYPTED:
        raise FormatError(f"Encrypted zip entries are not supported: {filename!r}")
    if method not in SUPPORTED_METHODS:
        raise FormatError(f"Unsupported compression method {method} for {filename!r}")

    zip64 = _zip64_sizes(extra, compressed_size, uncompressed_size)
    if zip64:
        compressed_size, uncompressed_size = zip64

    crc32: Optional[int] = crc
    if flags & FLAG_DATA_DESCRIPTOR:
        if method == METHOD_STORED and not compressed_size and not filename.endswith(("/", "\\")):
            # Stored data has no terminator, so without a size there is no way to find its end
            raise FormatError(f"Stored zip entry {filename!r} has no size in its local header")
        crc32 = None
        if method != METHOD_STORED:
            compressed_size = None
        uncompressed_size = None

    return ZipEntry(
        filename=filename,
        flags=flags,
        method=method,
        crc32=crc32,
        compressed_size=compressed_size,
        uncompressed_size=uncompressed_size,
        date_time=_decode_dos_time(dostime, dosdate),
        zip64=zip64 is not None,
    )


class ZipEntryReader(io.RawIOBase):
    """Reader over the decompressed body of the live zip entry.

    The CRC-32 and size of the decompressed data are checked once the body's
    end is reached; a mismatch raises `FormatError` from that read.
    """

    def __init__(self, cursor: _Cursor, entry: ZipEntry, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.entry = entry
        self._cursor = cursor
        self._chunk_size = chunk_size
        self._remaining = entry.compressed_size
        self._decompressor = zlib.decompressobj(-zlib.MAX_WBITS) if entry.method == METHOD_DEFLATE else None
        self._buffer = b""
        self._crc = 0
        self._size = 0
        self._compressed_read = 0
        self._eof = False
        self._stale = False

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if self._stale:
            raise StaleReaderError(f"Entry {self.entry.filename!r} was already finished")
        while not self._buffer and not self._eof:
            self._buffer = self._fill()
        n = min(len(b), len(self._buffer))
        b[:n] = self._buffer[:n]
        self._buffer = self._buffer[n:]
        return n

    def drain(self) -> None:
        """Read and discard whatever is left of the body."""
        while self.read(self._chunk_size):
            pass

    def invalidate(self) -> None:
        self._stale = True

    def _read_compressed(self, size: int) -> bytes:
        if self._remaining is not None:
            size = min(size, self._remaining)
        data = self._cursor.read(size)
        if not data:
            raise FormatError(f"Truncated data for zip entry {self.entry.filename!r}")
        if self._remaining is not None:
            self._remaining -= len(data)
        self._compressed_read += len(data)
        return data

    def _fill(self) -> bytes:
        if self._decompressor is None:
            if self._remaining == 0:
                self._finish()
                return b""
            data = self._read_compressed(self._chunk_size)
        else:
            if self._decompressor.eof or (self._remaining == 0 and not self._compressed_read):
                # An empty body may be stored without any deflate data at all
                self._finish()
                return b""
            if self._decompressor.unconsumed_tail:
                raw = self._decompressor.unconsumed_tail
            elif self._remaining == 0:
                # Flush output zlib still holds; no new input is left
                raw = b""
            else:
                raw = self._read_compressed(self._chunk_size)
            try:
                data = self._decompressor.decompress(raw, self._chunk_size)
            except zlib.error as e:
                raise FormatError(f"Corrupt deflate data in {self.entry.filename!r}: {e}") from e
            if not raw and not data and not self._decompressor.eof:
                raise FormatError(f"Deflate data of {self.entry.filename!r} ends before its terminator")
            if self._decompressor.eof and self._decompressor.unused_data:
                # Bytes past the deflate terminator belong to whatever follows
                unused = self._decompressor.unused_data
                self._cursor.unread(unused)
                self._compressed_read -= len(unused)
                if self._remaining is not None:
                    self._remaining += len(unused)
        self._crc = zlib.crc32(data, self._crc)
        self._size += len(data)
        return data

    def _finish(self) -> None:
        """Skip padding, read the data descriptor, and verify the body."""
        self._eof = True
        entry = self.entry
        if self._remaining:
            # Compressed size in the header covers more than the deflate stream
            self._cursor.read_exact(self._remaining, f"data of {entry.filename!r}")
            self._compressed_read += self._remaining
            self._remaining = 0

        expected_crc = entry.crc32
        expected_size = entry.uncompressed_size
        if entry.has_data_descriptor:
            expected_crc, compressed_size, expected_size = self._read_descriptor()
            if compressed_size != self._compressed_read:
                raise FormatError(
                    f"Compressed size of {entry.filename!r} is {self._compressed_read}, "
                    f"descriptor says {compressed_size}")

        if expected_size is not None and expected_size != self._size:
            raise FormatError(f"Size of {entry.filename!r} is {self._size}, expected {expected_size}")
        if expected_crc is not None and expected_crc != self._crc:
            raise FormatError(f"CRC-32 mismatch for {entry.filename!r}")

    def _read_descriptor(self) -> Tuple[int, int, int]:
        # The descriptor signature is optional
        signature = self._cursor.read_exact(4, "data descriptor")
        if signature != DATA_DESCRIPTOR:
            self._cursor.unread(signature)
        layout = _DESCRIPTOR_64 if self.entry.zip64 else _DESCRIPTOR_32
        return layout.unpack(self._cursor.read_exact(layout.size, "data descriptor"))


class ZipEntryReading:
    """The Has-Entry state: one live entry and the reader over its body.

    Call `done()` to move on. It drains the body if the caller did not, and it
    returns the reader for the rest of the stream.
    """

    def __init__(self, cursor: _Cursor, entry: ZipEntry, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.entry = entry
        self._cursor = cursor
        self._chunk_size = chunk_size
        self._reader = ZipEntryReader(cursor, entry, chunk_size)
        self._done = False

    @property
    def reader(self) -> ZipEntryReader:
        if self._done:
            raise StaleReaderError(f"Entry {self.entry.filename!r} was already finished")
        return self._reader

    def archive_entry(self) -> Optional[ArchiveEntry]:
        """Describe the live entry as an `ArchiveEntry` with a normalized path.

        Returns None for entries that name the archive root itself.

        Raises:
            UnsafePathError: If the entry name could escape the destination.
        """
        relative = normalize_entry_name(self.entry.filename)
        if not relative:
            if not self.entry.is_dir:
                raise FormatError(f"Zip file entry without a usable name: {self.entry.filename!r}")
            return None
        if self.entry.is_dir:
            return ArchiveEntry(relative, EntryKind.DIRECTORY)
        return ArchiveEntry(relative, EntryKind.FILE, size=self.entry.uncompressed_size,
                            body=self.reader, mtime=self.entry.mtime)

    def done(self) -> "ZipFileReader":
        if self._done:
            raise StaleReaderError(f"done() was already called for {self.entry.filename!r}")
        self._reader.drain()
        self._reader.invalidate()
        self._done = True
        return ZipFileReader._resume(self._cursor, self._chunk_size)


class ZipFileReader:
    """The Seeking-Entry state of the streaming zip decoder.

    Example:
        reader = ZipFileReader(stream)
        while (item := reader.next_with_entry()) is not None:
            data = item.reader.read()
            reader = item.done()
    """

    def __init__(self, stream: ReadStream, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._cursor = _Cursor(stream)
        self._chunk_size = chunk_size
        self._consumed = False
        self._finished = False

    @classmethod
    def _resume(cls, cursor: _Cursor, chunk_size: int) -> "ZipFileReader":
        reader = cls.__new__(cls)
        reader._cursor = cursor
        reader._chunk_size = chunk_size
        reader._consumed = False
        reader._finished = False
        return reader

    def next_with_entry(self) -> Optional[ZipEntryReading]:
        """Advance to the next entry, or return None once the entries are over.

        Raises:
            FormatError: On an unknown record signature or a truncated header.
            StaleReaderError: If this reader already produced an entry.
        """
        if self._consumed:
            raise StaleReaderError("This zip reader already handed out an entry; use the reader from done()")
        if self._finished:
            return None

        signature = self._cursor.read(4)
        if len(signature) < 4 and signature:
            signature += self._cursor.read_exact(4 - len(signature), "record signature")
        if not signature or signature in TRAILER_SIGNATURES:
            self._finished = True
            return None
        if signature != LOCAL_FILE_HEADER:
            raise FormatError(
                f"Unexpected zip record signature {signature.hex()} at offset {self._cursor.offset - 4}")

        entry = _read_local_header(self._cursor)
        logger.debug("Zip entry %r (%s)", entry.filename, SUPPORTED_METHODS[entry.method])
        self._consumed = True
        return ZipEntryReading(self._cursor, entry, self._chunk_size)


def extract_zip(root: Path, stream: ReadStream, chunk_size: int = DEFAULT_CHUNK_SIZE,
                progress_callback: ProgressCallback | None = None) -> int:
    """Unpack every entry of a zip stream below `root`.

    Args:
        root (Path): Canonicalized destination directory.
        stream (ReadStream): Forward-only zip input.
        chunk_size (int): Bytes per read while copying entry bodies.
        progress_callback (callable|None): Called with bytes written.

    Returns:
        int: Number of entries processed.
    """
    count = 0
    reader = ZipFileReader(stream, chunk_size)
    while (item := reader.next_with_entry()) is not None:
        entry = item.archive_entry()
        if entry is not None:
            materialize(root, entry, chunk_size, progress_callback)
            count += 1
        reader = item.done()
    logger.debug("Extracted %d zip entries into %s", count, root)
    return count


class ZipFileWriter:
    """Sequential zip writer.

    Each entry is written as local header plus compressed payload. The
    central directory is emitted by `close()`. The output does not need to
    be seekable; `zipfile` falls back to data descriptors in that case.
    """

    def __init__(self, out: BinaryIO, compresslevel: int = DEFAULT_COMPRESSLEVEL):
        self._compresslevel = compresslevel
        self._zip = zipfile.ZipFile(out, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=compresslevel)

    def add_directory(self, relative_path: str, date_time: Tuple[int, ...] | None = None) -> None:
        date_time = date_time or time.localtime()[:6]
        if date_time[0] < 1980:
            date_time = (1980, 1, 1, 0, 0, 0)
        info = zipfile.ZipInfo(relative_path.rstrip("/") + "/", date_time)
        info.external_attr = (0o40755 << 16) | 0x10
        self._zip.writestr(info, b"", compress_type=zipfile.ZIP_STORED)

    def write_entry_whole(self, info: zipfile.ZipInfo, data: bytes) -> None:
        # writestr only applies the archive level to entries named by a string
        self._zip.writestr(info, data, compress_type=zipfile.ZIP_DEFLATED, compresslevel=self._compresslevel)

    def add_file(self, path: Path, relative_path: str) -> None:
        # Header needs size and CRC before the data, so read the whole file
        info = zipfile.ZipInfo.from_file(path, arcname=relative_path, strict_timestamps=False)
        self.write_entry_whole(info, path.read_bytes())

    def close(self) -> None:
        self._zip.close()

    def __enter__(self) -> "ZipFileWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def build_zip(entries: Iterable[WalkEntry], out: BinaryIO, compresslevel: int = DEFAULT_COMPRESSLEVEL) -> int:
    """Write walker entries into a zip container on `out`.

    Args:
        entries (Iterable[WalkEntry]): Files and directories to store.
        out (BinaryIO): Writable destination; seeking is not required.

    Returns:
        int: Number of entries written.
    """
    count = 0
    with ZipFileWriter(out, compresslevel) as writer:
        for entry in entries:
            try:
                if entry.is_dir:
                    mtime = time.localtime(entry.absolute_path.stat().st_mtime)
                    writer.add_directory(entry.relative_path, mtime[:6])
                else:
                    writer.add_file(entry.absolute_path, entry.relative_path)
            except OSError as e:
                raise FilesystemError(f"Cannot add {entry.absolute_path} to zip: {e}") from e
            count += 1
    return count
