"""Gzip codec over forward-only streams.

Both directions are lazy pass-through filters: `decode` inflates as the
caller reads and `encode` deflates as the caller reads, so neither holds more
than one chunk of input in memory.
"""

from __future__ import annotations

import gzip
import io
import zlib

from .Config import DEFAULT_CHUNK_SIZE, DEFAULT_COMPRESSLEVEL
from .Errors import ArchiveError, FormatError, StreamError
from .Protocols import ReadStream

# wbits for zlib that select the gzip wrapper (header + CRC32/ISIZE trailer)
GZIP_WBITS = 16 + zlib.MAX_WBITS
GZIP_MAGIC = b"\x1f\x8b"


class _CountingReader:
    """Tracks how many bytes the gzip reader pulled from the source."""

    def __init__(self, stream: ReadStream):
        self.stream = stream
        self.count = 0

    def read(self, size: int = -1) -> bytes:
        data = self.stream.read(size)
        self.count += len(data)
        return data


class GzipDecoder(io.RawIOBase):
    """Readable stream of the inflated bytes of a gzip stream.

    Header, CRC-32 and length errors are raised as `FormatError` from the
    `read` call that detects them, which may be after earlier reads already
    returned data.
    """

    def __init__(self, stream: ReadStream):
        self._source = _CountingReader(stream)
        self._gzip = gzip.GzipFile(fileobj=self._source, mode="rb")

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        try:
            data = self._gzip.read(len(b))
        except ArchiveError:
            raise
        except (gzip.BadGzipFile, zlib.error) as e:
            raise FormatError(f"Invalid gzip data: {e}") from e
        except EOFError as e:
            raise FormatError(f"Truncated gzip stream: {e}") from e
        except OSError as e:
            raise StreamError(f"Reading gzip input failed: {e}") from e
        if not data and self._source.count == 0:
            raise FormatError("Empty input is not a gzip stream")
        n = len(data)
        b[:n] = data
        return n

    def close(self):
        if not self.closed:
            self._gzip.close()
        super().close()


class GzipEncoder(io.RawIOBase):
    """Readable stream of the gzip-compressed form of `stream`."""

    def __init__(self, stream: ReadStream, compresslevel: int = DEFAULT_COMPRESSLEVEL,
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._stream = stream
        self._chunk_size = chunk_size
        self._compressor = zlib.compressobj(compresslevel, zlib.DEFLATED, GZIP_WBITS)
        self._buffer = b""
        self._finished = False

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        while not self._buffer and not self._finished:
            try:
                chunk = self._stream.read(self._chunk_size)
            except ArchiveError:
                raise
            except OSError as e:
                raise StreamError(f"Reading input to compress failed: {e}") from e
            if chunk:
                self._buffer = self._compressor.compress(chunk)
            else:
                # Emits the remaining deflate data and the CRC32/ISIZE trailer
                self._buffer = self._compressor.flush()
                self._finished = True
        n = min(len(b), len(self._buffer))
        b[:n] = self._buffer[:n]
        self._buffer = self._buffer[n:]
        return n


def decode(stream: ReadStream) -> io.BufferedReader:
    """Lazily inflate a gzip stream. Works on non-seekable input."""
    return io.BufferedReader(GzipDecoder(stream))


def encode(stream: ReadStream, compresslevel: int = DEFAULT_COMPRESSLEVEL) -> io.BufferedReader:
    """Lazily deflate `stream`, appending the gzip trailer at end of input."""
    return io.BufferedReader(GzipEncoder(stream, compresslevel=compresslevel))
