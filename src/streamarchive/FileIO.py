"""Forward-only byte streams and filesystem helpers.

Provides RemoteStream, an io.RawIOBase-compatible stream that reads a remote
file front to back over a single HTTP GET, plus the local counterparts the
extractors need: a forward-only wrapper for local files, a chunked copy with
progress reporting, and destination path containment checks.

Classes:
    RemoteStream: Forward-only HTTP-backed read stream.
    ForwardOnlyReader: Wraps any binary stream and refuses to seek.
"""

from __future__ import annotations

import io
import logging
import os
import time
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterator

import httpx

from .Config import Settings
from .Errors import ArchiveError, FilesystemError, StreamError, UnsafePathError
from .Protocols import ArchiveEntry, ProgressCallback, ReadStream

logger = logging.getLogger(__name__)


class RemoteStream(io.RawIOBase):
    """File-like stream backed by one streaming HTTP GET.

    Unlike a Range-request reader this class never revisits an offset: bytes
    are handed out in the order the server sends them, which is exactly what
    the streaming codecs need and keeps memory bounded by one network chunk.

    Notes:
        Only the initial connection is retried (transport errors and HTTP 429).
        Once the response body has started flowing, a failure is raised as
        `StreamError` and the caller must restart the whole download.

    Attributes:
        url (str): Remote resource URL.
        pos (int): Number of bytes handed to the caller so far.
        client (httpx.Client): HTTP client used for the request.
    """

    def __init__(self, url: str, settings: Settings | None = None, client: httpx.Client | None = None):
        """Open a RemoteStream.

        Args:
            url (str): HTTP(S) URL of the resource to stream.
            settings (Settings | None): Timeouts, attempts and user agent.
                Defaults to `Settings.from_env()`.
            client (httpx.Client | None): Client to issue the request with.
                When given, the caller keeps ownership and `close()` leaves it open.

        Raises:
            StreamError: If the server cannot be reached or answers with an
                error status.
        """
        self.url = url
        self.settings = settings or Settings.from_env()
        self.pos: int = 0
        self._pending: bytes = b""

        self._owns_client = client is None
        if client is None:
            headers = {
                "User-Agent": self.settings.user_agent,
                "Accept": "*/*",
                "Connection": "keep-alive"}
            client = httpx.Client(
                headers=headers,
                follow_redirects=True,
                timeout=httpx.Timeout(self.settings.connect_timeout, read=self.settings.read_timeout))
        self.client = client

        try:
            self._response = self._connect()
        except StreamError:
            self.close()
            raise
        self._chunks: Iterator[bytes] = self._response.iter_bytes(self.settings.chunk_size)

    def _connect(self) -> httpx.Response:
        """Send the GET request, retrying transient failures before any byte is read."""
        attempts = self.settings.connect_attempts
        for attempt in range(attempts):
            try:
                request = self.client.build_request("GET", self.url)
                response = self.client.send(request, stream=True)
            except httpx.TransportError as e:
                if attempt == attempts - 1:
                    raise StreamError(f"Could not connect to {self.url}: {e}") from e
                wait_time = (attempt + 1) * 2
                logger.warning("HTTP error on attempt %d: %s. Retrying after %d seconds.", attempt + 1, e, wait_time)
                time.sleep(wait_time)
                continue

            if response.status_code == 429 and attempt < attempts - 1:
                # Server asks us to retry later; follow Retry-After if present.
                response.close()
                try:
                    wait_time = max(int(response.headers.get("Retry-After", 3)), 1)
                except ValueError:
                    wait_time = 3
                logger.warning("Received 429 Too Many Requests, retrying after %d seconds.", wait_time)
                time.sleep(wait_time)
                continue

            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                response.close()
                raise StreamError(f"Server returned {response.status_code} for {self.url}") from e
            return response

        raise StreamError(f"Giving up on {self.url} after {attempts} attempts")

    @property
    def size(self) -> int | None:
        """Content-Length reported by the server, or None if unknown."""
        length = self._response.headers.get("Content-Length")
        return int(length) if length and length.isdigit() else None

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def tell(self) -> int:
        return self.pos

    def readinto(self, b) -> int:
        """Fill `b` from the response body; returns 0 at end of stream."""
        if not self._pending:
            try:
                self._pending = next(self._chunks, b"")
            except httpx.HTTPError as e:
                raise StreamError(f"Download of {self.url} failed after {self.pos} bytes: {e}") from e
            if not self._pending:
                return 0
        n = min(len(b), len(self._pending))
        b[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        self.pos += n
        return n

    def close(self):
        """Close the HTTP response and, if we created it, the client."""
        if not self.closed:
            # The constructor may have failed before the response existed
            response = getattr(self, "_response", None)
            if response is not None:
                response.close()
            if self._owns_client and hasattr(self, "client"):
                self.client.close()
        super().close()


class ForwardOnlyReader(io.RawIOBase):
    """Read-only view of a binary stream that can only move forward.

    Local files are wrapped in this class before they reach a codec so that
    reading a file on disk exercises exactly the same code path as a network
    download: any attempt to seek raises `io.UnsupportedOperation`.
    """

    def __init__(self, raw: BinaryIO):
        self.raw = raw
        self.pos = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        raise io.UnsupportedOperation("ForwardOnlyReader does not support seeking")

    def tell(self) -> int:
        return self.pos

    def readinto(self, b) -> int:
        data = self.raw.read(len(b))
        n = len(data)
        b[:n] = data
        self.pos += n
        return n

    def close(self):
        if not self.closed:
            self.raw.close()
        super().close()


def is_url(location: str) -> bool:
    return location.startswith(("http://", "https://"))


def open_source(location: str | os.PathLike, settings: Settings | None = None) -> io.BufferedReader:
    """Open a URL or a local path as a buffered, forward-only stream.

    The buffer gives callers `peek()` for magic byte detection without ever
    seeking the underlying source.

    Raises:
        StreamError: If the source cannot be opened.
    """
    settings = settings or Settings.from_env()
    location = os.fspath(location)
    if is_url(location):
        raw: io.RawIOBase = RemoteStream(location, settings=settings)
    else:
        try:
            raw = ForwardOnlyReader(open(location, "rb"))
        except OSError as e:
            raise StreamError(f"Cannot open {location}: {e}") from e
    return io.BufferedReader(raw, buffer_size=settings.chunk_size)


def copy_stream(src: ReadStream, dst: BinaryIO, chunk_size: int | None = None,
                progress_callback: ProgressCallback | None = None) -> int:
    """Copy `src` into `dst` chunk by chunk.

    Args:
        src (ReadStream): Forward-readable source.
        dst (BinaryIO): Writable destination.
        chunk_size (int | None): Bytes per read; defaults to the configured chunk size.
        progress_callback (callable|None): Called with the number of bytes
            written after each write.

    Returns:
        int: Total bytes copied.

    Raises:
        StreamError: Reading the source failed.
        FilesystemError: Writing the destination failed.
        FormatError: The source is a decoder that found invalid data.
    """
    chunk_size = chunk_size or Settings.from_env().chunk_size
    total = 0
    while True:
        try:
            chunk = src.read(chunk_size)
        except ArchiveError:
            raise
        except OSError as e:
            raise StreamError(f"Reading input failed after {total} bytes: {e}") from e
        if not chunk:
            break
        try:
            dst.write(chunk)
        except OSError as e:
            raise FilesystemError(f"Writing output failed after {total} bytes: {e}") from e
        total += len(chunk)
        if progress_callback:
            progress_callback(len(chunk))
    return total


def resolve_destination(path: str | os.PathLike) -> Path:
    """Canonicalize an extraction root once, before any entry is read.

    Falls back to the absolute form of `path` when it cannot be resolved
    (e.g. the directory is not created yet).
    """
    path = Path(path)
    try:
        return path.resolve()
    except (OSError, RuntimeError):
        return path.absolute()


def normalize_entry_name(name: str) -> str:
    """Normalize an archive entry name to a canonical forward-slash form.

    Rules:
    - Convert backslashes to slashes
    - Remove empty and '.' segments
    - Reject absolute names, drive letters and '..' segments

    Returns an empty string for names that denote the archive root ("./").

    Raises:
        UnsafePathError: If the name could escape the destination root.
    """
    posix = name.replace("\\", "/")
    if posix.startswith("/") or (len(posix) > 1 and posix[1] == ":"):
        raise UnsafePathError(f"Absolute archive entry path: {name!r}")
    parts = [part for part in PurePosixPath(posix).parts if part not in ("", ".")]
    if ".." in parts:
        raise UnsafePathError(f"Archive entry path escapes the destination: {name!r}")
    return "/".join(parts)


def safe_join(root: Path, name: str) -> Path:
    """Resolve an entry name below `root`, refusing anything that lands outside it.

    Raises:
        UnsafePathError: If the entry is absolute, contains '..', or resolves
            (through an existing symlink) outside `root`.
    """
    relative = normalize_entry_name(name)
    target = root.joinpath(*relative.split("/")) if relative else root
    real_root = root.resolve()
    resolved = target.resolve()
    if resolved != real_root and real_root not in resolved.parents:
        raise UnsafePathError(f"Unsafe archive entry path detected: {name!r}")
    return target


def make_dirs(path: Path) -> None:
    """Create `path` and its ancestors; an existing directory is fine."""
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"Cannot create directory {path}: {e}") from e


def create_file(path: Path) -> BinaryIO:
    """Create (or truncate) `path` for writing, creating missing ancestors."""
    make_dirs(path.parent)
    try:
        return open(path, "wb")
    except OSError as e:
        raise FilesystemError(f"Cannot create file {path}: {e}") from e


def materialize(root: Path, entry: ArchiveEntry, chunk_size: int | None = None,
                progress_callback: ProgressCallback | None = None) -> Path:
    """Create one archive entry below `root` and return where it landed.

    Directories are created idempotently with their ancestors. Files get their
    missing ancestors, are created (or truncated) and receive the entry body
    chunk by chunk, so the entry is never held in memory as a whole.
    """
    target = safe_join(root, entry.relative_path)
    if entry.is_dir:
        make_dirs(target)
        return target

    with create_file(target) as out:
        copy_stream(entry.body, out, chunk_size, progress_callback)
    try:
        if entry.mode is not None:
            # Permission bits only, and the owner keeps read/write so re-extraction works
            os.chmod(target, (entry.mode & 0o777) | 0o600)
        if entry.mtime is not None:
            os.utime(target, (entry.mtime, entry.mtime))
    except OSError as e:
        raise FilesystemError(f"Cannot set attributes of {target}: {e}") from e
    return target
