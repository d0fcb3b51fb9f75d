"""streamarchive package initializer.

This module provides the package-level public surface for the
`streamarchive` library, which extracts and builds gzip, tar.gz and zip
containers while reading the input strictly front to back:

- __version__: Package version string.
- extract_single / extract_tar_container / extract_zip_container: the
  extractors, each taking a destination and a forward-readable stream.
- build_single / build_tar_container / build_zip_container: the builders.
- extract: Convenience function that streams a URL or path and dispatches
  on the detected format.
- RemoteStream / ForwardOnlyReader / open_source: forward-only inputs.
- ZipFileReader: the streaming zip decoder, for callers that want entries
  one at a time instead of files on disk.
- The error classes from `streamarchive.Errors`.
- cli: The CLI entrypoint (click group) exposed for programmatic use.

Importing the package is cheap: no network or disk I/O happens until one of
the functions is called.

Example:
    from streamarchive import extract
    extract("https://example.com/tool.tar.gz", "tools/")

"""

# Public version string
__version__ = "0.1.0"

from .ArchiveEngine import (
    ArchiveFormat,
    build,
    build_single,
    build_tar_container,
    build_zip_container,
    detect_format,
    extract,
    extract_single,
    extract_tar_container,
    extract_zip_container,
)
from .Config import Settings

# Expose the CLI group so callers can reuse or register it in other tools.
from .CLI import cli  # click group
from .Errors import (
    ArchiveError,
    FilesystemError,
    FormatError,
    StaleReaderError,
    StreamError,
    UnsafePathError,
)
from .FileIO import ForwardOnlyReader, RemoteStream, open_source
from .Protocols import ArchiveEntry, EntryKind, ReadStream, WalkEntry
from .Walker import walk
from .ZipArchive import ZipEntry, ZipEntryReading, ZipFileReader

# Define the public API
__all__ = [
    "__version__",
    "ArchiveFormat",
    "build",
    "build_single",
    "build_tar_container",
    "build_zip_container",
    "detect_format",
    "extract",
    "extract_single",
    "extract_tar_container",
    "extract_zip_container",
    "Settings",
    "cli",
    "ArchiveError",
    "FilesystemError",
    "FormatError",
    "StaleReaderError",
    "StreamError",
    "UnsafePathError",
    "ForwardOnlyReader",
    "RemoteStream",
    "open_source",
    "ArchiveEntry",
    "EntryKind",
    "ReadStream",
    "WalkEntry",
    "walk",
    "ZipEntry",
    "ZipEntryReading",
    "ZipFileReader",
]
