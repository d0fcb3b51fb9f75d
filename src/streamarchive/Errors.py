"""Exception hierarchy for streamarchive.

Every failure raised by the codecs and the extraction/build facade is one of
the classes below, so callers only need to catch `ArchiveError`. The original
low-level exception (OSError, zlib.error, httpx.HTTPError, ...) is always
chained as `__cause__`.
"""


class ArchiveError(Exception):
    """Base class for streamarchive errors."""


class StreamError(ArchiveError):
    """Reading the input or writing the output stream failed (network, disk)."""


class FormatError(ArchiveError):
    """The container framing is structurally invalid or unsupported."""


class UnsafePathError(FormatError):
    """An archive entry would be written outside the destination root."""


class FilesystemError(ArchiveError):
    """Creating a file or directory under the destination failed."""


class StaleReaderError(ArchiveError):
    """A zip entry reader was used after ownership of the stream moved on."""
