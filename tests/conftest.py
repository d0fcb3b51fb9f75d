"""Shared fixtures: the sample tree and forward-only test streams."""

from __future__ import annotations

import io
import logging
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def reset_package_logger():
    # configure_logging stops propagation, which would hide records from caplog
    logger = logging.getLogger("streamarchive")
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


class NoRewindReader(io.RawIOBase):
    """In-memory input that refuses to go backwards.

    Every seek attempt is recorded and raises, so a test can assert that a
    decoder consumed its input strictly front to back.
    """

    def __init__(self, data: bytes, chunk_limit: int | None = None):
        self._data = data
        self._pos = 0
        self._chunk_limit = chunk_limit
        self.seek_attempts = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def seek(self, offset, whence=io.SEEK_SET):
        self.seek_attempts += 1
        raise io.UnsupportedOperation("backward read attempted on a forward-only stream")

    def tell(self) -> int:
        return self._pos

    def readinto(self, b) -> int:
        size = len(b)
        if self._chunk_limit:
            size = min(size, self._chunk_limit)
        data = self._data[self._pos:self._pos + size]
        b[:len(data)] = data
        self._pos += len(data)
        return len(data)


class WriteOnlySink:
    """A destination that can only be appended to, like a socket."""

    def __init__(self):
        self.buffer = io.BytesIO()

    def write(self, data) -> int:
        return self.buffer.write(data)

    def flush(self) -> None:
        pass

    def getvalue(self) -> bytes:
        return self.buffer.getvalue()


def assert_file_content(path: Path, content: str) -> None:
    assert path.exists(), f"file not found: {path}"
    assert path.read_text() == content


@pytest.fixture
def test_data(tmp_path: Path) -> Path:
    src = tmp_path / "src"
    src.mkdir()
    (src / "test").write_text("Hello world.")
    (src / "foo").mkdir()
    (src / "foo" / "bar.txt").write_text("Foo bar.")
    return src
