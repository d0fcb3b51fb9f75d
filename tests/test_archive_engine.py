from __future__ import annotations

import gzip
import io
import tarfile
import zipfile
from pathlib import Path

import pytest

from conftest import NoRewindReader, assert_file_content
from streamarchive import ArchiveEngine
from streamarchive.ArchiveEngine import ArchiveFormat, detect_format
from streamarchive.Errors import FormatError, StreamError
from streamarchive.Protocols import ArchiveEntry, EntryKind


def stored_zip(entries) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as zf:
        for name, data in entries:
            zf.writestr(name, data)
    return buffer.getvalue()


def broken_second_entry_zip() -> bytes:
    data = bytearray(stored_zip([("a.txt", b"hello"), ("b.txt", b"world")]))
    # First entry: 30 byte header + 5 byte name + 5 byte body; then the same for b.txt
    data[40 + 35] ^= 0xFF
    return bytes(data)


def assert_sample_tree(root: Path) -> None:
    assert (root / "foo").is_dir()
    assert_file_content(root / "test", "Hello world.")
    assert_file_content(root / "foo" / "bar.txt", "Foo bar.")


def test_zip_round_trip(test_data: Path, tmp_path: Path):
    archive = ArchiveEngine.build_zip_container(test_data, tmp_path / "out.zip")
    dst = tmp_path / "dst"

    result = ArchiveEngine.extract_zip_container(dst, NoRewindReader(archive.read_bytes(), chunk_limit=3))

    assert result == dst.resolve()
    assert_sample_tree(dst)


def test_tar_round_trip(test_data: Path, tmp_path: Path):
    archive = ArchiveEngine.build_tar_container(test_data, tmp_path / "out.tar.gz")
    dst = tmp_path / "dst"

    ArchiveEngine.extract_tar_container(dst, NoRewindReader(archive.read_bytes()))

    assert_sample_tree(dst)


def test_single_round_trip(test_data: Path, tmp_path: Path):
    archive = ArchiveEngine.build_single(test_data / "test", tmp_path / "test.gz")
    assert gzip.decompress(archive.read_bytes()) == b"Hello world."

    result = ArchiveEngine.extract_single(tmp_path / "out" / "test", NoRewindReader(archive.read_bytes()))

    assert_file_content(result, "Hello world.")


def test_extract_single_overwrites(tmp_path: Path):
    dst = tmp_path / "out.txt"
    dst.write_text("a much longer previous content")

    ArchiveEngine.extract_single(dst, io.BytesIO(gzip.compress(b"new")))

    assert dst.read_bytes() == b"new"


@pytest.mark.parametrize("builder, extractor", [
    (ArchiveEngine.build_zip_container, ArchiveEngine.extract_zip_container),
    (ArchiveEngine.build_tar_container, ArchiveEngine.extract_tar_container),
])
def test_container_extraction_is_idempotent(test_data: Path, tmp_path: Path, builder, extractor):
    data = builder(test_data, tmp_path / "out.archive").read_bytes()
    dst = tmp_path / "dst"

    extractor(dst, io.BytesIO(data))
    first = {p.relative_to(dst).as_posix(): (p.is_dir(), p.stat().st_mode) for p in dst.rglob("*")}
    extractor(dst, io.BytesIO(data))
    second = {p.relative_to(dst).as_posix(): (p.is_dir(), p.stat().st_mode) for p in dst.rglob("*")}

    assert_sample_tree(dst)
    assert sorted(second) == ["foo", "foo/bar.txt", "test"]
    assert first == second


def test_single_extraction_is_idempotent(test_data: Path, tmp_path: Path):
    data = ArchiveEngine.build_single(test_data / "test", tmp_path / "test.gz").read_bytes()
    dst = tmp_path / "out.txt"

    ArchiveEngine.extract_single(dst, io.BytesIO(data))
    ArchiveEngine.extract_single(dst, io.BytesIO(data))

    assert_file_content(dst, "Hello world.")
    assert sorted(p.name for p in tmp_path.iterdir()) == ["out.txt", "src", "test.gz"]


def test_single_bad_header_keeps_existing_file(tmp_path: Path):
    dst = tmp_path / "out.txt"
    dst.write_text("previous good content")

    with pytest.raises(FormatError):
        ArchiveEngine.extract_single(dst, io.BytesIO(b"this is not gzip data"))

    assert_file_content(dst, "previous good content")


def test_progress_reports_bytes_written(test_data: Path, tmp_path: Path):
    data = ArchiveEngine.build_tar_container(test_data, tmp_path / "out.tar.gz").read_bytes()
    written = []

    ArchiveEngine.extract_tar_container(tmp_path / "dst", io.BytesIO(data), progress_callback=written.append)

    assert sum(written) == len("Hello world.") + len("Foo bar.")


def test_built_containers_use_forward_slashes(test_data: Path, tmp_path: Path):
    zip_path = ArchiveEngine.build_zip_container(test_data, tmp_path / "out.zip")
    tar_path = ArchiveEngine.build_tar_container(test_data, tmp_path / "out.tar.gz")

    with zipfile.ZipFile(zip_path) as zf:
        assert zf.namelist() == ["foo/", "test", "foo/bar.txt"]
    with tarfile.open(tar_path) as tar:
        assert tar.getnames() == ["foo", "test", "foo/bar.txt"]


def test_builders_skip_their_own_output(test_data: Path):
    zip_path = ArchiveEngine.build_zip_container(test_data, test_data / "self.zip")
    tar_path = ArchiveEngine.build_tar_container(test_data, test_data / "self.tar.gz")

    with zipfile.ZipFile(zip_path) as zf:
        assert "self.zip" not in zf.namelist()
    with tarfile.open(tar_path) as tar:
        assert "self.tar.gz" not in tar.getnames()


def test_non_atomic_failure_keeps_partial_output(tmp_path: Path):
    dst = tmp_path / "dst"

    with pytest.raises(FormatError, match="CRC"):
        ArchiveEngine.extract_zip_container(dst, io.BytesIO(broken_second_entry_zip()))

    assert_file_content(dst / "a.txt", "hello")


def test_atomic_failure_leaves_nothing(tmp_path: Path):
    dst = tmp_path / "dst"

    with pytest.raises(FormatError, match="CRC"):
        ArchiveEngine.extract_zip_container(dst, io.BytesIO(broken_second_entry_zip()), atomic=True)

    assert not dst.exists()
    assert list(tmp_path.iterdir()) == []


def test_atomic_merge_keeps_existing_files(tmp_path: Path):
    dst = tmp_path / "dst"
    dst.mkdir()
    (dst / "keep.txt").write_text("keep")
    (dst / "a.txt").write_text("old")

    ArchiveEngine.extract_zip_container(dst, io.BytesIO(stored_zip([("a.txt", b"hello")])), atomic=True)

    assert_file_content(dst / "keep.txt", "keep")
    assert_file_content(dst / "a.txt", "hello")
    assert sorted(p.name for p in tmp_path.iterdir()) == ["dst"]


def test_atomic_single_failure_leaves_nothing(tmp_path: Path):
    data = bytearray(gzip.compress(b"payload that will fail its checksum"))
    data[-8] ^= 0xFF
    dst = tmp_path / "out.txt"

    with pytest.raises(FormatError):
        ArchiveEngine.extract_single(dst, io.BytesIO(bytes(data)), atomic=True)

    assert list(tmp_path.iterdir()) == []


def test_tar_gzip_trailer_is_verified(test_data: Path, tmp_path: Path):
    data = bytearray(ArchiveEngine.build_tar_container(test_data, tmp_path / "out.tar.gz").read_bytes())
    data[-8] ^= 0xFF

    with pytest.raises(FormatError):
        ArchiveEngine.extract_tar_container(tmp_path / "dst", io.BytesIO(bytes(data)))


@pytest.mark.parametrize("extractor", [
    ArchiveEngine.extract_single,
    ArchiveEngine.extract_tar_container,
    ArchiveEngine.extract_zip_container,
])
def test_malformed_input_is_format_error(tmp_path: Path, extractor):
    with pytest.raises(FormatError):
        extractor(tmp_path / "dst", io.BytesIO(b"this is not an archive at all" * 20))


def test_detect_format_signatures(test_data: Path, tmp_path: Path):
    tar_gz = ArchiveEngine.build_tar_container(test_data, tmp_path / "out.tar.gz").read_bytes()
    plain_gz = gzip.compress(b"just some text")

    assert detect_format(stored_zip([("a", b"a")])) is ArchiveFormat.ZIP
    assert detect_format(stored_zip([])) is ArchiveFormat.ZIP
    assert detect_format(plain_gz, name="file.tgz") is ArchiveFormat.TAR_GZIP
    assert detect_format(plain_gz, name="FILE.TAR.GZ") is ArchiveFormat.TAR_GZIP
    assert detect_format(tar_gz, name="file.gz") is ArchiveFormat.GZIP
    # Without a name the inflated data decides
    assert detect_format(tar_gz) is ArchiveFormat.TAR_GZIP
    assert detect_format(plain_gz) is ArchiveFormat.GZIP


def test_detect_format_unknown():
    with pytest.raises(FormatError, match="Unknown File Format"):
        detect_format(b"Rar!\x1a\x07\x00")


def test_extract_local_path_dispatches_on_content(test_data: Path, tmp_path: Path):
    archive = ArchiveEngine.build_tar_container(test_data, tmp_path / "blob")
    dst = tmp_path / "dst"

    ArchiveEngine.extract(archive, dst)

    assert_sample_tree(dst)


def test_extract_local_single_gzip(tmp_path: Path):
    source = tmp_path / "notes.txt.gz"
    source.write_bytes(gzip.compress(b"notes"))

    result = ArchiveEngine.extract(source, tmp_path / "notes.txt")

    assert_file_content(result, "notes")


def test_extract_with_explicit_format(test_data: Path, tmp_path: Path):
    archive = ArchiveEngine.build_zip_container(test_data, tmp_path / "archive.bin")

    ArchiveEngine.extract(archive, tmp_path / "dst", archive_format=ArchiveFormat.ZIP)

    assert_sample_tree(tmp_path / "dst")


def test_extract_unknown_local_file(tmp_path: Path):
    source = tmp_path / "garbage.bin"
    source.write_bytes(b"\x00" * 64)

    with pytest.raises(FormatError, match="Unknown File Format"):
        ArchiveEngine.extract(source, tmp_path / "dst")
    assert not (tmp_path / "dst").exists()


def test_extract_missing_local_file(tmp_path: Path):
    with pytest.raises(StreamError):
        ArchiveEngine.extract(tmp_path / "missing.zip", tmp_path / "dst")


def test_build_dispatch(test_data: Path, tmp_path: Path):
    path = ArchiveEngine.build(ArchiveFormat.ZIP, test_data, tmp_path / "out.zip")
    assert zipfile.is_zipfile(path)


def test_archive_entry_validation():
    with pytest.raises(ValueError):
        ArchiveEntry("", EntryKind.FILE)
    with pytest.raises(ValueError):
        ArchiveEntry("/etc/passwd", EntryKind.FILE)
    with pytest.raises(ValueError):
        ArchiveEntry("dir", EntryKind.DIRECTORY, body=io.BytesIO(b"x"))
    assert ArchiveEntry("dir", EntryKind.DIRECTORY).is_dir
