import os
import stat
import sys
import zipfile

import pytest

import unjar


def make_jar(path, entries):
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in entries:
            zf.writestr(name, data)
    return str(path)


def test_unzip_mirrors_entries(tmp_path):
    jar = make_jar(tmp_path / "app.jar", [
        (zipfile.ZipInfo("META-INF/"), b""),
        ("META-INF/MANIFEST.MF", b"Manifest-Version: 1.0\n"),
        ("com/acme/Foo.class", b"\xca\xfe\xba\xbe"),
    ])
    dest = tmp_path / "stage"

    unjar.unzip(jar, str(dest))

    assert (dest / "META-INF").is_dir()
    assert (dest / "META-INF" / "MANIFEST.MF").read_bytes() == b"Manifest-Version: 1.0\n"
    assert (dest / "com" / "acme" / "Foo.class").read_bytes() == b"\xca\xfe\xba\xbe"


@pytest.mark.skipif(sys.platform == "win32", reason="posix permission bits")
def test_unzip_keeps_stored_mode(tmp_path):
    info = zipfile.ZipInfo("bin/run.sh")
    info.external_attr = 0o750 << 16
    jar = make_jar(tmp_path / "app.jar", [(info, b"#!/bin/sh\n"), (zipfile.ZipInfo("plain.txt"), b"x")])
    dest = tmp_path / "stage"

    unjar.unzip(jar, str(dest))

    assert stat.S_IMODE(os.stat(dest / "bin" / "run.sh").st_mode) == 0o750
    assert stat.S_IMODE(os.stat(dest / "plain.txt").st_mode) == unjar.DEFAULT_FILE_MODE


def test_unzip_rejects_parent_escape(tmp_path):
    jar = make_jar(tmp_path / "evil.jar", [("../../evil", b"boom")])
    dest = tmp_path / "a" / "b" / "stage"

    with pytest.raises(unjar.PathEscapeError) as excinfo:
        unjar.unzip(jar, str(dest))

    assert excinfo.value.path == os.path.normpath(str(tmp_path / "a" / "evil"))
    assert not (tmp_path / "a" / "evil").exists()


def test_unzip_rejects_absolute_entry(tmp_path):
    target = tmp_path / "outside" / "evil"
    jar = make_jar(tmp_path / "evil.jar", [(str(target), b"boom")])

    with pytest.raises(unjar.PathEscapeError):
        unjar.unzip(jar, str(tmp_path / "stage"))

    assert not target.exists()


def test_unzip_stops_at_first_escape(tmp_path):
    jar = make_jar(tmp_path / "mixed.jar", [
        ("ok/First.class", b"1"),
        ("../evil", b"boom"),
        ("ok/Last.class", b"2"),
    ])
    dest = tmp_path / "stage"

    with pytest.raises(unjar.PathEscapeError):
        unjar.unzip(jar, str(dest))

    assert (dest / "ok" / "First.class").exists()
    assert not (dest / "ok" / "Last.class").exists()


def test_safe_dest_allows_dotted_names(tmp_path):
    root = str(tmp_path)
    assert unjar.safe_dest(root, "a/../b/..Foo.class") == os.path.join(root, "b", "..Foo.class")


def test_unzip_bad_archive(tmp_path):
    bogus = tmp_path / "broken.jar"
    bogus.write_bytes(b"this is not a zip")

    with pytest.raises(unjar.ArchiveOpenError):
        unjar.unzip(str(bogus), str(tmp_path / "stage"))


def test_unzip_missing_archive(tmp_path):
    with pytest.raises(unjar.ArchiveOpenError):
        unjar.unzip(str(tmp_path / "nope.jar"), str(tmp_path / "stage"))


def corrupt_body(path, name):
    """Flip bytes in the middle of the compressed data of entry name."""
    with zipfile.ZipFile(path) as zf:
        info = zf.getinfo(name)
    start = info.header_offset + 30 + len(info.filename.encode("utf-8"))
    data = bytearray(path.read_bytes())
    middle = start + info.compress_size // 2
    for i in range(middle - 4, middle + 4):
        data[i] ^= 0xFF
    path.write_bytes(bytes(data))


def set_encrypted_flag(path):
    data = bytearray(path.read_bytes())
    for sig, offset in ((b"PK\x03\x04", 6), (b"PK\x01\x02", 8)):
        data[data.find(sig) + offset] |= 0x01
    path.write_bytes(bytes(data))


def test_unzip_corrupt_deflate_stream(tmp_path):
    jar = tmp_path / "broken.jar"
    with zipfile.ZipFile(jar, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("A.class", bytes(range(256)) * 64)
    corrupt_body(jar, "A.class")

    with pytest.raises(unjar.ExtractIOError) as excinfo:
        unjar.unzip(str(jar), str(tmp_path / "stage"))

    assert excinfo.value.__cause__ is not None


def test_unzip_bad_crc(tmp_path):
    jar = tmp_path / "crc.jar"
    make_jar(jar, [("A.class", b"original class bytes")])
    jar.write_bytes(jar.read_bytes().replace(b"original class bytes", b"tampered class bytes"))

    with pytest.raises(unjar.ExtractIOError) as excinfo:
        unjar.unzip(str(jar), str(tmp_path / "stage"))

    assert isinstance(excinfo.value.__cause__, zipfile.BadZipFile)


def test_unzip_encrypted_entry(tmp_path):
    jar = tmp_path / "locked.jar"
    make_jar(jar, [("A.class", b"\xca\xfe\xba\xbe")])
    set_encrypted_flag(jar)

    with pytest.raises(unjar.ExtractIOError) as excinfo:
        unjar.unzip(str(jar), str(tmp_path / "stage"))

    assert isinstance(excinfo.value.__cause__, RuntimeError)
